"""
Process-wide service graph, built once in the app lifespan.

Routers reach it through the `get_runtime` dependency, which reads
`app.state.runtime`. Tests build a Runtime with memory stores and fake
adapters and assign it directly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Annotated, Any

import httpx
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.services.admission import AdmissionPipeline
from app.services.background import BackgroundRunner
from app.services.credential_store import MemoryCredentialStore, SqlCredentialStore
from app.services.dispatcher import ProviderDispatcher, build_adapters, create_http_client
from app.services.model_registry import ModelRegistry, build_registry
from app.services.rate_limiter import MemoryRateLimiter, SqlRateLimiter
from app.services.tiers import DEFAULT_TIERS, FREE
from app.services.usage_recorder import MemoryUsageRecorder, SqlUsageRecorder

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    registry: ModelRegistry
    credentials: Any
    limiter: Any
    recorder: Any
    dispatcher: ProviderDispatcher
    pipeline: AdmissionPipeline
    background: BackgroundRunner
    http_client: httpx.AsyncClient | None = None

    async def aclose(self, drain_timeout: float = 10.0) -> None:
        await self.background.drain(timeout=drain_timeout)
        if self.http_client is not None:
            await self.http_client.aclose()


def assemble(
    registry: ModelRegistry,
    dispatcher: ProviderDispatcher,
    credentials: Any,
    limiter: Any,
    recorder: Any,
    *,
    record_attempts: int = 2,
    http_client: httpx.AsyncClient | None = None,
) -> Runtime:
    """Wire already-built stores and a dispatcher into a pipeline."""
    background = BackgroundRunner()
    pipeline = AdmissionPipeline(
        credentials=credentials,
        limiter=limiter,
        dispatcher=dispatcher,
        recorder=recorder,
        background=background,
        record_attempts=record_attempts,
    )
    return Runtime(
        registry=registry,
        credentials=credentials,
        limiter=limiter,
        recorder=recorder,
        dispatcher=dispatcher,
        pipeline=pipeline,
        background=background,
        http_client=http_client,
    )


def build_runtime(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
) -> Runtime:
    """Build the production service graph from settings."""
    registry = build_registry(settings.MODEL_CATALOG_PATH)
    http_client = create_http_client(settings)
    dispatcher = ProviderDispatcher(
        registry,
        build_adapters(settings, http_client),
        default_max_tokens=settings.DEFAULT_MAX_TOKENS,
    )
    default_tier = DEFAULT_TIERS.get(settings.DEFAULT_TIER, FREE)

    if settings.STORE_BACKEND == "memory":
        logger.warning("Using in-memory stores — usage and keys are lost on restart")
        recorder = MemoryUsageRecorder(registry)
        credentials = MemoryCredentialStore(default_tier=default_tier)
        limiter = MemoryRateLimiter(recorder.tokens_used)
    else:
        recorder = SqlUsageRecorder(session_factory, registry)
        credentials = SqlCredentialStore(session_factory, default_tier)
        limiter = SqlRateLimiter(session_factory)

    logger.info(
        "Runtime ready: %d models, backend=%s, default tier=%s",
        len(registry),
        settings.STORE_BACKEND,
        default_tier.name,
    )
    return assemble(
        registry,
        dispatcher,
        credentials,
        limiter,
        recorder,
        record_attempts=settings.USAGE_RECORD_ATTEMPTS,
        http_client=http_client,
    )


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


RuntimeDep = Annotated[Runtime, Depends(get_runtime)]
