"""
Provider dispatcher — resolves a model and hands the call to its adapter.

The dispatcher owns the one place where max_tokens is checked against the
model's ceiling (rejected, never clamped) and where provider adapters are
looked up. It holds no per-request state.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

import httpx

from app.core.config import Settings
from app.core.errors import BadRequest, UnknownModel
from app.services.model_registry import ModelDescriptor, ModelRegistry, Provider
from app.services.providers.base import (
    ChatRequest,
    ChatResult,
    CredentialPool,
    ProviderAdapter,
    ProviderError,
    ProviderStream,
)
from app.services.providers.ollama import OllamaAdapter
from app.services.providers.openai_compat import OpenAICompatibleAdapter

logger = logging.getLogger(__name__)


class ProviderDispatcher:
    def __init__(
        self,
        registry: ModelRegistry,
        adapters: Mapping[str, ProviderAdapter],
        default_max_tokens: int = 2000,
    ) -> None:
        self.registry = registry
        self._adapters = dict(adapters)
        self._default_max_tokens = default_max_tokens

    def resolve(self, model_id: str, max_tokens: int | None) -> tuple[ModelDescriptor, int]:
        """
        Look up a model and settle the output budget.

        Returns:
            (descriptor, max_tokens) — max_tokens defaulted when omitted.

        Raises:
            UnknownModel: model_id is not in the registry.
            BadRequest:   max_tokens exceeds the model's output ceiling.
        """
        descriptor = self.registry.by_id(model_id)
        if descriptor is None:
            raise UnknownModel(model_id)

        if max_tokens is None:
            return descriptor, min(self._default_max_tokens, descriptor.max_output_tokens)

        if max_tokens > descriptor.max_output_tokens:
            raise BadRequest(
                f"max_tokens ({max_tokens}) exceeds the limit for '{descriptor.id}' "
                f"({descriptor.max_output_tokens})."
            )
        return descriptor, max_tokens

    def adapter_for(self, descriptor: ModelDescriptor) -> ProviderAdapter:
        adapter = self._adapters.get(descriptor.provider.value)
        if adapter is None:
            raise ProviderError(
                f"No adapter configured for {descriptor.provider.value}",
                provider=descriptor.provider.value,
                status=503,
            )
        return adapter

    async def complete(self, request: ChatRequest) -> ChatResult:
        return await self.adapter_for(request.descriptor).complete(request)

    async def open_stream(self, request: ChatRequest) -> ProviderStream:
        return await self.adapter_for(request.descriptor).open_stream(request)


# ── Wiring ──────────────────────────────────────────────────
def create_http_client(settings: Settings) -> httpx.AsyncClient:
    """One pooled client shared by every adapter."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.PROVIDER_TIMEOUT_SECONDS, connect=10.0),
        limits=httpx.Limits(max_connections=200, max_keepalive_connections=50),
        proxy=settings.PROVIDER_PROXY or None,
    )


def build_adapters(settings: Settings, client: httpx.AsyncClient) -> dict[str, ProviderAdapter]:
    """Instantiate one adapter per provider from settings."""
    adapters: dict[str, ProviderAdapter] = {}
    for provider in Provider:
        if provider is Provider.OLLAMA:
            adapters[provider.value] = OllamaAdapter(settings.OLLAMA_BASE_URL, client)
            continue

        keys = settings.provider_keys(provider.value)
        if not keys:
            logger.warning("No API keys configured for %s; its models will return 503", provider.value)
        adapters[provider.value] = OpenAICompatibleAdapter(
            provider=provider.value,
            base_url=settings.provider_base_url(provider.value),
            credentials=CredentialPool(provider.value, keys),
            client=client,
        )
    return adapters
