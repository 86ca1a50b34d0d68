"""
FastAPI application entrypoint.

Lifespan:
  • On startup: verify DB connectivity, build the runtime (registry,
    stores, provider adapters, admission pipeline), start counter pruning.
  • On shutdown: stop pruning, drain background writes, close the
    upstream HTTP client, dispose the engine.

Routers:
  • /v1/chat/completions — admission pipeline (API key)
  • /v1/models — public model catalog
  • /keys, /usage, /analytics — owner-facing management (identity header)
  • /health — shallow liveness probe
"""

import asyncio
import contextlib
import datetime
import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI
from sqlalchemy import text

from app.core.config import settings
from app.core.database import async_session_factory, engine
from app.core.errors import GatewayError, gateway_error_handler
from app.core.runtime import Runtime, build_runtime
from app.routers.analytics import router as analytics_router
from app.routers.chat import router as chat_router
from app.routers.keys import router as keys_router
from app.routers.models import router as models_router
from app.routers.usage import router as usage_router

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


async def prune_rate_windows(runtime: Runtime) -> None:
    """Periodically delete rate-limit counters for long-past windows."""
    retention = datetime.timedelta(minutes=settings.RATE_WINDOW_RETENTION_MINUTES)
    while True:
        await asyncio.sleep(settings.PRUNE_INTERVAL_SECONDS)
        try:
            cutoff = datetime.datetime.now(datetime.timezone.utc) - retention
            removed = await runtime.limiter.prune_windows(cutoff)
            if removed:
                logger.info("Pruned %d expired rate-limit windows", removed)
        except Exception:
            logger.exception("Rate-window pruning failed (will retry)")


# ── Lifespan ────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app_: FastAPI) -> AsyncIterator[None]:
    """Startup / shutdown lifecycle."""

    # Startup — verify DB is reachable
    if settings.STORE_BACKEND == "sql":
        try:
            async with engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
            logger.info("Database connection verified ✓")
        except Exception:
            logger.warning(
                "Could not reach the database on startup. "
                "The app will start, but requests will fail until the DB is available."
            )

    runtime = build_runtime(settings, async_session_factory)
    app_.state.runtime = runtime
    pruner = asyncio.create_task(prune_rate_windows(runtime), name="prune-rate-windows")

    yield  # ← application runs here

    pruner.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await pruner

    await runtime.aclose()
    logger.info("Background work drained, upstream client closed ✓")

    # Shutdown — clean up connection pool
    await engine.dispose()
    logger.info("Database engine disposed ✓")


# ── App ─────────────────────────────────────────────────────
app = FastAPI(
    title=settings.APP_NAME,
    version="0.1.0",
    description=(
        "Multi-tenant LLM gateway — OpenAI-compatible chat completions "
        "with per-key rate limits, monthly token quotas and a usage ledger."
    ),
    lifespan=lifespan,
)

app.add_exception_handler(GatewayError, gateway_error_handler)

# Mount routers
app.include_router(chat_router, prefix="/v1")
app.include_router(models_router, prefix="/v1")
app.include_router(keys_router, prefix="/keys")
app.include_router(usage_router, prefix="/usage")
app.include_router(analytics_router, prefix="/analytics")


# ── Health check ────────────────────────────────────────────
@app.get(
    "/health",
    tags=["System"],
    summary="Liveness probe",
)
async def health_check() -> dict[str, str]:
    """Shallow health check — confirms the process is alive."""
    return {"status": "healthy"}
