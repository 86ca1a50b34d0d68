"""
Pytest configuration for gateway tests.

Environment is set before any app import: in-memory stores, an in-memory
SQLite URL (SQL store tests build their own engine), no provider keys.
Upstream providers are replaced by FakeAdapter, which records every call.
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["STORE_BACKEND"] = "memory"
os.environ["DEBUG"] = "false"
os.environ["PRUNE_INTERVAL_SECONDS"] = "3600"
for _provider in ("GROQ", "CHUTES", "CEREBRAS", "OPENROUTER"):
    os.environ[f"{_provider}_API_KEYS"] = ""

import datetime
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.core.runtime import assemble
from app.models.subscription import SubscriptionTier
from app.services.credential_store import MemoryCredentialStore
from app.services.dispatcher import ProviderDispatcher
from app.services.model_registry import ModelDescriptor, ModelRegistry, Provider
from app.services.providers.base import (
    ChatRequest,
    ChatResult,
    CredentialPool,
    ProviderAdapter,
    ProviderStream,
    StreamDelta,
    StreamDone,
)
from app.services.rate_limiter import MemoryRateLimiter
from app.services.tiers import DEFAULT_TIERS, FREE
from app.services.usage_recorder import MemoryUsageRecorder

# Import all models so Base.metadata is fully populated
import app.models.api_key  # noqa: F401,E402
import app.models.rate_limit_counter  # noqa: F401,E402
import app.models.usage  # noqa: F401,E402


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeUpstream:
    """Scripted stream; remembers how far it was read and whether it was closed."""

    def __init__(self, chunks, prompt_tokens, completion_tokens):
        self.chunks = list(chunks)
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens
        self.consumed = 0
        self.closed = False

    async def events(self):
        for chunk in self.chunks:
            self.consumed += 1
            yield StreamDelta(chunk)
        yield StreamDone(
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
        )

    async def close(self):
        self.closed = True


class FakeAdapter(ProviderAdapter):
    """
    Upstream stand-in.

    `failures` is a list of ProviderErrors raised by successive attempts
    before the adapter starts succeeding. `calls` holds the credential
    used by each attempt.
    """

    def __init__(
        self,
        provider="groq",
        keys=("upstream-key-1", "upstream-key-2"),
        text="Hello from upstream",
        prompt_tokens=12,
        completion_tokens=5,
        chunks=("Hel", "lo ", "from ", "up", "stream"),
        failures=(),
    ):
        super().__init__(provider, CredentialPool(provider, list(keys)))
        self.text = text
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens
        self.chunks = list(chunks)
        self.failures = list(failures)
        self.calls: list[str | None] = []
        self.requests: list[ChatRequest] = []
        self.streams: list[FakeUpstream] = []

    async def _complete_once(self, request, api_key):
        self.calls.append(api_key)
        self.requests.append(request)
        if self.failures:
            raise self.failures.pop(0)
        return ChatResult(
            text=self.text,
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
        )

    async def _open_stream_once(self, request, api_key):
        self.calls.append(api_key)
        self.requests.append(request)
        if self.failures:
            raise self.failures.pop(0)
        upstream = FakeUpstream(self.chunks, self.prompt_tokens, self.completion_tokens)
        self.streams.append(upstream)
        return ProviderStream(upstream.events(), upstream.close, request)


# ---------------------------------------------------------------------------
# Registry / services
# ---------------------------------------------------------------------------

TEST_MODELS = (
    ModelDescriptor(
        id="test-model",
        name="Test Model",
        provider=Provider.GROQ,
        upstream_endpoint_id="vendor/test-model-v1",
        context_window_tokens=8192,
        max_output_tokens=1000,
        supports_streaming=True,
    ),
    ModelDescriptor(
        id="priced-model",
        name="Priced Model",
        provider=Provider.GROQ,
        upstream_endpoint_id="vendor/priced-model",
        context_window_tokens=8192,
        max_output_tokens=4000,
        supports_streaming=True,
        supports_reasoning_trace=True,
        price_per_1k_input=Decimal("0.5"),
        price_per_1k_output=Decimal("1.5"),
    ),
    ModelDescriptor(
        id="batch-only",
        name="Batch Only",
        provider=Provider.GROQ,
        upstream_endpoint_id="vendor/batch-only",
        context_window_tokens=8192,
        max_output_tokens=2000,
        supports_streaming=False,
    ),
)


@pytest.fixture
def registry():
    return ModelRegistry(TEST_MODELS)


@pytest.fixture
def fake_adapter():
    return FakeAdapter()


@pytest.fixture
def dispatcher(registry, fake_adapter):
    return ProviderDispatcher(registry, {"groq": fake_adapter}, default_max_tokens=256)


@pytest.fixture
def recorder(registry):
    return MemoryUsageRecorder(registry)


@pytest.fixture
def credentials():
    return MemoryCredentialStore(default_tier=FREE)


@pytest.fixture
def limiter(recorder):
    return MemoryRateLimiter(recorder.tokens_used)


@pytest.fixture
def runtime(registry, dispatcher, credentials, limiter, recorder):
    return assemble(registry, dispatcher, credentials, limiter, recorder)


@pytest.fixture
def pipeline(runtime):
    return runtime.pipeline


@pytest_asyncio.fixture
async def issued(credentials):
    """A fresh key for owner-a on the default (Free) tier."""
    return await credentials.create("owner-a", "test key")


# ---------------------------------------------------------------------------
# SQL fixtures: in-memory SQLite, one shared connection
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        for tier in DEFAULT_TIERS.values():
            session.add(
                SubscriptionTier(
                    name=tier.name,
                    tokens_per_month=tier.tokens_per_month,
                    requests_per_minute=tier.requests_per_minute,
                )
            )
        await session.commit()

    yield factory
    await engine.dispose()


class FrozenClock:
    """Settable clock for window arithmetic."""

    def __init__(self, now: datetime.datetime):
        self.now = now

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + datetime.timedelta(**kwargs)


@pytest.fixture
def clock():
    return FrozenClock(datetime.datetime(2025, 11, 14, 9, 30, 15, tzinfo=datetime.timezone.utc))
