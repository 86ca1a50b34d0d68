"""
Provider adapter contract, credential rotation, and stream plumbing.

An adapter speaks one upstream wire protocol. The dispatcher picks the
adapter purely from ModelDescriptor.provider; adapters never see gateway
API keys, owners, or tiers.

Retry policy (both complete() and open_stream()):
  • Upstream 401/403/429, 5xx, timeouts and connection errors are
    retried exactly once against a different credential of the same
    provider, when the pool has one.
  • Other upstream 4xx are not retried.
  • Once a stream has started relaying, nothing is retried.
"""

from __future__ import annotations

import abc
import itertools
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

from app.services.model_registry import ModelDescriptor
from app.services.token_counter import estimate_message_tokens, estimate_tokens

logger = logging.getLogger(__name__)


# ── Canonical request / result ──────────────────────────────
@dataclass(frozen=True, slots=True)
class ChatRequest:
    """Provider-neutral completion request."""

    descriptor: ModelDescriptor
    messages: tuple[dict[str, str], ...]
    temperature: float
    max_tokens: int
    stream: bool = False

    @property
    def upstream_model(self) -> str:
        return self.descriptor.upstream_endpoint_id


@dataclass(frozen=True, slots=True)
class ChatResult:
    text: str
    prompt_tokens: int
    completion_tokens: int
    reasoning: str | None = None
    finish_reason: str = "stop"

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True, slots=True)
class StreamDelta:
    text: str


@dataclass(frozen=True, slots=True)
class StreamDone:
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    finish_reason: str = "stop"


StreamEvent = StreamDelta | StreamDone


# ── Errors ──────────────────────────────────────────────────
class ProviderError(Exception):
    """
    Upstream call failed.

    Attributes:
        provider:  Provider name.
        status:    Upstream HTTP status, or a gateway-chosen status for
                   transport failures (504 timeout, 502 connection, 503
                   no credentials).
        retryable: Whether another credential might succeed.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        status: int = 502,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status = status
        self.retryable = retryable


def classify_status(provider: str, status: int, body: str) -> ProviderError:
    """Map a non-2xx upstream response to a ProviderError (body is logged, not kept)."""
    logger.warning(
        "%s upstream error: status=%d body=%s",
        provider,
        status,
        body[:500],
    )
    retryable = status in (401, 403, 429) or status >= 500
    return ProviderError(
        f"{provider} returned HTTP {status}",
        provider=provider,
        status=status,
        retryable=retryable,
    )


# ── Credential rotation ─────────────────────────────────────
class CredentialPool:
    """
    Round-robin over a provider's upstream API keys.

    A pool may hold a single None entry for providers that need no key.
    """

    def __init__(self, provider: str, keys: Sequence[str | None]) -> None:
        self.provider = provider
        self._keys = list(keys)
        self._cycle = itertools.cycle(range(len(self._keys))) if self._keys else None

    def __len__(self) -> int:
        return len(self._keys)

    def pick(self, exclude: int | None = None) -> tuple[int, str | None]:
        """Return (index, key); skips `exclude` when another key exists."""
        if self._cycle is None:
            raise ProviderError(
                f"No credentials configured for {self.provider}",
                provider=self.provider,
                status=503,
            )
        for _ in range(len(self._keys)):
            idx = next(self._cycle)
            if idx != exclude or len(self._keys) == 1:
                return idx, self._keys[idx]
        raise AssertionError("unreachable")

    def has_alternate(self) -> bool:
        return len(self._keys) > 1


# ── Streams ─────────────────────────────────────────────────
class ProviderStream:
    """
    Async iterator over one upstream stream.

    Tracks the text relayed so far so that a stream cut short still has
    a usage figure: the upstream's reported usage when it arrived,
    otherwise an estimate.
    """

    def __init__(
        self,
        events: AsyncIterator[StreamEvent],
        close: Callable[[], Awaitable[None]],
        request: ChatRequest,
    ) -> None:
        self._events = events
        self._close = close
        self._request = request
        self._parts: list[str] = []
        self._done: StreamDone | None = None
        self._closed = False

    def __aiter__(self) -> ProviderStream:
        return self

    async def __anext__(self) -> StreamEvent:
        if self._done is not None or self._closed:
            raise StopAsyncIteration
        event = await self._events.__anext__()
        if isinstance(event, StreamDelta):
            self._parts.append(event.text)
        else:
            self._done = event
        return event

    @property
    def finished(self) -> bool:
        return self._done is not None

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def usage(self) -> tuple[int, int]:
        """(prompt_tokens, completion_tokens) — reported where possible."""
        done = self._done
        prompt = done.prompt_tokens if done and done.prompt_tokens is not None else None
        completion = done.completion_tokens if done and done.completion_tokens is not None else None
        if prompt is None:
            prompt = estimate_message_tokens(self._request.messages)
        if completion is None:
            completion = estimate_tokens(self.text)
        return prompt, completion

    async def aclose(self) -> None:
        """Stop reading and release the upstream connection. Idempotent."""
        if self._closed:
            return
        self._closed = True
        try:
            aclose = getattr(self._events, "aclose", None)
            if aclose is not None:
                await aclose()
        finally:
            await self._close()


async def _single_shot(result: ChatResult) -> AsyncIterator[StreamEvent]:
    if result.text:
        yield StreamDelta(result.text)
    yield StreamDone(
        prompt_tokens=result.prompt_tokens,
        completion_tokens=result.completion_tokens,
        finish_reason=result.finish_reason,
    )


async def _noop() -> None:
    return None


# ── Adapter base ────────────────────────────────────────────
class ProviderAdapter(abc.ABC):
    """One upstream wire protocol bound to one provider's credentials."""

    def __init__(self, provider: str, credentials: CredentialPool) -> None:
        self.provider = provider
        self.credentials = credentials

    # Subclasses implement one attempt with one credential.
    @abc.abstractmethod
    async def _complete_once(self, request: ChatRequest, api_key: str | None) -> ChatResult:
        ...

    @abc.abstractmethod
    async def _open_stream_once(self, request: ChatRequest, api_key: str | None) -> ProviderStream:
        ...

    async def complete(self, request: ChatRequest) -> ChatResult:
        return await self._with_retry(self._complete_once, request)

    async def open_stream(self, request: ChatRequest) -> ProviderStream:
        """
        Open an upstream stream; returns once the upstream accepted it.

        Models that cannot stream are served with one non-streaming call
        relayed as a single delta.
        """
        if not request.descriptor.supports_streaming:
            result = await self.complete(request)
            return ProviderStream(_single_shot(result), _noop, request)
        return await self._with_retry(self._open_stream_once, request)

    async def _with_retry(
        self,
        attempt: Callable[[ChatRequest, str | None], Awaitable[Any]],
        request: ChatRequest,
    ) -> Any:
        idx, key = self.credentials.pick()
        try:
            return await attempt(request, key)
        except ProviderError as exc:
            if not exc.retryable or not self.credentials.has_alternate():
                raise
            logger.warning(
                "%s credential #%d failed (status=%d); retrying with another",
                self.provider,
                idx,
                exc.status,
            )

        _, alternate = self.credentials.pick(exclude=idx)
        return await attempt(request, alternate)
