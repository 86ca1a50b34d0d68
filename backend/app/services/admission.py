"""
Request-admission pipeline — one chat completion from bytes to ledger.

State machine (per request):

    RECEIVED → AUTHENTICATED → RATE_OK → QUOTA_OK → DISPATCHED
             → {STREAMING | COMPLETED} → RECORDED → RESPONDED
    any state → REJECTED → RECORDED

Ordering rules:
  • Payload validation and authentication run before anything that costs
    money or consumes a rate slot.
  • The model is resolved right after authentication, so an unknown model
    or an oversized max_tokens never touches counters or quota.
  • Rate is checked before quota; a rate rejection leaves quota untouched.
  • Key touch and usage writes are fire-and-forget through the
    BackgroundRunner; their failures never change the response.

Rejections before authentication have no owner to bill, so they are only
logged. Everything after authentication lands in the ledger.
"""

from __future__ import annotations

import asyncio
import datetime
import enum
import json
import logging
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic import ValidationError

from app.core.errors import (
    BadRequest,
    GatewayError,
    InternalError,
    ProviderFailure,
    QuotaExceeded,
    RateLimited,
    Unauthorized,
)
from app.schemas.chat import (
    AssistantMessage,
    ChatCompletionChunk,
    ChatCompletionRequest,
    ChatCompletionResponse,
    Choice,
    ChunkChoice,
    ChunkDelta,
    CompletionMetadata,
    Usage,
)
from app.services.background import BackgroundRunner
from app.services.credential_store import ResolvedCredential
from app.services.dispatcher import ProviderDispatcher
from app.services.model_registry import ModelDescriptor
from app.services.providers.base import (
    ChatRequest,
    ChatResult,
    ProviderError,
    ProviderStream,
    StreamDelta,
)
from app.services.rate_limiter import QuotaDecision, RateDecision, period_key
from app.services.tiers import TierLimits
from app.services.usage_recorder import OutcomeKind, UsageOutcome, record_best_effort

logger = logging.getLogger(__name__)

SSE_DONE = "data: [DONE]\n\n"
CLIENT_CLOSED_REQUEST = 499


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, separators=(',', ':'), default=str)}\n\n"


class PipelineState(str, enum.Enum):
    RECEIVED = "received"
    AUTHENTICATED = "authenticated"
    RATE_OK = "rate_ok"
    QUOTA_OK = "quota_ok"
    DISPATCHED = "dispatched"
    STREAMING = "streaming"
    COMPLETED = "completed"
    REJECTED = "rejected"
    RECORDED = "recorded"
    RESPONDED = "responded"


# ── Collaborator interfaces ─────────────────────────────────
class CredentialResolver(Protocol):
    async def resolve(self, raw_secret: str) -> ResolvedCredential | None: ...
    async def touch(self, key_id: uuid.UUID, when: datetime.datetime | None = None) -> None: ...


class Limiter(Protocol):
    async def check_and_increment_rate(self, key_id: uuid.UUID, tier: TierLimits) -> RateDecision: ...
    async def check_quota(self, owner_id: str, tier: TierLimits, period: str) -> QuotaDecision: ...


class Recorder(Protocol):
    async def record(self, outcome: UsageOutcome) -> None: ...


# ── Per-request context ─────────────────────────────────────
@dataclass
class AdmissionContext:
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started: float = field(default_factory=time.monotonic)
    created: int = field(default_factory=lambda: int(time.time()))
    state: PipelineState = PipelineState.RECEIVED
    history: list[PipelineState] = field(default_factory=lambda: [PipelineState.RECEIVED])
    payload: ChatCompletionRequest | None = None
    credential: ResolvedCredential | None = None
    descriptor: ModelDescriptor | None = None
    max_tokens: int | None = None

    @property
    def completion_id(self) -> str:
        return f"chatcmpl-{self.request_id}"

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)

    @property
    def model_id(self) -> str:
        return self.payload.model if self.payload else "unknown"

    def advance(self, state: PipelineState) -> None:
        self.state = state
        self.history.append(state)
        logger.debug("request %s → %s", self.request_id, state.value)


@dataclass(frozen=True, slots=True)
class PipelineResponse:
    """Either a JSON body or an SSE frame iterator, never both."""

    request_id: str
    body: dict[str, Any] | None = None
    frames: AsyncIterator[str] | None = None

    @property
    def is_stream(self) -> bool:
        return self.frames is not None


def _describe_validation_error(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "__root__")
    message = first.get("msg", "invalid value")
    return f"Invalid request: {location}: {message}" if location else f"Invalid request: {message}"


def _provider_failure(exc: ProviderError) -> ProviderFailure:
    if exc.status in (503, 504):
        return ProviderFailure(exc.status)
    return ProviderFailure(502)


class AdmissionPipeline:
    """
    Orchestrates credential store, limiter, dispatcher, and recorder.

    Holds no per-request state; many requests run through one instance
    concurrently.
    """

    def __init__(
        self,
        credentials: CredentialResolver,
        limiter: Limiter,
        dispatcher: ProviderDispatcher,
        recorder: Recorder,
        background: BackgroundRunner,
        *,
        record_attempts: int = 2,
        clock: Callable[[], datetime.datetime] = _utcnow,
    ) -> None:
        self.credentials = credentials
        self.limiter = limiter
        self.dispatcher = dispatcher
        self.recorder = recorder
        self.background = background
        self._record_attempts = record_attempts
        self._clock = clock

    async def handle(self, raw_body: Any, raw_secret: str | None) -> PipelineResponse:
        """
        Run one request through admission, dispatch, and relay.

        Raises:
            GatewayError: Any rejection; the caller renders it.
        """
        ctx = AdmissionContext()
        try:
            request = await self._admit(ctx, raw_body, raw_secret)

            if request.stream:
                upstream = await self._dispatch(ctx, self.dispatcher.open_stream, request)
                ctx.advance(PipelineState.STREAMING)
                return PipelineResponse(
                    request_id=ctx.request_id,
                    frames=self._relay(ctx, upstream),
                )

            result = await self._dispatch(ctx, self.dispatcher.complete, request)
            ctx.advance(PipelineState.COMPLETED)
        except GatewayError as exc:
            self._reject(ctx, exc)
            raise
        except Exception as exc:
            logger.exception(
                "Unhandled error in request %s (state=%s, model=%s)",
                ctx.request_id,
                ctx.state.value,
                ctx.model_id,
            )
            error = InternalError()
            self._reject(ctx, error)
            raise error from exc

        self._record(
            ctx,
            OutcomeKind.SUCCESS,
            200,
            prompt_tokens=result.prompt_tokens,
            completion_tokens=result.completion_tokens,
        )
        ctx.advance(PipelineState.RESPONDED)
        return PipelineResponse(request_id=ctx.request_id, body=self._envelope(ctx, result))

    # ── 1-5. Admission ──────────────────────────────────────
    async def _admit(self, ctx: AdmissionContext, raw_body: Any, raw_secret: str | None) -> ChatRequest:
        # 1. Payload
        if not isinstance(raw_body, dict):
            raise BadRequest("Request body must be a JSON object.")
        try:
            payload = ChatCompletionRequest.model_validate(raw_body)
        except ValidationError as exc:
            raise BadRequest(_describe_validation_error(exc)) from exc
        ctx.payload = payload

        # 2. Credential
        credential = await self.credentials.resolve(raw_secret or "")
        if credential is None:
            raise Unauthorized()
        ctx.credential = credential
        ctx.advance(PipelineState.AUTHENTICATED)
        self.background.spawn(self._touch(credential.key_id), name=f"touch-{ctx.request_id}")

        # 3. Model (no counters touched yet)
        ctx.descriptor, ctx.max_tokens = self.dispatcher.resolve(payload.model, payload.max_tokens)

        # 4. Rate
        rate = await self.limiter.check_and_increment_rate(credential.key_id, credential.tier)
        if not rate.admitted:
            raise RateLimited(rate.retry_after)
        ctx.advance(PipelineState.RATE_OK)

        # 5. Quota
        quota = await self.limiter.check_quota(
            credential.owner_id,
            credential.tier,
            period_key(self._clock()),
        )
        if not quota.admitted:
            raise QuotaExceeded()
        ctx.advance(PipelineState.QUOTA_OK)

        return ChatRequest(
            descriptor=ctx.descriptor,
            messages=payload.message_dicts(),
            temperature=payload.temperature,
            max_tokens=ctx.max_tokens,
            stream=payload.stream,
        )

    # ── 6. Dispatch ─────────────────────────────────────────
    async def _dispatch(
        self,
        ctx: AdmissionContext,
        call: Callable[[ChatRequest], Awaitable[Any]],
        request: ChatRequest,
    ) -> Any:
        ctx.advance(PipelineState.DISPATCHED)
        try:
            return await call(request)
        except ProviderError as exc:
            logger.warning(
                "Request %s: %s failed for model %s (status=%d)",
                ctx.request_id,
                exc.provider,
                ctx.model_id,
                exc.status,
            )
            raise _provider_failure(exc) from exc

    # ── 7. Relay ────────────────────────────────────────────
    def _envelope(self, ctx: AdmissionContext, result: ChatResult) -> dict[str, Any]:
        if ctx.descriptor is None:
            raise InternalError()
        response = ChatCompletionResponse(
            id=ctx.completion_id,
            created=ctx.created,
            model=ctx.model_id,
            choices=[
                Choice(
                    message=AssistantMessage(content=result.text),
                    finish_reason=result.finish_reason,
                )
            ],
            usage=Usage(
                prompt_tokens=result.prompt_tokens,
                completion_tokens=result.completion_tokens,
                total_tokens=result.total_tokens,
            ),
            metadata=CompletionMetadata(
                provider=ctx.descriptor.provider.value,
                response_time_ms=ctx.elapsed_ms,
                has_reasoning=bool(result.reasoning),
                reasoning_content=result.reasoning,
            ),
        )
        return response.model_dump()

    def _chunk(
        self,
        ctx: AdmissionContext,
        delta: ChunkDelta,
        finish_reason: str | None = None,
        usage: Usage | None = None,
    ) -> str:
        chunk = ChatCompletionChunk(
            id=ctx.completion_id,
            created=ctx.created,
            model=ctx.model_id,
            choices=[ChunkChoice(delta=delta, finish_reason=finish_reason)],
            usage=usage,
        ).model_dump(exclude_none=True)
        for choice in chunk["choices"]:
            choice.setdefault("finish_reason", None)
        return sse(chunk)

    async def _relay(self, ctx: AdmissionContext, upstream: ProviderStream) -> AsyncIterator[str]:
        """
        Relay upstream events as OpenAI chunks.

        Closing this iterator early (client disconnect) closes the upstream
        response and records whatever was produced so far with status 499.
        """
        kind = OutcomeKind.SUCCESS
        http_status = 200
        error_type: str | None = None
        first = True

        try:
            async for event in upstream:
                if isinstance(event, StreamDelta):
                    yield self._chunk(
                        ctx,
                        ChunkDelta(role="assistant" if first else None, content=event.text),
                    )
                    first = False
                    continue

                prompt_tokens, completion_tokens = upstream.usage()
                yield self._chunk(
                    ctx,
                    ChunkDelta(),
                    finish_reason=event.finish_reason,
                    usage=Usage(
                        prompt_tokens=prompt_tokens,
                        completion_tokens=completion_tokens,
                        total_tokens=prompt_tokens + completion_tokens,
                    ),
                )
            yield SSE_DONE
        except ProviderError as exc:
            failure = _provider_failure(exc)
            kind, http_status, error_type = OutcomeKind.PROVIDER_FAILURE, failure.status_code, failure.error_type
            logger.warning("Request %s: upstream failed mid-stream (status=%d)", ctx.request_id, exc.status)
            yield sse(failure.to_body())
            yield SSE_DONE
        except (asyncio.CancelledError, GeneratorExit):
            http_status = CLIENT_CLOSED_REQUEST
            logger.info("Request %s: client disconnected mid-stream", ctx.request_id)
            raise
        except Exception:
            logger.exception("Request %s: relay failed", ctx.request_id)
            error = InternalError()
            kind, http_status, error_type = OutcomeKind.REJECTED, error.status_code, error.error_type
            yield sse(error.to_body())
            yield SSE_DONE
        finally:
            prompt_tokens, completion_tokens = upstream.usage()
            self._record(
                ctx,
                kind,
                http_status,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                error_type=error_type,
            )
            ctx.advance(PipelineState.RESPONDED)
            await asyncio.shield(upstream.aclose())

    # ── 8. Record ───────────────────────────────────────────
    def _reject(self, ctx: AdmissionContext, exc: GatewayError) -> None:
        ctx.advance(PipelineState.REJECTED)
        if ctx.credential is None:
            logger.info(
                "Rejected request %s before authentication: %s",
                ctx.request_id,
                exc.error_type,
            )
            ctx.advance(PipelineState.RECORDED)
            return

        kind = OutcomeKind.PROVIDER_FAILURE if isinstance(exc, ProviderFailure) else OutcomeKind.REJECTED
        self._record(ctx, kind, exc.status_code, error_type=exc.error_type)

    def _record(
        self,
        ctx: AdmissionContext,
        kind: OutcomeKind,
        http_status: int,
        *,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        error_type: str | None = None,
    ) -> None:
        if ctx.credential is None:
            raise InternalError()
        outcome = UsageOutcome(
            request_id=ctx.request_id,
            owner_id=ctx.credential.owner_id,
            key_id=ctx.credential.key_id,
            model=ctx.model_id,
            kind=kind,
            http_status=http_status,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            latency_ms=ctx.elapsed_ms,
            is_streaming=bool(ctx.payload and ctx.payload.stream),
            error_type=error_type,
            provider=ctx.descriptor.provider.value if ctx.descriptor else None,
            created_at=self._clock(),
        )
        self.background.spawn(
            record_best_effort(self.recorder, outcome, self._record_attempts),
            name=f"record-{ctx.request_id}",
        )
        ctx.advance(PipelineState.RECORDED)

    async def _touch(self, key_id: uuid.UUID) -> None:
        try:
            await self.credentials.touch(key_id)
        except Exception:
            logger.warning("Could not update last_used_at for key %s", key_id, exc_info=True)
