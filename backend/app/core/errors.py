"""
Gateway error taxonomy and its HTTP rendering.

Every rejection the gateway produces is one of these exceptions. The
FastAPI handler registered in app.main renders them as:

    {"error": {"type": "<code>", "message": "<text>"}}

RateLimited additionally carries `retry_after` (ISO-8601) in the body and
a `Retry-After` header in seconds.

Messages for ProviderFailure and InternalError are generic on purpose:
upstream bodies and stack traces go to the log, never to the client.
"""

from __future__ import annotations

import datetime
import math

from fastapi import Request, status
from fastapi.responses import JSONResponse


class GatewayError(Exception):
    """Base class for every error rendered to API clients."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type: str = "internal_error"
    default_message: str = "Internal server error."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_body(self) -> dict:
        return {"error": {"type": self.error_type, "message": self.message}}

    def headers(self) -> dict[str, str] | None:
        return None


class BadRequest(GatewayError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_type = "bad_request"
    default_message = "Malformed request."


class UnknownModel(BadRequest):
    error_type = "unknown_model"

    def __init__(self, model_id: str) -> None:
        self.model_id = model_id
        super().__init__(f"Model '{model_id}' is not available.")


class Unauthorized(GatewayError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error_type = "unauthorized"
    default_message = "Invalid or missing API key."

    def headers(self) -> dict[str, str] | None:
        return {"WWW-Authenticate": "Bearer"}


class Forbidden(GatewayError):
    status_code = status.HTTP_403_FORBIDDEN
    error_type = "forbidden"
    default_message = "You do not have access to this resource."


class KeyNotFound(GatewayError):
    status_code = status.HTTP_404_NOT_FOUND
    error_type = "not_found"
    default_message = "API key not found."


class RateLimited(GatewayError):
    """Per-key request rate exceeded for the current minute window."""

    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error_type = "rate_limited"
    default_message = "Rate limit exceeded. Retry after the current minute window."

    def __init__(
        self,
        retry_after: datetime.datetime,
        message: str | None = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message)

    def to_body(self) -> dict:
        body = super().to_body()
        body["error"]["retry_after"] = self.retry_after.isoformat()
        return body

    def headers(self) -> dict[str, str] | None:
        now = datetime.datetime.now(datetime.timezone.utc)
        seconds = max(1, math.ceil((self.retry_after - now).total_seconds()))
        return {"Retry-After": str(seconds)}


class QuotaExceeded(GatewayError):
    """Owner's monthly token allowance is used up."""

    status_code = status.HTTP_400_BAD_REQUEST
    error_type = "quota_exceeded"
    default_message = "Monthly token quota exceeded. Upgrade your plan to continue."


class ProviderFailure(GatewayError):
    """The upstream provider failed after the internal retry."""

    status_code = status.HTTP_502_BAD_GATEWAY
    error_type = "provider_error"
    default_message = "The upstream model provider failed to complete the request."

    def __init__(self, status_code: int = status.HTTP_502_BAD_GATEWAY) -> None:
        self.status_code = status_code
        super().__init__()


class InternalError(GatewayError):
    pass


# ── FastAPI handler ─────────────────────────────────────────
async def gateway_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    """Render a GatewayError as the standard rejection body."""
    if not isinstance(exc, GatewayError):  # pragma: no cover - registered per type
        exc = InternalError()
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_body(),
        headers=exc.headers(),
    )
