"""
Request identity helpers.

Two kinds of caller:
  1. API clients on /v1/chat/completions — identified by a gateway API
     key. extract_api_key() only pulls the raw secret out of the headers;
     the admission pipeline resolves it, so auth failures go through the
     same rejection/recording path as every other failure.
  2. Portal users on management routes (/keys, /usage) — identified by
     the external identity provider, which sets X-Owner-Id after verifying
     the session. get_current_owner() trusts that header and nothing else.

Security:
  • Generic 401 for ALL failure modes (missing, malformed)
  • Raw keys are NEVER logged
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Header
from starlette.datastructures import Headers

from app.core.errors import Unauthorized


def extract_api_key(headers: Headers) -> str | None:
    """
    Raw API key from `Authorization: Bearer <key>` or `X-API-Key: <key>`.

    Returns None when neither header carries a usable value.
    """
    authorization = headers.get("authorization")
    if authorization:
        parts = authorization.split(" ", maxsplit=1)
        if len(parts) == 2 and parts[0].lower() == "bearer" and parts[1].strip():
            return parts[1].strip()

    api_key = headers.get("x-api-key")
    if api_key and api_key.strip():
        return api_key.strip()
    return None


async def get_current_owner(
    x_owner_id: str | None = Header(default=None, alias="X-Owner-Id"),
) -> str:
    """
    FastAPI dependency — the owner id asserted by the identity provider.

    Usage in routers:
        Owner = Annotated[str, Depends(get_current_owner)]
    """
    if not x_owner_id or not x_owner_id.strip():
        raise Unauthorized("Missing identity. Sign in to the portal.")
    return x_owner_id.strip()


Owner = Annotated[str, Depends(get_current_owner)]
