"""
OpenAI-compatible chat completions.

The router is deliberately thin: it reads the body and the API key and
hands both to the admission pipeline, which owns validation, auth, rate,
quota, dispatch and recording. Rejections are GatewayErrors rendered by
the handler in app.main.

Endpoints:
  POST /v1/chat/completions — JSON envelope, or SSE when "stream": true
"""

import json
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse

from app.auth.dependencies import extract_api_key
from app.core.runtime import RuntimeDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Chat"])

_STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.post(
    "/chat/completions",
    summary="Create a chat completion",
    description=(
        "Accepts OpenAI-style `messages` (or a bare `prompt`). "
        "Authenticate with `Authorization: Bearer nxq_…` or `X-API-Key`. "
        "With `stream: true` the response is `text/event-stream` ending in `data: [DONE]`."
    ),
)
async def create_chat_completion(request: Request, runtime: RuntimeDep):
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        body = None

    result = await runtime.pipeline.handle(body, extract_api_key(request.headers))

    headers = {"X-Request-Id": result.request_id}
    if result.frames is not None:
        return StreamingResponse(
            result.frames,
            media_type="text/event-stream",
            headers={**_STREAM_HEADERS, **headers},
        )
    return JSONResponse(content=result.body, headers=headers)
