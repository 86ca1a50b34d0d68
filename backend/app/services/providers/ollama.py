"""
Adapter for a local Ollama server.

Wire format:
  POST {base_url}/api/chat
  {"model", "messages", "stream", "options": {"temperature", "num_predict"}}

Streams are newline-delimited JSON; the last object has "done": true and
carries prompt_eval_count / eval_count. No credential is needed.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from app.services.providers.base import (
    ChatRequest,
    ChatResult,
    CredentialPool,
    ProviderAdapter,
    ProviderError,
    ProviderStream,
    StreamDelta,
    StreamDone,
    StreamEvent,
    classify_status,
)
from app.services.providers.openai_compat import split_reasoning, transport_error
from app.services.token_counter import estimate_message_tokens, estimate_tokens

logger = logging.getLogger(__name__)


class OllamaAdapter(ProviderAdapter):
    def __init__(self, base_url: str, client: httpx.AsyncClient, provider: str = "ollama") -> None:
        super().__init__(provider, CredentialPool(provider, [None]))
        self.base_url = base_url.rstrip("/")
        self._client = client

    def _payload(self, request: ChatRequest, *, stream: bool) -> dict[str, Any]:
        return {
            "model": request.upstream_model,
            "messages": list(request.messages),
            "stream": stream,
            "options": {
                "temperature": request.temperature,
                "num_predict": request.max_tokens,
            },
        }

    async def _complete_once(self, request: ChatRequest, api_key: str | None) -> ChatResult:
        try:
            response = await self._client.post(
                f"{self.base_url}/api/chat",
                json=self._payload(request, stream=False),
            )
        except httpx.HTTPError as exc:
            raise transport_error(self.provider, exc) from exc

        if response.status_code >= 400:
            raise classify_status(self.provider, response.status_code, response.text)

        try:
            data = response.json()
            message = data["message"]
            content = message.get("content") or ""
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("%s returned a malformed completion: %s", self.provider, exc)
            raise ProviderError(
                f"{self.provider} returned a malformed completion",
                provider=self.provider,
                status=502,
            ) from exc

        reasoning = message.get("thinking")
        if reasoning is None and request.descriptor.supports_reasoning_trace:
            content, reasoning = split_reasoning(content)

        return ChatResult(
            text=content,
            prompt_tokens=data.get("prompt_eval_count") or estimate_message_tokens(request.messages),
            completion_tokens=data.get("eval_count") or estimate_tokens(content),
            reasoning=reasoning,
            finish_reason=data.get("done_reason") or "stop",
        )

    async def _open_stream_once(self, request: ChatRequest, api_key: str | None) -> ProviderStream:
        http_request = self._client.build_request(
            "POST",
            f"{self.base_url}/api/chat",
            json=self._payload(request, stream=True),
        )
        try:
            response = await self._client.send(http_request, stream=True)
        except httpx.HTTPError as exc:
            raise transport_error(self.provider, exc) from exc

        if response.status_code >= 400:
            try:
                body = (await response.aread()).decode("utf-8", errors="replace")
            finally:
                await response.aclose()
            raise classify_status(self.provider, response.status_code, body)

        return ProviderStream(self._events(response), response.aclose, request)

    async def _events(self, response: httpx.Response) -> AsyncIterator[StreamEvent]:
        try:
            async for line in response.aiter_lines():
                line = line.strip()
                if not line:
                    continue
                try:
                    chunk = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("%s sent an unparseable stream line: %.200s", self.provider, line)
                    continue

                if "error" in chunk:
                    logger.warning("%s stream error: %.500s", self.provider, line)
                    raise ProviderError(
                        f"{self.provider} stream error",
                        provider=self.provider,
                        status=502,
                    )

                content = (chunk.get("message") or {}).get("content")
                if content:
                    yield StreamDelta(content)

                if chunk.get("done"):
                    yield StreamDone(
                        prompt_tokens=chunk.get("prompt_eval_count"),
                        completion_tokens=chunk.get("eval_count"),
                        finish_reason=chunk.get("done_reason") or "stop",
                    )
                    return
        except httpx.HTTPError as exc:
            raise transport_error(self.provider, exc) from exc

        yield StreamDone()
