"""
Adapter for OpenAI-compatible upstreams (Groq, Chutes, Cerebras, OpenRouter).

Wire format:
  POST {base_url}/chat/completions
  Authorization: Bearer <provider key>
  {"model", "messages", "temperature", "max_tokens", "stream"}

Streaming responses are SSE: `data: {chunk}` lines ending in
`data: [DONE]`. stream_options.include_usage asks the upstream for a
final usage chunk; when it never comes, ProviderStream estimates.
"""

from __future__ import annotations

import json
import logging
import re
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
from app.services.token_counter import estimate_message_tokens, estimate_tokens

logger = logging.getLogger(__name__)

_THINK_BLOCK = re.compile(r"<think>(.*?)</think>", re.DOTALL)


def split_reasoning(content: str) -> tuple[str, str | None]:
    """Pull a leading <think>…</think> block out of the answer text."""
    match = _THINK_BLOCK.search(content)
    if match is None:
        return content, None
    reasoning = match.group(1).strip()
    answer = (content[: match.start()] + content[match.end():]).strip()
    return answer, reasoning or None


def transport_error(provider: str, exc: httpx.HTTPError) -> ProviderError:
    """Wrap an httpx transport failure; both kinds are worth one retry."""
    if isinstance(exc, httpx.TimeoutException):
        logger.warning("%s upstream timed out: %s", provider, exc)
        return ProviderError(f"{provider} timed out", provider=provider, status=504, retryable=True)
    logger.warning("%s upstream unreachable: %s", provider, exc)
    return ProviderError(f"{provider} unreachable", provider=provider, status=502, retryable=True)


class OpenAICompatibleAdapter(ProviderAdapter):
    def __init__(
        self,
        provider: str,
        base_url: str,
        credentials: CredentialPool,
        client: httpx.AsyncClient,
    ) -> None:
        super().__init__(provider, credentials)
        self.base_url = base_url.rstrip("/")
        self._client = client

    def _headers(self, api_key: str | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def _payload(self, request: ChatRequest, *, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.upstream_model,
            "messages": list(request.messages),
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "stream": stream,
        }
        if stream:
            payload["stream_options"] = {"include_usage": True}
        return payload

    # ── Non-streaming ───────────────────────────────────────
    async def _complete_once(self, request: ChatRequest, api_key: str | None) -> ChatResult:
        try:
            response = await self._client.post(
                f"{self.base_url}/chat/completions",
                json=self._payload(request, stream=False),
                headers=self._headers(api_key),
            )
        except httpx.HTTPError as exc:
            raise transport_error(self.provider, exc) from exc

        if response.status_code >= 400:
            raise classify_status(self.provider, response.status_code, response.text)

        try:
            data = response.json()
            choice = data["choices"][0]
            message = choice["message"]
            content = message.get("content") or ""
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            logger.error("%s returned a malformed completion: %s", self.provider, exc)
            raise ProviderError(
                f"{self.provider} returned a malformed completion",
                provider=self.provider,
                status=502,
            ) from exc

        reasoning = message.get("reasoning_content") or message.get("reasoning")
        if reasoning is None and request.descriptor.supports_reasoning_trace:
            content, reasoning = split_reasoning(content)

        usage = data.get("usage") or {}
        prompt_tokens = usage.get("prompt_tokens")
        completion_tokens = usage.get("completion_tokens")
        return ChatResult(
            text=content,
            prompt_tokens=int(prompt_tokens) if prompt_tokens is not None else estimate_message_tokens(request.messages),
            completion_tokens=int(completion_tokens) if completion_tokens is not None else estimate_tokens(content),
            reasoning=reasoning,
            finish_reason=choice.get("finish_reason") or "stop",
        )

    # ── Streaming ───────────────────────────────────────────
    async def _open_stream_once(self, request: ChatRequest, api_key: str | None) -> ProviderStream:
        http_request = self._client.build_request(
            "POST",
            f"{self.base_url}/chat/completions",
            json=self._payload(request, stream=True),
            headers=self._headers(api_key),
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
        prompt_tokens: int | None = None
        completion_tokens: int | None = None
        finish_reason = "stop"

        try:
            async for line in response.aiter_lines():
                line = line.strip()
                if not line.startswith("data:"):
                    continue
                payload = line[5:].strip()
                if not payload:
                    continue
                if payload == "[DONE]":
                    break
                try:
                    chunk = json.loads(payload)
                except json.JSONDecodeError:
                    logger.debug("%s sent an unparseable stream line: %.200s", self.provider, payload)
                    continue

                if "error" in chunk:
                    logger.warning("%s stream error: %.500s", self.provider, payload)
                    raise ProviderError(
                        f"{self.provider} stream error",
                        provider=self.provider,
                        status=502,
                    )

                usage = chunk.get("usage")
                if usage:
                    prompt_tokens = usage.get("prompt_tokens", prompt_tokens)
                    completion_tokens = usage.get("completion_tokens", completion_tokens)

                for choice in chunk.get("choices") or []:
                    content = (choice.get("delta") or {}).get("content")
                    if content:
                        yield StreamDelta(content)
                    if choice.get("finish_reason"):
                        finish_reason = choice["finish_reason"]
        except httpx.HTTPError as exc:
            raise transport_error(self.provider, exc) from exc

        yield StreamDone(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            finish_reason=finish_reason,
        )
