"""
Pydantic v2 schemas for the OpenAI-compatible chat completions endpoint.

Inbound: ChatCompletionRequest accepts either `messages` or a bare
`prompt` (converted to a single user message). Unknown fields are ignored
so OpenAI SDK clients can send their usual extras.

Outbound: the non-streaming envelope and the streaming chunk, both in
OpenAI's shape with a gateway `metadata` block on the envelope.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatCompletionRequest(BaseModel):
    """Inbound completion request."""

    model_config = ConfigDict(extra="ignore")

    model: str = Field(
        ...,
        min_length=1,
        max_length=100,
        examples=["kimi"],
        description="Model id from GET /v1/models",
    )
    messages: list[ChatMessage] | None = Field(
        default=None,
        description="Conversation so far. Takes precedence over `prompt`.",
    )
    prompt: str | None = Field(
        default=None,
        description="Shorthand for a single user message",
    )
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int | None = Field(
        default=None,
        gt=0,
        description="Output budget; must not exceed the model's max tokens",
    )
    stream: bool = False

    @model_validator(mode="after")
    def _require_messages(self) -> ChatCompletionRequest:
        if not self.messages:
            if not self.prompt:
                raise ValueError("Either 'messages' or 'prompt' is required")
            self.messages = [ChatMessage(role="user", content=self.prompt)]
        return self

    def message_dicts(self) -> tuple[dict[str, str], ...]:
        return tuple({"role": m.role, "content": m.content} for m in self.messages or ())


class Usage(BaseModel):
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


class AssistantMessage(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: str


class Choice(BaseModel):
    index: int = 0
    message: AssistantMessage
    finish_reason: str = "stop"


class CompletionMetadata(BaseModel):
    provider: str
    response_time_ms: int
    has_reasoning: bool
    reasoning_content: str | None = None


class ChatCompletionResponse(BaseModel):
    id: str
    object: Literal["chat.completion"] = "chat.completion"
    created: int
    model: str
    choices: list[Choice]
    usage: Usage
    metadata: CompletionMetadata


class ChunkDelta(BaseModel):
    role: Literal["assistant"] | None = None
    content: str | None = None


class ChunkChoice(BaseModel):
    index: int = 0
    delta: ChunkDelta
    finish_reason: str | None = None


class ChatCompletionChunk(BaseModel):
    id: str
    object: Literal["chat.completion.chunk"] = "chat.completion.chunk"
    created: int
    model: str
    choices: list[ChunkChoice]
    usage: Usage | None = None
