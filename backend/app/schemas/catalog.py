"""
Pydantic v2 schemas for the OpenAI-style model listing.

`created` is a fixed timestamp: the catalog is static, and OpenAI clients
only need the field to exist.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Literal

from pydantic import BaseModel

from app.services.model_registry import ModelDescriptor

CATALOG_CREATED = 1699564800


class Pricing(BaseModel):
    input: Decimal
    output: Decimal


class ModelOut(BaseModel):
    id: str
    object: Literal["model"] = "model"
    created: int = CATALOG_CREATED
    owned_by: str
    name: str
    description: str
    context_window: int
    max_tokens: int
    pricing: Pricing
    capabilities: list[str]
    supports_streaming: bool
    supports_reasoning: bool

    @classmethod
    def from_descriptor(cls, descriptor: ModelDescriptor) -> ModelOut:
        return cls(
            id=descriptor.id,
            owned_by=descriptor.provider.value,
            name=descriptor.name,
            description=descriptor.description,
            context_window=descriptor.context_window_tokens,
            max_tokens=descriptor.max_output_tokens,
            pricing=Pricing(
                input=descriptor.price_per_1k_input,
                output=descriptor.price_per_1k_output,
            ),
            capabilities=sorted(descriptor.capabilities),
            supports_streaming=descriptor.supports_streaming,
            supports_reasoning=descriptor.supports_reasoning_trace,
        )


class ModelListOut(BaseModel):
    object: Literal["list"] = "list"
    data: list[ModelOut]
    total: int
    providers: dict[str, int]
