"""
Pydantic v2 response schemas for the owner-facing usage endpoints.

All monetary fields use Decimal — no floats anywhere.
RequestRecordOut uses from_attributes=True so ORM rows map directly.
"""

from __future__ import annotations

import datetime
import uuid
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class QuotaOut(BaseModel):
    """Current-month allowance for the signed-in owner."""

    current_plan: str
    current_month: str = Field(examples=["2025-11"])
    tokens_limit: int | None = Field(description="None = unbounded")
    tokens_used: int
    tokens_remaining: int | None
    token_percentage: float
    requests_per_minute: int
    total_requests: int
    total_cost_usd: Decimal


class RequestRecordOut(BaseModel):
    """One ledger row."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    request_id: str
    api_key_id: uuid.UUID | None
    model: str
    provider: str | None
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost_usd: Decimal
    http_status: int
    outcome: str
    error_type: str | None
    latency_ms: int
    is_streaming: bool
    created_at: datetime.datetime
