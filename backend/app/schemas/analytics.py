"""
Pydantic v2 response schemas for analytics endpoints.

All monetary fields use Decimal; only rates and percentages are floats.
"""

from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from app.schemas.usage import RequestRecordOut


class UsageByModelOut(BaseModel):
    """Successful requests, tokens and cost for one model in one month."""

    model_config = ConfigDict(from_attributes=True)

    model: str
    request_count: int
    total_tokens: int
    total_cost_usd: Decimal


class UsageSummaryOut(BaseModel):
    """Month-to-date totals plus health of the most recent requests."""

    period: str = Field(examples=["2025-11"])
    total_requests: int
    total_tokens: int
    total_cost_usd: Decimal
    sample_size: int = Field(description="Number of recent ledger rows the rates are computed over")
    success_rate: float = Field(description="Percentage of sampled requests answered with 200")
    avg_latency_ms: int
    recent_requests: list[RequestRecordOut]
