"""
Analytics router — aggregated usage for the signed-in owner.

Aggregation happens in the recorder (SQL GROUP BY for the SQL backend).
Decimal precision is preserved end-to-end (DB NUMERIC → Python Decimal → JSON string).

Endpoints:
  GET /analytics/by-model — requests, tokens and cost per model for a month
  GET /analytics/summary  — month-to-date totals, success rate and latency
                            over the most recent requests
"""

import datetime
from typing import Annotated

from fastapi import APIRouter, Query

from app.auth.dependencies import Owner
from app.core.runtime import RuntimeDep
from app.schemas.analytics import UsageByModelOut, UsageSummaryOut
from app.schemas.usage import RequestRecordOut
from app.services.rate_limiter import period_key

router = APIRouter(tags=["Analytics"])

RECENT_SAMPLE = 24


@router.get(
    "/by-model",
    response_model=list[UsageByModelOut],
    summary="Usage breakdown per model",
    description=(
        "Successful requests only, grouped by model, largest token volume first. "
        "Defaults to the current UTC month."
    ),
)
async def get_usage_by_model(
    owner_id: Owner,
    runtime: RuntimeDep,
    period: Annotated[str | None, Query(pattern=r"^\d{4}-(0[1-9]|1[0-2])$")] = None,
) -> list[UsageByModelOut]:
    period = period or period_key(datetime.datetime.now(datetime.timezone.utc))
    rows = await runtime.recorder.usage_by_model(owner_id, period)
    return [UsageByModelOut.model_validate(row, from_attributes=True) for row in rows]


@router.get(
    "/summary",
    response_model=UsageSummaryOut,
    summary="Month-to-date usage summary",
)
async def get_usage_summary(owner_id: Owner, runtime: RuntimeDep) -> UsageSummaryOut:
    period = period_key(datetime.datetime.now(datetime.timezone.utc))
    window = await runtime.recorder.get_window(owner_id, period)
    recent = await runtime.recorder.list_records(owner_id, limit=RECENT_SAMPLE)

    if recent:
        succeeded = sum(1 for r in recent if r.http_status == 200)
        success_rate = round(succeeded / len(recent) * 100, 1)
        avg_latency = round(sum(r.latency_ms or 0 for r in recent) / len(recent))
    else:
        success_rate = 0.0
        avg_latency = 0

    return UsageSummaryOut(
        period=period,
        total_requests=window.total_requests,
        total_tokens=window.total_tokens,
        total_cost_usd=window.total_cost,
        sample_size=len(recent),
        success_rate=success_rate,
        avg_latency_ms=avg_latency,
        recent_requests=[RequestRecordOut.model_validate(r, from_attributes=True) for r in recent],
    )
