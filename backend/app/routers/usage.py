"""
Owner-facing usage endpoints.

Endpoints:
  GET /usage/quota     — plan, monthly token allowance and consumption
  GET /usage/requests  — recent ledger rows (filters: model, status, limit)
"""

import datetime
from typing import Annotated

from fastapi import APIRouter, Query

from app.auth.dependencies import Owner
from app.core.runtime import RuntimeDep
from app.schemas.usage import QuotaOut, RequestRecordOut
from app.services.rate_limiter import period_key

router = APIRouter(tags=["Usage"])


@router.get(
    "/quota",
    response_model=QuotaOut,
    summary="Current-month quota status",
)
async def get_quota(owner_id: Owner, runtime: RuntimeDep) -> QuotaOut:
    period = period_key(datetime.datetime.now(datetime.timezone.utc))
    tier = await runtime.credentials.tier_for_owner(owner_id)
    window = await runtime.recorder.get_window(owner_id, period)

    limit = tier.tokens_per_month
    if limit is None:
        remaining = None
        percentage = 0.0
    else:
        remaining = max(0, limit - window.total_tokens)
        percentage = round(window.total_tokens / limit * 100, 2) if limit else 100.0

    return QuotaOut(
        current_plan=tier.name,
        current_month=period,
        tokens_limit=limit,
        tokens_used=window.total_tokens,
        tokens_remaining=remaining,
        token_percentage=percentage,
        requests_per_minute=tier.requests_per_minute,
        total_requests=window.total_requests,
        total_cost_usd=window.total_cost,
    )


@router.get(
    "/requests",
    response_model=list[RequestRecordOut],
    summary="Request history",
    description="Newest first. Filter by model id and/or HTTP status.",
)
async def list_requests(
    owner_id: Owner,
    runtime: RuntimeDep,
    model: str | None = None,
    status: int | None = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> list[RequestRecordOut]:
    records = await runtime.recorder.list_records(
        owner_id,
        model=model,
        http_status=status,
        limit=limit,
    )
    return [RequestRecordOut.model_validate(r, from_attributes=True) for r in records]
