"""
Usage recorder — the write side of the request ledger.

record(outcome) appends one RequestRecord and adds any delivered tokens
and their cost to the owner's UsageWindow for the month, whatever the
outcome. A stream that fails partway still bills what it sent. Only
successful requests count towards total_requests. Both writes share one
transaction.

Recording runs off the response path. record_best_effort() retries once
and then logs the complete outcome at ERROR so a lost write can be
reconciled by hand. It never raises.
"""

from __future__ import annotations

import collections
import datetime
import enum
import logging
import uuid
from dataclasses import asdict, dataclass, field
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database import upsert_for
from app.models.usage import RequestRecord, UsageWindow
from app.services.cost_calculator import calculate_cost
from app.services.model_registry import ModelRegistry
from app.services.rate_limiter import period_key

logger = logging.getLogger(__name__)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class OutcomeKind(str, enum.Enum):
    SUCCESS = "success"
    REJECTED = "rejected"
    PROVIDER_FAILURE = "provider_failure"


@dataclass(frozen=True, slots=True)
class UsageOutcome:
    """Everything the ledger needs to know about one finished request."""

    request_id: str
    owner_id: str
    key_id: uuid.UUID | None
    model: str
    kind: OutcomeKind
    http_status: int
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: int = 0
    is_streaming: bool = False
    error_type: str | None = None
    provider: str | None = None
    created_at: datetime.datetime = field(default_factory=_utcnow)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True, slots=True)
class ModelUsage:
    model: str
    request_count: int
    total_tokens: int
    total_cost_usd: Decimal


@dataclass(frozen=True, slots=True)
class WindowTotals:
    owner_id: str
    period_key: str
    total_tokens: int = 0
    total_requests: int = 0
    total_cost: Decimal = Decimal("0")


# ── SQL backend ─────────────────────────────────────────────
class SqlUsageRecorder:
    """Ledger in request_records, monthly totals in usage_windows."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: ModelRegistry,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry

    async def record(self, outcome: UsageOutcome) -> None:
        cost = calculate_cost(
            self._registry.by_id(outcome.model),
            outcome.prompt_tokens,
            outcome.completion_tokens,
        )
        counted = int(outcome.kind is OutcomeKind.SUCCESS)

        async with self._session_factory() as session:
            session.add(
                RequestRecord(
                    request_id=outcome.request_id,
                    owner_id=outcome.owner_id,
                    api_key_id=outcome.key_id,
                    model=outcome.model,
                    provider=outcome.provider,
                    prompt_tokens=outcome.prompt_tokens,
                    completion_tokens=outcome.completion_tokens,
                    total_tokens=outcome.total_tokens,
                    cost_usd=cost,
                    http_status=outcome.http_status,
                    outcome=outcome.kind.value,
                    error_type=outcome.error_type,
                    latency_ms=outcome.latency_ms,
                    is_streaming=outcome.is_streaming,
                    created_at=outcome.created_at,
                )
            )

            if outcome.total_tokens > 0 or counted:
                insert = upsert_for(session)
                stmt = insert(UsageWindow).values(
                    owner_id=outcome.owner_id,
                    period_key=period_key(outcome.created_at),
                    total_tokens=outcome.total_tokens,
                    total_requests=counted,
                    total_cost=cost,
                    updated_at=_utcnow(),
                ).on_conflict_do_update(
                    index_elements=["owner_id", "period_key"],
                    set_={
                        "total_tokens": UsageWindow.total_tokens + outcome.total_tokens,
                        "total_requests": UsageWindow.total_requests + counted,
                        "total_cost": UsageWindow.total_cost + cost,
                        "updated_at": _utcnow(),
                    },
                )
                await session.execute(stmt)

            await session.commit()

    async def tokens_used(self, owner_id: str, period: str) -> int:
        window = await self.get_window(owner_id, period)
        return window.total_tokens

    async def get_window(self, owner_id: str, period: str) -> WindowTotals:
        async with self._session_factory() as session:
            row = await session.get(UsageWindow, (owner_id, period))
        if row is None:
            return WindowTotals(owner_id=owner_id, period_key=period)
        return WindowTotals(
            owner_id=owner_id,
            period_key=period,
            total_tokens=row.total_tokens,
            total_requests=row.total_requests,
            total_cost=Decimal(row.total_cost),
        )

    async def list_records(
        self,
        owner_id: str,
        *,
        model: str | None = None,
        http_status: int | None = None,
        limit: int = 50,
    ) -> list[RequestRecord]:
        stmt = select(RequestRecord).where(RequestRecord.owner_id == owner_id)
        if model:
            stmt = stmt.where(RequestRecord.model == model)
        if http_status is not None:
            stmt = stmt.where(RequestRecord.http_status == http_status)
        stmt = stmt.order_by(RequestRecord.created_at.desc()).limit(limit)

        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def usage_by_model(self, owner_id: str, period: str) -> list[ModelUsage]:
        """
        SQL: SELECT model, COUNT(*), SUM(total_tokens), SUM(cost_usd)
             FROM request_records WHERE owner_id = ? AND outcome = 'success'
             AND created_at in the month GROUP BY model
        """
        start = datetime.datetime.strptime(period, "%Y-%m").replace(tzinfo=datetime.timezone.utc)
        end = (start + datetime.timedelta(days=32)).replace(day=1)

        stmt = (
            select(
                RequestRecord.model,
                func.count().label("request_count"),
                func.sum(RequestRecord.total_tokens).label("total_tokens"),
                func.sum(RequestRecord.cost_usd).label("total_cost_usd"),
            )
            .where(
                RequestRecord.owner_id == owner_id,
                RequestRecord.outcome == OutcomeKind.SUCCESS.value,
                RequestRecord.created_at >= start,
                RequestRecord.created_at < end,
            )
            .group_by(RequestRecord.model)
            .order_by(func.sum(RequestRecord.total_tokens).desc())
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()

        return [
            ModelUsage(
                model=row.model,
                request_count=row.request_count,
                total_tokens=row.total_tokens or 0,
                total_cost_usd=Decimal(row.total_cost_usd or 0),
            )
            for row in rows
        ]


# ── In-memory backend ───────────────────────────────────────
class MemoryUsageRecorder:
    """List-backed ledger. Single process only."""

    def __init__(self, registry: ModelRegistry) -> None:
        self._registry = registry
        self.records: list[RequestRecord] = []
        self._windows: dict[tuple[str, str], WindowTotals] = {}

    async def record(self, outcome: UsageOutcome) -> None:
        cost = calculate_cost(
            self._registry.by_id(outcome.model),
            outcome.prompt_tokens,
            outcome.completion_tokens,
        )
        counted = int(outcome.kind is OutcomeKind.SUCCESS)
        self.records.append(
            RequestRecord(
                id=uuid.uuid4(),
                request_id=outcome.request_id,
                owner_id=outcome.owner_id,
                api_key_id=outcome.key_id,
                model=outcome.model,
                provider=outcome.provider,
                prompt_tokens=outcome.prompt_tokens,
                completion_tokens=outcome.completion_tokens,
                total_tokens=outcome.total_tokens,
                cost_usd=cost,
                http_status=outcome.http_status,
                outcome=outcome.kind.value,
                error_type=outcome.error_type,
                latency_ms=outcome.latency_ms,
                is_streaming=outcome.is_streaming,
                created_at=outcome.created_at,
            )
        )

        if outcome.total_tokens > 0 or counted:
            key = (outcome.owner_id, period_key(outcome.created_at))
            current = self._windows.get(key) or WindowTotals(*key)
            self._windows[key] = WindowTotals(
                owner_id=current.owner_id,
                period_key=current.period_key,
                total_tokens=current.total_tokens + outcome.total_tokens,
                total_requests=current.total_requests + counted,
                total_cost=current.total_cost + cost,
            )

    async def tokens_used(self, owner_id: str, period: str) -> int:
        return (await self.get_window(owner_id, period)).total_tokens

    async def get_window(self, owner_id: str, period: str) -> WindowTotals:
        return self._windows.get((owner_id, period)) or WindowTotals(owner_id, period)

    async def list_records(
        self,
        owner_id: str,
        *,
        model: str | None = None,
        http_status: int | None = None,
        limit: int = 50,
    ) -> list[RequestRecord]:
        rows = [
            r for r in reversed(self.records)
            if r.owner_id == owner_id
            and (not model or r.model == model)
            and (http_status is None or r.http_status == http_status)
        ]
        return rows[:limit]

    async def usage_by_model(self, owner_id: str, period: str) -> list[ModelUsage]:
        requests: collections.Counter[str] = collections.Counter()
        tokens: collections.Counter[str] = collections.Counter()
        costs: dict[str, Decimal] = collections.defaultdict(Decimal)
        for r in self.records:
            if (
                r.owner_id != owner_id
                or r.outcome != OutcomeKind.SUCCESS.value
                or period_key(r.created_at) != period
            ):
                continue
            requests[r.model] += 1
            tokens[r.model] += r.total_tokens
            costs[r.model] += r.cost_usd

        return [
            ModelUsage(
                model=model,
                request_count=requests[model],
                total_tokens=tokens[model],
                total_cost_usd=costs[model],
            )
            for model, _ in tokens.most_common()
        ]


# ── Error boundary for fire-and-forget writes ──────────────
async def record_best_effort(recorder, outcome: UsageOutcome, attempts: int = 2) -> bool:
    """
    Write `outcome`, retrying up to `attempts` times in total.

    Returns True when the write landed. On final failure the whole outcome
    is logged at ERROR for reconciliation; nothing is raised.
    """
    for attempt in range(1, max(1, attempts) + 1):
        try:
            await recorder.record(outcome)
            return True
        except Exception:
            logger.warning(
                "Usage record attempt %d/%d failed for request %s",
                attempt,
                attempts,
                outcome.request_id,
                exc_info=True,
            )

    fields = asdict(outcome)
    fields["kind"] = outcome.kind.value
    fields["total_tokens"] = outcome.total_tokens
    logger.error("USAGE RECORD LOST, reconcile manually: %s", fields)
    return False
