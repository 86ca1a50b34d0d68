"""
Quota & rate limiter.

Two independent checks run on the admission path:
  • Rate  — per API key, fixed one-minute windows, tier's requests_per_minute.
  • Quota — per owner, calendar month (UTC), tier's tokens_per_month.

Design decisions:
  • Increment-and-compare is ONE atomic step. The SQL backend issues a
    single INSERT … ON CONFLICT DO UPDATE … WHERE request_count < limit
    RETURNING request_count; no returned row means the key is at its limit.
    N concurrent requests against a limit of L admit exactly min(N, L).
  • Rejected requests never increment the counter.
  • Quota is check-before, not cap-during: a request admitted with
    1 token left may finish far above the allowance. The next request
    is rejected.
  • Fixed windows allow up to 2×limit across a minute boundary.
    Accepted for simplicity; swap for a sliding log if it matters.
"""

from __future__ import annotations

import asyncio
import collections
import datetime
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database import upsert_for
from app.models.rate_limit_counter import RateLimitCounter
from app.models.usage import UsageWindow
from app.services.tiers import TierLimits

logger = logging.getLogger(__name__)

WINDOW = datetime.timedelta(minutes=1)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def minute_bucket(now: datetime.datetime) -> datetime.datetime:
    """Floor a timestamp to the start of the current minute (UTC)."""
    return now.astimezone(datetime.timezone.utc).replace(second=0, microsecond=0)


def period_key(now: datetime.datetime) -> str:
    """Calendar-month usage window key, e.g. '2025-11'."""
    return now.astimezone(datetime.timezone.utc).strftime("%Y-%m")


@dataclass(frozen=True, slots=True)
class RateDecision:
    admitted: bool
    count: int
    limit: int
    retry_after: datetime.datetime


@dataclass(frozen=True, slots=True)
class QuotaDecision:
    admitted: bool
    used: int
    limit: int | None


def _quota_decision(used: int, tier: TierLimits) -> QuotaDecision:
    if tier.tokens_per_month is None:
        return QuotaDecision(admitted=True, used=used, limit=None)
    return QuotaDecision(
        admitted=used < tier.tokens_per_month,
        used=used,
        limit=tier.tokens_per_month,
    )


# ── SQL backend ─────────────────────────────────────────────
class SqlRateLimiter:
    """Counters in rate_limit_counters, usage in usage_windows."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime.datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def check_and_increment_rate(
        self,
        key_id: uuid.UUID,
        tier: TierLimits,
    ) -> RateDecision:
        """
        Admit one request for `key_id` in the current minute, or reject.

        The counter only moves when the request is admitted.
        """
        window_start = minute_bucket(self._clock())
        retry_after = window_start + WINDOW
        limit = tier.requests_per_minute

        if limit <= 0:
            return RateDecision(admitted=False, count=0, limit=limit, retry_after=retry_after)

        async with self._session_factory() as session:
            insert = upsert_for(session)
            stmt = (
                insert(RateLimitCounter)
                .values(api_key_id=key_id, window_start=window_start, request_count=1)
                .on_conflict_do_update(
                    index_elements=["api_key_id", "window_start"],
                    set_={"request_count": RateLimitCounter.request_count + 1},
                    where=RateLimitCounter.request_count < limit,
                )
                .returning(RateLimitCounter.request_count)
            )
            count = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()

        if count is None:
            logger.info("Rate limit hit for key %s (limit=%d/min)", key_id, limit)
            return RateDecision(admitted=False, count=limit, limit=limit, retry_after=retry_after)

        return RateDecision(admitted=True, count=count, limit=limit, retry_after=retry_after)

    async def check_quota(
        self,
        owner_id: str,
        tier: TierLimits,
        period: str,
    ) -> QuotaDecision:
        """Compare the owner's token usage this month with the tier allowance."""
        stmt = select(UsageWindow.total_tokens).where(
            UsageWindow.owner_id == owner_id,
            UsageWindow.period_key == period,
        )
        async with self._session_factory() as session:
            used = (await session.execute(stmt)).scalar_one_or_none() or 0
        return _quota_decision(used, tier)

    async def prune_windows(self, before: datetime.datetime) -> int:
        """Delete counters for windows that started before `before`."""
        stmt = delete(RateLimitCounter).where(RateLimitCounter.window_start < before)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount or 0


# ── In-memory backend ───────────────────────────────────────
class MemoryRateLimiter:
    """
    Process-local counters guarded by one asyncio.Lock per key.

    `usage_source(owner_id, period)` returns tokens used this month; the
    memory usage recorder provides it.
    """

    def __init__(
        self,
        usage_source: Callable[[str, str], Awaitable[int]],
        clock: Callable[[], datetime.datetime] = _utcnow,
    ) -> None:
        self._usage_source = usage_source
        self._clock = clock
        self._counters: dict[tuple[uuid.UUID, datetime.datetime], int] = {}
        self._locks: collections.defaultdict[uuid.UUID, asyncio.Lock] = collections.defaultdict(asyncio.Lock)

    async def check_and_increment_rate(
        self,
        key_id: uuid.UUID,
        tier: TierLimits,
    ) -> RateDecision:
        window_start = minute_bucket(self._clock())
        retry_after = window_start + WINDOW
        limit = tier.requests_per_minute

        async with self._locks[key_id]:
            count = self._counters.get((key_id, window_start), 0)
            if count >= limit:
                logger.info("Rate limit hit for key %s (limit=%d/min)", key_id, limit)
                return RateDecision(admitted=False, count=count, limit=limit, retry_after=retry_after)
            count += 1
            self._counters[(key_id, window_start)] = count

        return RateDecision(admitted=True, count=count, limit=limit, retry_after=retry_after)

    async def check_quota(
        self,
        owner_id: str,
        tier: TierLimits,
        period: str,
    ) -> QuotaDecision:
        used = await self._usage_source(owner_id, period)
        return _quota_decision(used, tier)

    async def prune_windows(self, before: datetime.datetime) -> int:
        expired = [k for k in self._counters if k[1] < before]
        for k in expired:
            del self._counters[k]
        return len(expired)
