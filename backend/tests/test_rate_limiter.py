"""
Tests for the in-memory rate limiter and quota check.
"""

import asyncio
import datetime
import uuid

import pytest

from app.services.rate_limiter import MemoryRateLimiter, minute_bucket, period_key
from app.services.tiers import ENTERPRISE, TierLimits

UTC = datetime.timezone.utc


def _tier(rpm: int, tokens: int | None = 1000) -> TierLimits:
    return TierLimits(name="Test", tokens_per_month=tokens, requests_per_minute=rpm)


def _usage(used: dict[tuple[str, str], int]):
    async def source(owner_id: str, period: str) -> int:
        return used.get((owner_id, period), 0)
    return source


class TestWindowHelpers:
    def test_minute_bucket_floors(self):
        ts = datetime.datetime(2025, 11, 14, 9, 30, 59, 999999, tzinfo=UTC)
        assert minute_bucket(ts) == datetime.datetime(2025, 11, 14, 9, 30, tzinfo=UTC)

    def test_minute_bucket_normalises_to_utc(self):
        plus_two = datetime.timezone(datetime.timedelta(hours=2))
        ts = datetime.datetime(2025, 11, 14, 11, 30, 5, tzinfo=plus_two)
        assert minute_bucket(ts) == datetime.datetime(2025, 11, 14, 9, 30, tzinfo=UTC)

    def test_period_key(self):
        assert period_key(datetime.datetime(2025, 1, 31, 23, 59, tzinfo=UTC)) == "2025-01"


class TestRate:
    @pytest.mark.asyncio
    async def test_admits_up_to_limit_then_rejects(self, clock):
        limiter = MemoryRateLimiter(_usage({}), clock=clock)
        key = uuid.uuid4()

        decisions = [await limiter.check_and_increment_rate(key, _tier(3)) for _ in range(4)]

        assert [d.admitted for d in decisions] == [True, True, True, False]
        assert [d.count for d in decisions[:3]] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_retry_after_is_next_minute(self, clock):
        limiter = MemoryRateLimiter(_usage({}), clock=clock)
        decision = await limiter.check_and_increment_rate(uuid.uuid4(), _tier(0))

        assert decision.admitted is False
        assert decision.retry_after == datetime.datetime(2025, 11, 14, 9, 31, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_new_window_resets(self, clock):
        limiter = MemoryRateLimiter(_usage({}), clock=clock)
        key = uuid.uuid4()
        assert (await limiter.check_and_increment_rate(key, _tier(1))).admitted
        assert not (await limiter.check_and_increment_rate(key, _tier(1))).admitted

        clock.advance(minutes=1)
        assert (await limiter.check_and_increment_rate(key, _tier(1))).admitted

    @pytest.mark.asyncio
    async def test_rejection_does_not_increment(self, clock):
        limiter = MemoryRateLimiter(_usage({}), clock=clock)
        key = uuid.uuid4()
        await limiter.check_and_increment_rate(key, _tier(1))
        for _ in range(5):
            rejected = await limiter.check_and_increment_rate(key, _tier(1))
        assert rejected.count == 1

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, clock):
        limiter = MemoryRateLimiter(_usage({}), clock=clock)
        a, b = uuid.uuid4(), uuid.uuid4()
        await limiter.check_and_increment_rate(a, _tier(1))
        assert (await limiter.check_and_increment_rate(b, _tier(1))).admitted

    @pytest.mark.asyncio
    async def test_concurrent_requests_admit_exactly_limit(self, clock):
        limiter = MemoryRateLimiter(_usage({}), clock=clock)
        key = uuid.uuid4()
        n = 25

        decisions = await asyncio.gather(
            *(limiter.check_and_increment_rate(key, _tier(n - 1)) for _ in range(n))
        )

        assert sum(d.admitted for d in decisions) == n - 1

    @pytest.mark.asyncio
    async def test_prune_removes_old_windows(self, clock):
        limiter = MemoryRateLimiter(_usage({}), clock=clock)
        key = uuid.uuid4()
        await limiter.check_and_increment_rate(key, _tier(5))
        clock.advance(minutes=5)
        await limiter.check_and_increment_rate(key, _tier(5))

        removed = await limiter.prune_windows(clock() - datetime.timedelta(minutes=1))

        assert removed == 1


class TestQuota:
    @pytest.mark.asyncio
    async def test_under_allowance_admitted(self):
        limiter = MemoryRateLimiter(_usage({("o", "2025-11"): 999}))
        decision = await limiter.check_quota("o", _tier(10, 1000), "2025-11")
        assert decision.admitted
        assert decision.used == 999

    @pytest.mark.asyncio
    async def test_at_allowance_rejected(self):
        limiter = MemoryRateLimiter(_usage({("o", "2025-11"): 1000}))
        decision = await limiter.check_quota("o", _tier(10, 1000), "2025-11")
        assert not decision.admitted
        assert decision.limit == 1000

    @pytest.mark.asyncio
    async def test_unbounded_tier_always_admitted(self):
        limiter = MemoryRateLimiter(_usage({("o", "2025-11"): 10**12}))
        decision = await limiter.check_quota("o", ENTERPRISE, "2025-11")
        assert decision.admitted
        assert decision.limit is None

    @pytest.mark.asyncio
    async def test_other_period_does_not_count(self):
        limiter = MemoryRateLimiter(_usage({("o", "2025-10"): 5000}))
        assert (await limiter.check_quota("o", _tier(10, 1000), "2025-11")).admitted
