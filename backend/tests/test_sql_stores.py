"""
SQL-backed stores against in-memory SQLite.

Same dialect-aware upsert paths as Postgres (ON CONFLICT … RETURNING).
Most calls are sequential: session_factory shares one connection.
Concurrency tests use file_session_factory, one connection per session
on a database file, so SQLite locking is what serialises them.
"""

import asyncio
import datetime
import uuid
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.database import Base
from app.core.errors import BadRequest, Forbidden, KeyNotFound
from app.services.credential_store import SqlCredentialStore
from app.services.rate_limiter import SqlRateLimiter
from app.services.tiers import FREE, TierLimits
from app.services.usage_recorder import OutcomeKind, SqlUsageRecorder, UsageOutcome

UTC = datetime.timezone.utc
NOV = datetime.datetime(2025, 11, 14, 10, 0, tzinfo=UTC)


@pytest.fixture
def store(session_factory):
    return SqlCredentialStore(session_factory, FREE)


@pytest.fixture
def sql_recorder(session_factory, registry):
    return SqlUsageRecorder(session_factory, registry)


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'gateway.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )

    # Writers take the lock when the transaction starts, so two sessions
    # never both hold a read lock while waiting to write.
    @event.listens_for(engine.sync_engine, "connect")
    def _autocommit_driver(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


def _outcome(key_id, **overrides) -> UsageOutcome:
    fields = dict(
        request_id=uuid.uuid4().hex,
        owner_id="owner-a",
        key_id=key_id,
        model="priced-model",
        kind=OutcomeKind.SUCCESS,
        http_status=200,
        prompt_tokens=1000,
        completion_tokens=2000,
        provider="groq",
        created_at=NOV,
    )
    fields.update(overrides)
    return UsageOutcome(**fields)


class TestSqlCredentialStore:
    @pytest.mark.asyncio
    async def test_create_resolve_revoke(self, store):
        issued = await store.create("owner-a", "primary")

        resolved = await store.resolve(issued.raw_secret)
        assert resolved.key_id == issued.key_id
        assert resolved.owner_id == "owner-a"
        assert resolved.tier == FREE

        await store.revoke(issued.key_id, "owner-a")
        assert await store.resolve(issued.raw_secret) is None

    @pytest.mark.asyncio
    async def test_unknown_key(self, store):
        assert await store.resolve("nxq_nope") is None
        assert await store.resolve("") is None

    @pytest.mark.asyncio
    async def test_revoke_checks_owner(self, store):
        issued = await store.create("owner-a", "primary")
        with pytest.raises(Forbidden):
            await store.revoke(issued.key_id, "owner-b")
        with pytest.raises(KeyNotFound):
            await store.revoke(uuid.uuid4(), "owner-a")

    @pytest.mark.asyncio
    async def test_assign_tier_upserts(self, store):
        issued = await store.create("owner-a", "primary")

        await store.assign_tier("owner-a", "Pro")
        assert (await store.resolve(issued.raw_secret)).tier.name == "Pro"

        await store.assign_tier("owner-a", "Enterprise")
        tier = await store.tier_for_owner("owner-a")
        assert tier.name == "Enterprise"
        assert tier.tokens_per_month is None

    @pytest.mark.asyncio
    async def test_assign_unknown_tier(self, store):
        with pytest.raises(BadRequest):
            await store.assign_tier("owner-a", "Platinum")

    @pytest.mark.asyncio
    async def test_touch_and_list(self, store):
        issued = await store.create("owner-a", "primary")
        await store.create("owner-b", "other")

        await store.touch(issued.key_id)
        await store.touch(issued.key_id)

        [info] = await store.list_for_owner("owner-a")
        assert info.id == issued.key_id
        assert info.is_active is True
        assert info.last_used_at is not None


class TestSqlRateLimiter:
    @pytest.mark.asyncio
    async def test_atomic_increment_stops_at_limit(self, session_factory, store, clock):
        issued = await store.create("owner-a", "primary")
        limiter = SqlRateLimiter(session_factory, clock=clock)
        tier = TierLimits(name="T", tokens_per_month=None, requests_per_minute=3)

        decisions = [await limiter.check_and_increment_rate(issued.key_id, tier) for _ in range(5)]

        assert [d.admitted for d in decisions] == [True, True, True, False, False]
        assert [d.count for d in decisions[:3]] == [1, 2, 3]
        assert decisions[-1].retry_after == datetime.datetime(2025, 11, 14, 9, 31, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_concurrent_increments_admit_exactly_limit(self, file_session_factory, clock):
        n = 8
        limiter = SqlRateLimiter(file_session_factory, clock=clock)
        tier = TierLimits(name="T", tokens_per_month=None, requests_per_minute=n - 1)
        key_id = uuid.uuid4()

        decisions = await asyncio.gather(
            *(limiter.check_and_increment_rate(key_id, tier) for _ in range(n))
        )

        admitted = [d for d in decisions if d.admitted]
        assert len(admitted) == n - 1
        assert sorted(d.count for d in admitted) == list(range(1, n))
        assert not (await limiter.check_and_increment_rate(key_id, tier)).admitted

    @pytest.mark.asyncio
    async def test_next_window_and_prune(self, session_factory, store, clock):
        issued = await store.create("owner-a", "primary")
        limiter = SqlRateLimiter(session_factory, clock=clock)
        tier = TierLimits(name="T", tokens_per_month=None, requests_per_minute=1)

        assert (await limiter.check_and_increment_rate(issued.key_id, tier)).admitted
        assert not (await limiter.check_and_increment_rate(issued.key_id, tier)).admitted
        clock.advance(minutes=1)
        assert (await limiter.check_and_increment_rate(issued.key_id, tier)).admitted

        removed = await limiter.prune_windows(clock() - datetime.timedelta(seconds=30))
        assert removed == 1

    @pytest.mark.asyncio
    async def test_zero_limit_rejects(self, session_factory, clock):
        limiter = SqlRateLimiter(session_factory, clock=clock)
        tier = TierLimits(name="T", tokens_per_month=None, requests_per_minute=0)
        assert not (await limiter.check_and_increment_rate(uuid.uuid4(), tier)).admitted

    @pytest.mark.asyncio
    async def test_quota_reads_usage_window(self, session_factory, store, sql_recorder):
        issued = await store.create("owner-a", "primary")
        limiter = SqlRateLimiter(session_factory)
        tier = TierLimits(name="T", tokens_per_month=3000, requests_per_minute=10)

        assert (await limiter.check_quota("owner-a", tier, "2025-11")).admitted
        await sql_recorder.record(_outcome(issued.key_id))

        decision = await limiter.check_quota("owner-a", tier, "2025-11")
        assert not decision.admitted
        assert decision.used == 3000


class TestSqlUsageRecorder:
    @pytest.mark.asyncio
    async def test_record_and_window(self, store, sql_recorder):
        issued = await store.create("owner-a", "primary")

        await sql_recorder.record(_outcome(issued.key_id))
        await sql_recorder.record(_outcome(issued.key_id))
        await sql_recorder.record(_outcome(
            issued.key_id,
            kind=OutcomeKind.REJECTED,
            http_status=429,
            prompt_tokens=0,
            completion_tokens=0,
            error_type="rate_limited",
        ))

        window = await sql_recorder.get_window("owner-a", "2025-11")
        assert window.total_tokens == 6000
        assert window.total_requests == 2
        assert window.total_cost == Decimal("7")

        rows = await sql_recorder.list_records("owner-a")
        assert len(rows) == 3
        assert all(r.total_tokens == r.prompt_tokens + r.completion_tokens for r in rows)
        assert len(await sql_recorder.list_records("owner-a", http_status=429)) == 1

    @pytest.mark.asyncio
    async def test_failed_stream_tokens_reach_window(self, store, sql_recorder):
        issued = await store.create("owner-a", "primary")

        await sql_recorder.record(_outcome(issued.key_id))
        await sql_recorder.record(_outcome(
            issued.key_id,
            kind=OutcomeKind.PROVIDER_FAILURE,
            http_status=502,
            is_streaming=True,
            prompt_tokens=10,
            completion_tokens=990,
            error_type="provider_error",
        ))

        window = await sql_recorder.get_window("owner-a", "2025-11")
        assert window.total_tokens == 4000
        assert window.total_requests == 1

    @pytest.mark.asyncio
    async def test_usage_by_model(self, store, sql_recorder):
        issued = await store.create("owner-a", "primary")
        await sql_recorder.record(_outcome(issued.key_id))
        await sql_recorder.record(_outcome(issued.key_id, model="test-model", prompt_tokens=5, completion_tokens=5))
        await sql_recorder.record(_outcome(
            issued.key_id,
            created_at=NOV - datetime.timedelta(days=30),
        ))

        rows = await sql_recorder.usage_by_model("owner-a", "2025-11")

        assert [(r.model, r.request_count, r.total_tokens) for r in rows] == [
            ("priced-model", 1, 3000),
            ("test-model", 1, 10),
        ]
        assert rows[0].total_cost_usd == Decimal("3.5")
