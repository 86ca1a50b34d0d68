"""
Tests for the in-memory usage recorder, best-effort recording, and the
background runner that carries it.
"""

import asyncio
import datetime
import logging
import uuid
from decimal import Decimal

import pytest

from app.services.background import BackgroundRunner
from app.services.usage_recorder import (
    OutcomeKind,
    UsageOutcome,
    record_best_effort,
)

UTC = datetime.timezone.utc
NOV = datetime.datetime(2025, 11, 14, 10, 0, tzinfo=UTC)


def _outcome(**overrides) -> UsageOutcome:
    fields = dict(
        request_id=uuid.uuid4().hex,
        owner_id="owner-a",
        key_id=uuid.uuid4(),
        model="priced-model",
        kind=OutcomeKind.SUCCESS,
        http_status=200,
        prompt_tokens=1000,
        completion_tokens=2000,
        latency_ms=42,
        provider="groq",
        created_at=NOV,
    )
    fields.update(overrides)
    return UsageOutcome(**fields)


class TestRecord:
    @pytest.mark.asyncio
    async def test_success_writes_record_and_window(self, recorder):
        await recorder.record(_outcome())

        [row] = recorder.records
        assert row.total_tokens == row.prompt_tokens + row.completion_tokens == 3000
        assert row.cost_usd == Decimal("3.5")
        assert row.outcome == "success"

        window = await recorder.get_window("owner-a", "2025-11")
        assert window.total_tokens == 3000
        assert window.total_requests == 1
        assert window.total_cost == Decimal("3.5")

    @pytest.mark.asyncio
    async def test_rejection_is_ledgered_but_not_counted(self, recorder):
        await recorder.record(_outcome(
            kind=OutcomeKind.REJECTED,
            http_status=429,
            prompt_tokens=0,
            completion_tokens=0,
            error_type="rate_limited",
        ))

        assert len(recorder.records) == 1
        assert recorder.records[0].error_type == "rate_limited"
        assert await recorder.tokens_used("owner-a", "2025-11") == 0

    @pytest.mark.asyncio
    async def test_partial_stream_counts_toward_window(self, recorder):
        await recorder.record(_outcome(http_status=499, is_streaming=True, completion_tokens=3))
        assert await recorder.tokens_used("owner-a", "2025-11") == 1003

    @pytest.mark.asyncio
    async def test_failed_stream_bills_tokens_without_counting_request(self, recorder):
        await recorder.record(_outcome(
            kind=OutcomeKind.PROVIDER_FAILURE,
            http_status=502,
            is_streaming=True,
            error_type="provider_error",
        ))

        window = await recorder.get_window("owner-a", "2025-11")
        assert window.total_tokens == 3000
        assert window.total_cost == Decimal("3.5")
        assert window.total_requests == 0

    @pytest.mark.asyncio
    async def test_failure_without_tokens_leaves_window_untouched(self, recorder):
        await recorder.record(_outcome(
            kind=OutcomeKind.PROVIDER_FAILURE,
            http_status=502,
            prompt_tokens=0,
            completion_tokens=0,
        ))
        window = await recorder.get_window("owner-a", "2025-11")
        assert window.total_tokens == 0
        assert window.total_requests == 0
        assert len(recorder.records) == 1

    @pytest.mark.asyncio
    async def test_window_is_per_month(self, recorder):
        await recorder.record(_outcome())
        await recorder.record(_outcome(created_at=NOV + datetime.timedelta(days=30)))

        assert await recorder.tokens_used("owner-a", "2025-11") == 3000
        assert await recorder.tokens_used("owner-a", "2025-12") == 3000

    @pytest.mark.asyncio
    async def test_unknown_model_costs_zero(self, recorder):
        await recorder.record(_outcome(model="retired-model"))
        assert recorder.records[0].cost_usd == 0


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_records_filters_and_orders(self, recorder):
        await recorder.record(_outcome(model="test-model"))
        await recorder.record(_outcome(kind=OutcomeKind.REJECTED, http_status=429))
        await recorder.record(_outcome(owner_id="owner-b"))
        await recorder.record(_outcome())

        rows = await recorder.list_records("owner-a")
        assert len(rows) == 3
        assert rows[0] is recorder.records[-1]

        assert len(await recorder.list_records("owner-a", model="test-model")) == 1
        assert len(await recorder.list_records("owner-a", http_status=429)) == 1
        assert len(await recorder.list_records("owner-a", limit=1)) == 1

    @pytest.mark.asyncio
    async def test_usage_by_model_counts_successes_only(self, recorder):
        await recorder.record(_outcome())
        await recorder.record(_outcome())
        await recorder.record(_outcome(model="test-model", prompt_tokens=10, completion_tokens=10))
        await recorder.record(_outcome(kind=OutcomeKind.PROVIDER_FAILURE, http_status=502))

        rows = await recorder.usage_by_model("owner-a", "2025-11")

        assert [r.model for r in rows] == ["priced-model", "test-model"]
        assert rows[0].request_count == 2
        assert rows[0].total_tokens == 6000
        assert rows[0].total_cost_usd == Decimal("7")
        assert rows[1].total_cost_usd == 0

    @pytest.mark.asyncio
    async def test_empty_window(self, recorder):
        window = await recorder.get_window("nobody", "2025-11")
        assert window.total_tokens == 0
        assert window.total_requests == 0


class FlakyRecorder:
    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    async def record(self, outcome):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("database is down")


class TestRecordBestEffort:
    @pytest.mark.asyncio
    async def test_retries_once(self):
        recorder = FlakyRecorder(failures=1)
        assert await record_best_effort(recorder, _outcome(), attempts=2) is True
        assert recorder.calls == 2

    @pytest.mark.asyncio
    async def test_gives_up_and_logs_outcome(self, caplog):
        recorder = FlakyRecorder(failures=5)
        outcome = _outcome()

        with caplog.at_level(logging.ERROR, logger="app.services.usage_recorder"):
            assert await record_best_effort(recorder, outcome, attempts=2) is False

        assert recorder.calls == 2
        lost = [r for r in caplog.records if "USAGE RECORD LOST" in r.getMessage()]
        assert len(lost) == 1
        assert outcome.request_id in lost[0].getMessage()


class TestBackgroundRunner:
    @pytest.mark.asyncio
    async def test_drain_waits_for_tasks(self):
        runner = BackgroundRunner()
        done = []

        async def work():
            await asyncio.sleep(0.01)
            done.append(True)

        runner.spawn(work(), name="work")
        assert runner.pending == 1
        await runner.drain(timeout=1)

        assert done == [True]
        assert runner.pending == 0

    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self, caplog):
        runner = BackgroundRunner()

        async def boom():
            raise RuntimeError("boom")

        with caplog.at_level(logging.ERROR, logger="app.services.background"):
            runner.spawn(boom(), name="boom")
            await runner.drain(timeout=1)

        assert any("boom" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_drain_timeout_cancels(self):
        runner = BackgroundRunner()
        task = runner.spawn(asyncio.sleep(10), name="slow")

        await runner.drain(timeout=0.01)
        with pytest.raises(asyncio.CancelledError):
            await task

        assert task.cancelled()
