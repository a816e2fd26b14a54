"""Tests for the job runner and progress recording."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from paperhands_tracker.market.resolver import MarketDataUnavailableError
from paperhands_tracker.progress import STAGE_FETCHING, STAGE_PRICING, STAGE_RATE_LIMITED, ProgressEvent
from paperhands_tracker.scheduler.queue import InternalSchedulingFailure, JobQueue
from paperhands_tracker.scheduler.runner import JobProgressRecorder, JobRunner
from paperhands_tracker.storage.models import (
    JOB_STATUS_COMPLETE,
    JOB_STATUS_FAILED,
    JOB_STATUS_PROCESSING,
    JOB_STATUS_QUEUED,
)

# ============================================================================
# Fixtures
# ============================================================================


class ScriptedPipeline:
    """Pipeline stand-in that reports progress and can be held open."""

    def __init__(self, make_result, clock) -> None:
        self._make_result = make_result
        self._clock = clock
        self.release = asyncio.Event()
        self.release.set()
        self.started = asyncio.Event()
        self.failures: dict[str, BaseException] = {}
        self.analyze = AsyncMock(side_effect=self._analyze)

    async def _analyze(self, address, lookback_days, *, progress=None):
        if progress is not None:
            await progress.emit(STAGE_FETCHING, "Fetching history", 40)
        self.started.set()
        await self.release.wait()
        if address in self.failures:
            raise self.failures[address]
        return self._make_result(address, self._clock.now)


@pytest.fixture
def pipeline(make_result, fake_clock) -> ScriptedPipeline:
    return ScriptedPipeline(make_result, fake_clock)


@pytest.fixture
def make_runner(job_db, fake_clock, pipeline):
    def _make(**queue_kwargs) -> JobRunner:
        queue_kwargs.setdefault("max_concurrent", 5)
        queue = JobQueue(job_db, clock=fake_clock, **queue_kwargs)
        return JobRunner(queue, pipeline, drain_interval_seconds=60.0, progress_interval_seconds=0.0)

    return _make


# ============================================================================
# JobRunner Tests
# ============================================================================


class TestJobRunner:
    """Tests for JobRunner."""

    async def test_submitted_job_runs_to_completion(self, make_runner, pipeline, wallet_addresses) -> None:
        runner = make_runner()

        outcome = await runner.submit(wallet_addresses[0], 30)
        await runner.wait_idle()

        assert outcome.status == JOB_STATUS_PROCESSING
        status = await runner.queue.status(outcome.job_id)
        assert status.status == JOB_STATUS_COMPLETE
        assert status.result.address == wallet_addresses[0]
        pipeline.analyze.assert_awaited_once()
        assert runner.active_jobs == 0

    async def test_freed_slot_is_refilled(self, make_runner, pipeline, wallet_addresses) -> None:
        pipeline.release.clear()
        runner = make_runner(max_concurrent=1)

        first = await runner.submit(wallet_addresses[0], 30)
        second = await runner.submit(wallet_addresses[1], 30)
        assert second.status == JOB_STATUS_QUEUED
        assert runner.active_jobs == 1

        pipeline.release.set()
        await runner.wait_idle()

        called = [c.args[0] for c in pipeline.analyze.await_args_list]
        assert called == [wallet_addresses[0], wallet_addresses[1]]
        assert (await runner.queue.status(first.job_id)).status == JOB_STATUS_COMPLETE
        assert (await runner.queue.status(second.job_id)).status == JOB_STATUS_COMPLETE

    async def test_pipeline_error_marks_job_failed(self, make_runner, pipeline, wallet_addresses) -> None:
        pipeline.failures[wallet_addresses[0]] = MarketDataUnavailableError("SOL/USD price unavailable")
        runner = make_runner()

        outcome = await runner.submit(wallet_addresses[0], 30)
        await runner.wait_idle()

        status = await runner.queue.status(outcome.job_id)
        assert status.status == JOB_STATUS_FAILED
        assert status.error == "SOL/USD price unavailable"

    async def test_error_without_message_uses_type_name(self, make_runner, pipeline, wallet_addresses) -> None:
        pipeline.failures[wallet_addresses[0]] = RuntimeError()
        runner = make_runner()

        outcome = await runner.submit(wallet_addresses[0], 30)
        await runner.wait_idle()

        assert (await runner.queue.status(outcome.job_id)).error == "RuntimeError"

    async def test_progress_is_visible_while_running(self, make_runner, pipeline, wallet_addresses) -> None:
        pipeline.release.clear()
        runner = make_runner()

        outcome = await runner.submit(wallet_addresses[0], 30)
        await pipeline.started.wait()

        status = await runner.queue.status(outcome.job_id)
        assert status.status == JOB_STATUS_PROCESSING
        assert status.progress_percent == 40
        assert status.progress_message == "Fetching history"

        pipeline.release.set()
        await runner.wait_idle()

    async def test_start_reclaims_stale_and_drains(
        self, make_runner, pipeline, wallet_addresses, fake_clock
    ) -> None:
        runner = make_runner(max_concurrent=1, max_pipeline_minutes=10)
        # Claimed by a process that died before running it.
        lost = await runner.queue.enqueue(wallet_addresses[0], 30)
        waiting = await runner.queue.enqueue(wallet_addresses[1], 30)
        fake_clock.advance(timedelta(minutes=11))

        await runner.start()
        await runner.wait_idle()
        await runner.stop()

        assert (await runner.queue.status(lost.job_id)).status == JOB_STATUS_FAILED
        assert (await runner.queue.status(waiting.job_id)).status == JOB_STATUS_COMPLETE

    async def test_start_twice_raises(self, make_runner) -> None:
        runner = make_runner()
        await runner.start()
        try:
            with pytest.raises(RuntimeError):
                await runner.start()
        finally:
            await runner.stop()

    async def test_stop_cancels_running_jobs(self, make_runner, pipeline, wallet_addresses) -> None:
        pipeline.release.clear()
        runner = make_runner()
        outcome = await runner.submit(wallet_addresses[0], 30)
        await pipeline.started.wait()

        await runner.stop()

        assert runner.active_jobs == 0
        # Left for stale reclaim.
        assert (await runner.queue.status(outcome.job_id)).status == JOB_STATUS_PROCESSING

    async def test_drain_failure_is_contained(self) -> None:
        queue = MagicMock()
        queue.drain = AsyncMock(side_effect=InternalSchedulingFailure("database unavailable"))
        runner = JobRunner(queue, MagicMock())

        assert await runner.drain() == 0

    async def test_unrecordable_outcome_does_not_raise(self, wallet_addresses, make_result, fake_clock) -> None:
        queue = MagicMock()
        queue.update_progress = AsyncMock()
        queue.mark_complete = AsyncMock(side_effect=InternalSchedulingFailure("database unavailable"))
        queue.drain = AsyncMock(return_value=[])
        pipeline = MagicMock()
        pipeline.analyze = AsyncMock(return_value=make_result(wallet_addresses[0], fake_clock.now))
        job = MagicMock(id="job-1", wallet_address=wallet_addresses[0], lookback_days=30)

        await JobRunner(queue, pipeline).run(job)

        queue.mark_complete.assert_awaited_once()
        queue.drain.assert_awaited_once()


# ============================================================================
# JobProgressRecorder Tests
# ============================================================================


class TestJobProgressRecorder:
    """Tests for JobProgressRecorder throttling."""

    @pytest.fixture
    def queue(self) -> MagicMock:
        queue = MagicMock()
        queue.update_progress = AsyncMock()
        return queue

    async def test_throttles_within_stage(self, queue: MagicMock) -> None:
        now = [0.0]
        recorder = JobProgressRecorder(queue, "job-1", min_interval_s=1.0, clock=lambda: now[0])

        await recorder.on_progress(ProgressEvent(stage=STAGE_FETCHING, message="page 1", percent=10))
        now[0] = 0.5
        await recorder.on_progress(ProgressEvent(stage=STAGE_FETCHING, message="page 2", percent=12))
        now[0] = 1.6
        await recorder.on_progress(ProgressEvent(stage=STAGE_FETCHING, message="page 3", percent=14))

        messages = [c.kwargs["message"] for c in queue.update_progress.await_args_list]
        assert messages == ["page 1", "page 3"]

    async def test_stage_change_writes_immediately(self, queue: MagicMock) -> None:
        recorder = JobProgressRecorder(queue, "job-1", min_interval_s=60.0, clock=lambda: 0.0)

        await recorder.on_progress(ProgressEvent(stage=STAGE_FETCHING, message="Fetching", percent=10))
        await recorder.on_progress(ProgressEvent(stage=STAGE_PRICING, message="Pricing", percent=50))

        assert queue.update_progress.await_count == 2
        queue.update_progress.assert_awaited_with("job-1", percent=50, message="Pricing")

    async def test_rate_limit_notices_always_written(self, queue: MagicMock) -> None:
        recorder = JobProgressRecorder(queue, "job-1", min_interval_s=60.0, clock=lambda: 0.0)

        for _ in range(3):
            await recorder.on_progress(
                ProgressEvent(stage=STAGE_RATE_LIMITED, message="Rate limited", percent=20, retry_after_seconds=2.0)
            )

        assert queue.update_progress.await_count == 3
