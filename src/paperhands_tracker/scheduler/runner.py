"""Execution of claimed analysis jobs.

The runner owns the in-process side of the queue: it runs each claimed job
through the analysis pipeline as an asyncio task, records progress on the
job row, stores the outcome, and then drains the queue so freed slots are
refilled immediately. A periodic ticker reclaims stale jobs and drains
queued work left behind by other processes.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from paperhands_tracker.progress import (
    STAGE_RATE_LIMITED,
    LoggingProgressObserver,
    ProgressBus,
    ProgressEvent,
)
from paperhands_tracker.scheduler.queue import EnqueueOutcome, InternalSchedulingFailure, JobQueue

if TYPE_CHECKING:
    from paperhands_tracker.pipeline import AnalysisPipeline
    from paperhands_tracker.storage.repos import ScanJobDTO

logger = logging.getLogger(__name__)

DEFAULT_DRAIN_INTERVAL_SECONDS = 15.0
DEFAULT_PROGRESS_INTERVAL_SECONDS = 1.0


class JobProgressRecorder:
    """Writes pipeline progress onto the job row, throttled.

    A write happens when the stage changes, on every rate-limit notice, or
    once `min_interval_s` has passed since the last write.
    """

    def __init__(
        self,
        queue: JobQueue,
        job_id: str,
        *,
        min_interval_s: float = DEFAULT_PROGRESS_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._queue = queue
        self._job_id = job_id
        self._min_interval_s = min_interval_s
        self._clock = clock
        self._last_stage: str | None = None
        self._last_write: float | None = None

    async def on_progress(self, event: ProgressEvent) -> None:
        now = self._clock()
        due = (
            self._last_write is None
            or event.stage != self._last_stage
            or event.stage == STAGE_RATE_LIMITED
            or now - self._last_write >= self._min_interval_s
        )
        if not due:
            return
        self._last_stage = event.stage
        self._last_write = now
        await self._queue.update_progress(self._job_id, percent=event.percent, message=event.message)


class JobRunner:
    """Runs claimed jobs and keeps the processing slots busy."""

    def __init__(
        self,
        queue: JobQueue,
        pipeline: AnalysisPipeline,
        *,
        drain_interval_seconds: float = DEFAULT_DRAIN_INTERVAL_SECONDS,
        progress_interval_seconds: float = DEFAULT_PROGRESS_INTERVAL_SECONDS,
    ) -> None:
        self._queue = queue
        self._pipeline = pipeline
        self._drain_interval_seconds = drain_interval_seconds
        self._progress_interval_seconds = progress_interval_seconds
        self._tasks: set[asyncio.Task[None]] = set()
        self._stop_event: asyncio.Event | None = None
        self._ticker_task: asyncio.Task[None] | None = None
        self._stopping = False

    @property
    def queue(self) -> JobQueue:
        return self._queue

    @property
    def active_jobs(self) -> int:
        return len(self._tasks)

    async def submit(self, address: str, lookback_days: int) -> EnqueueOutcome:
        """Admit a request and start it here if it claimed a slot."""
        outcome = await self._queue.enqueue(address, lookback_days)
        if outcome.claimed_job is not None:
            self.spawn(outcome.claimed_job)
        return outcome

    def spawn(self, job: ScanJobDTO) -> asyncio.Task[None]:
        task = asyncio.create_task(self.run(job), name=f"scan-job-{job.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run(self, job: ScanJobDTO) -> None:
        """Run one claimed job to a terminal state, then refill slots."""
        progress = ProgressBus(
            JobProgressRecorder(self._queue, job.id, min_interval_s=self._progress_interval_seconds),
            LoggingProgressObserver(f"job {job.id[:8]}"),
        )
        try:
            try:
                result = await self._pipeline.analyze(job.wallet_address, job.lookback_days, progress=progress)
            except Exception as e:
                reason = str(e) or type(e).__name__
                logger.warning("Analysis job %s for %s failed: %s", job.id, job.wallet_address, reason)
                await self._queue.mark_failed(job.id, reason)
            else:
                await self._queue.mark_complete(job.id, result)
                logger.info(
                    "Analysis job %s for %s complete (%d events)",
                    job.id,
                    job.wallet_address,
                    result.total_events,
                )
        except InternalSchedulingFailure as e:
            # The job stays processing until stale reclaim fails it.
            logger.error("Could not record outcome of job %s: %s", job.id, e)
        finally:
            if not self._stopping:
                await self.drain()

    async def drain(self) -> int:
        """Claim queued jobs for free slots and start them."""
        try:
            claimed = await self._queue.drain()
        except InternalSchedulingFailure as e:
            logger.warning("Queue drain failed: %s", e)
            return 0
        for job in claimed:
            self.spawn(job)
        return len(claimed)

    async def tick(self) -> None:
        try:
            await self._queue.reclaim_stale()
        except InternalSchedulingFailure as e:
            logger.warning("Stale job reclaim failed: %s", e)
        await self.drain()

    async def start(self) -> None:
        if self._ticker_task is not None:
            raise RuntimeError("Job runner already started")
        self._stopping = False
        self._stop_event = asyncio.Event()
        await self.tick()
        self._ticker_task = asyncio.create_task(self._run_ticker())
        logger.info("Job runner started (drain every %.0fs)", self._drain_interval_seconds)

    async def _run_ticker(self) -> None:
        if not self._stop_event:
            return
        while not self._stop_event.is_set():
            try:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self._drain_interval_seconds)
                    break
                except TimeoutError:
                    pass
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning("Job runner ticker error: %s", e)

    async def wait_idle(self) -> None:
        """Wait until no job tasks are running (including ones they spawn)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        """Stop the ticker and cancel running jobs.

        Cancelled jobs remain processing and are failed by stale reclaim.
        """
        self._stopping = True
        if self._stop_event:
            self._stop_event.set()
        if self._ticker_task:
            self._ticker_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._ticker_task
            self._ticker_task = None

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled %d running analysis jobs", len(tasks))
        logger.info("Job runner stopped")
