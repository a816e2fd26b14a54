"""Admission control for wallet analyses.

Each request goes through, in order: address validation, cache check,
dedup against the wallet's live job, optional cooldown, enqueue, and an
atomic claim of a processing slot. The number of processing jobs never
exceeds the ceiling because the capacity check and the state transition
are one conditional UPDATE, serialised across processes by a
transaction-scoped advisory lock (PostgreSQL) or the database write lock
(SQLite).

Every step runs in its own short transaction; the store is the only
shared state, so any number of API processes and workers may use it.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from paperhands_tracker.engine.models import WalletAnalysisResult
from paperhands_tracker.ingestor.address import validate_address
from paperhands_tracker.storage.database import DatabaseManager
from paperhands_tracker.storage.models import (
    JOB_STATUS_PROCESSING,
    JOB_STATUS_QUEUED,
)
from paperhands_tracker.storage.repos import (
    ScanJobDTO,
    ScanJobRepository,
    WalletAnalysisDTO,
    WalletAnalysisRepository,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATUS_CACHED = "cached"

DEFAULT_MAX_CONCURRENT = 5
DEFAULT_RESULT_TTL_HOURS = 48
DEFAULT_COOLDOWN_MINUTES = 15
DEFAULT_MAX_PIPELINE_MINUTES = 10
DEFAULT_STORE_RETRY_ATTEMPTS = 3
STORE_RETRY_BASE_DELAY_SECONDS = 0.2


class RateLimitedError(Exception):
    """Raised when a wallet was analysed too recently to run again."""

    def __init__(self, wallet_address: str, retry_after_seconds: int) -> None:
        super().__init__(
            f"Wallet {wallet_address} was analysed recently; retry in {retry_after_seconds}s"
        )
        self.wallet_address = wallet_address
        self.retry_after_seconds = retry_after_seconds


class InternalSchedulingFailure(Exception):
    """Raised when the job store cannot be read or written."""


@dataclass(frozen=True)
class EnqueueOutcome:
    """Result of an admission attempt.

    `status` is ``cached``, ``queued`` or ``processing``. `claimed_job` is
    set only when this call moved a job into processing, in which case the
    caller is responsible for running it.
    """

    status: str
    job_id: str | None
    queue_position: int | None = None
    result: WalletAnalysisResult | None = None
    deduplicated: bool = False
    claimed_job: ScanJobDTO | None = None


@dataclass(frozen=True)
class JobStatus:
    job_id: str
    wallet_address: str
    status: str
    queue_position: int | None
    result: WalletAnalysisResult | None
    error: str | None
    progress_percent: int
    progress_message: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


@dataclass(frozen=True)
class QueueMetrics:
    max_concurrent: int
    currently_processing: int
    queued_count: int

    @property
    def available_slots(self) -> int:
        return max(0, self.max_concurrent - self.currently_processing)


def _load_result(result_json: str | None) -> WalletAnalysisResult | None:
    if not result_json:
        return None
    return WalletAnalysisResult.from_dict(json.loads(result_json))


class JobQueue:
    """Durable job queue with a hard concurrency ceiling."""

    def __init__(
        self,
        db: DatabaseManager,
        *,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        result_ttl_hours: int = DEFAULT_RESULT_TTL_HOURS,
        cooldown_enabled: bool = True,
        cooldown_minutes: int = DEFAULT_COOLDOWN_MINUTES,
        max_pipeline_minutes: int = DEFAULT_MAX_PIPELINE_MINUTES,
        store_retry_attempts: int = DEFAULT_STORE_RETRY_ATTEMPTS,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._db = db
        self.max_concurrent = max_concurrent
        self._result_ttl = timedelta(hours=result_ttl_hours)
        self._cooldown = timedelta(minutes=cooldown_minutes) if cooldown_enabled and cooldown_minutes > 0 else None
        self._max_pipeline = timedelta(minutes=max_pipeline_minutes)
        self._store_retry_attempts = store_retry_attempts
        self._clock = clock

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def enqueue(self, address: str, lookback_days: int) -> EnqueueOutcome:
        """Admit an analysis request.

        Raises:
            InvalidAddressError: If the address is malformed (no job created).
            RateLimitedError: If the cooldown window has not elapsed.
            InternalSchedulingFailure: If the job store fails.
        """
        address = validate_address(address)
        if lookback_days < 1:
            raise ValueError("lookback_days must be >= 1")

        try:
            cached = await self.get_cached_analysis(address)
            if cached is not None:
                logger.info("Serving cached analysis for %s", address)
                return EnqueueOutcome(status=STATUS_CACHED, job_id=None, result=cached)

            live = await self._get_live_job(address)
            if live is not None:
                return await self._dedup_outcome(live)

            await self._check_cooldown(address)

            job = ScanJobDTO(
                id=str(uuid.uuid4()),
                wallet_address=address,
                lookback_days=lookback_days,
                status=JOB_STATUS_QUEUED,
                created_at=self._clock(),
                progress_message="Waiting in queue",
            )
            try:
                async with self._db.get_async_session() as session:
                    await ScanJobRepository(session).insert(job)
            except IntegrityError:
                # Lost an insert race for the same wallet; join the winner.
                live = await self._get_live_job(address)
                if live is None:
                    raise InternalSchedulingFailure(
                        f"Duplicate job rejected for {address} but no live job found"
                    ) from None
                return await self._dedup_outcome(live)

            logger.info("Queued analysis job %s for %s (%d days)", job.id, address, lookback_days)
            claimed = await self.try_claim(job.id)
            if claimed is not None:
                return EnqueueOutcome(status=JOB_STATUS_PROCESSING, job_id=job.id, claimed_job=claimed)
            return EnqueueOutcome(
                status=JOB_STATUS_QUEUED,
                job_id=job.id,
                queue_position=await self._queue_position(job),
            )
        except SQLAlchemyError as e:
            raise InternalSchedulingFailure(f"Job store failure while admitting {address}: {e}") from e

    async def _get_live_job(self, address: str) -> ScanJobDTO | None:
        async with self._db.get_async_session() as session:
            return await ScanJobRepository(session).get_live_for_wallet(address)

    async def _dedup_outcome(self, live: ScanJobDTO) -> EnqueueOutcome:
        position = await self._queue_position(live) if live.status == JOB_STATUS_QUEUED else None
        logger.info("Coalesced request for %s into job %s (%s)", live.wallet_address, live.id, live.status)
        return EnqueueOutcome(
            status=live.status,
            job_id=live.id,
            queue_position=position,
            deduplicated=True,
        )

    async def _check_cooldown(self, address: str) -> None:
        if self._cooldown is None:
            return
        now = self._clock()
        async with self._db.get_async_session() as session:
            recent = await ScanJobRepository(session).get_latest_completed_since(
                address, since=now - self._cooldown
            )
        if recent is None or recent.completed_at is None:
            return
        remaining = (recent.completed_at + self._cooldown - now).total_seconds()
        raise RateLimitedError(address, max(1, math.ceil(remaining)))

    async def _queue_position(self, job: ScanJobDTO) -> int:
        async with self._db.get_async_session() as session:
            return await ScanJobRepository(session).queue_position(job)

    # ------------------------------------------------------------------
    # Slot claiming
    # ------------------------------------------------------------------

    async def try_claim(self, job_id: str) -> ScanJobDTO | None:
        """Atomically move a queued job to processing if a slot is free.

        Returns:
            The claimed job, or None when at capacity or no longer queued.
        """
        try:
            async with self._db.get_async_session() as session:
                repo = ScanJobRepository(session)
                await repo.acquire_claim_lock()
                claimed = await repo.try_claim(job_id, max_concurrent=self.max_concurrent, now=self._clock())
            if not claimed:
                return None
            async with self._db.get_async_session() as session:
                job = await ScanJobRepository(session).get(job_id)
        except SQLAlchemyError as e:
            raise InternalSchedulingFailure(f"Slot claim failed for job {job_id}: {e}") from e
        logger.info("Claimed processing slot for job %s", job_id)
        return job

    async def drain(self) -> list[ScanJobDTO]:
        """Claim the oldest queued jobs while capacity remains."""
        claimed: list[ScanJobDTO] = []
        while True:
            try:
                async with self._db.get_async_session() as session:
                    repo = ScanJobRepository(session)
                    processing = await repo.count_by_status(JOB_STATUS_PROCESSING)
                    free = self.max_concurrent - processing
                    candidates = await repo.list_oldest_queued(limit=free) if free > 0 else []
            except SQLAlchemyError as e:
                raise InternalSchedulingFailure(f"Drain failed: {e}") from e
            if not candidates:
                break

            progressed = False
            for candidate in candidates:
                job = await self.try_claim(candidate.id)
                if job is None:
                    # Another worker took the slot (or the job); re-read state.
                    break
                claimed.append(job)
                progressed = True
            if not progressed:
                break
        if claimed:
            logger.info("Drain claimed %d queued jobs", len(claimed))
        return claimed

    async def reclaim_stale(self) -> list[str]:
        """Fail processing jobs that outlived the maximum pipeline duration.

        Such jobs are never requeued, so a slow-but-alive pipeline cannot end
        up running twice; callers resubmit.
        """
        now = self._clock()
        minutes = int(self._max_pipeline.total_seconds() // 60)
        try:
            async with self._db.get_async_session() as session:
                reclaimed = await ScanJobRepository(session).fail_stale(
                    started_before=now - self._max_pipeline,
                    error=f"Analysis worker lost (no result after {minutes} minutes); please resubmit",
                    now=now,
                )
        except SQLAlchemyError as e:
            raise InternalSchedulingFailure(f"Stale job reclaim failed: {e}") from e
        if reclaimed:
            logger.warning("Reclaimed %d stale processing jobs: %s", len(reclaimed), ", ".join(reclaimed))
        return reclaimed

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    async def _with_store_retry(self, op: Callable[[], Awaitable[T]], *, what: str) -> T:
        last_error: Exception | None = None
        delay = STORE_RETRY_BASE_DELAY_SECONDS
        for attempt in range(self._store_retry_attempts):
            try:
                return await op()
            except SQLAlchemyError as e:
                last_error = e
                logger.warning(
                    "%s failed (attempt %d/%d): %s",
                    what,
                    attempt + 1,
                    self._store_retry_attempts,
                    e,
                )
                if attempt < self._store_retry_attempts - 1:
                    await asyncio.sleep(delay)
                    delay *= 2
        raise InternalSchedulingFailure(f"{what} failed after all retries: {last_error}") from last_error

    async def mark_complete(self, job_id: str, result: WalletAnalysisResult) -> bool:
        """Store the result on the job and refresh the wallet's cache entry.

        Both writes share one transaction. Returns False if the job was no
        longer processing (the cache is still refreshed).
        """
        payload = json.dumps(result.to_dict())
        cache_row = WalletAnalysisDTO(
            wallet_address=result.address,
            total_regret=result.total_regret,
            total_events=result.total_events,
            distinct_tokens_traded=result.distinct_tokens_traded,
            win_rate=result.win_rate,
            avg_hold_days=result.avg_hold_days,
            paperhands_score=result.paperhands_score,
            result_json=payload,
            computed_at=result.computed_at,
            expires_at=self._clock() + self._result_ttl,
        )

        async def op() -> bool:
            async with self._db.get_async_session() as session:
                transitioned = await ScanJobRepository(session).mark_complete(
                    job_id, result_json=payload, now=self._clock()
                )
                await WalletAnalysisRepository(session).upsert(cache_row)
            return transitioned

        transitioned = await self._with_store_retry(op, what=f"Completing job {job_id}")
        if not transitioned:
            logger.warning("Job %s was no longer processing when it completed", job_id)
        return transitioned

    async def mark_failed(self, job_id: str, error: str) -> bool:
        async def op() -> bool:
            async with self._db.get_async_session() as session:
                return await ScanJobRepository(session).mark_failed(job_id, error=error, now=self._clock())

        return await self._with_store_retry(op, what=f"Failing job {job_id}")

    async def update_progress(self, job_id: str, *, percent: int, message: str) -> None:
        async with self._db.get_async_session() as session:
            await ScanJobRepository(session).update_progress(job_id, percent=percent, message=message)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def status(self, job_id: str) -> JobStatus | None:
        try:
            async with self._db.get_async_session() as session:
                repo = ScanJobRepository(session)
                job = await repo.get(job_id)
                if job is None:
                    return None
                position = await repo.queue_position(job) if job.status == JOB_STATUS_QUEUED else None
        except SQLAlchemyError as e:
            raise InternalSchedulingFailure(f"Status lookup failed for job {job_id}: {e}") from e
        return JobStatus(
            job_id=job.id,
            wallet_address=job.wallet_address,
            status=job.status,
            queue_position=position,
            result=_load_result(job.result_json),
            error=job.error,
            progress_percent=job.progress_percent,
            progress_message=job.progress_message,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )

    async def metrics(self) -> QueueMetrics:
        try:
            async with self._db.get_async_session() as session:
                repo = ScanJobRepository(session)
                processing = await repo.count_by_status(JOB_STATUS_PROCESSING)
                queued = await repo.count_by_status(JOB_STATUS_QUEUED)
        except SQLAlchemyError as e:
            raise InternalSchedulingFailure(f"Queue metrics lookup failed: {e}") from e
        return QueueMetrics(
            max_concurrent=self.max_concurrent,
            currently_processing=processing,
            queued_count=queued,
        )

    async def get_cached_analysis(self, address: str) -> WalletAnalysisResult | None:
        async with self._db.get_async_session() as session:
            row = await WalletAnalysisRepository(session).get_fresh(address, now=self._clock())
        return _load_result(row.result_json) if row is not None else None

    async def top_analyses(self, *, limit: int) -> list[WalletAnalysisDTO]:
        async with self._db.get_async_session() as session:
            return await WalletAnalysisRepository(session).list_top(now=self._clock(), limit=limit)
