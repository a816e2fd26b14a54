"""Repository pattern implementations for data access.

This module provides data access abstractions for analysis jobs and the
wallet analysis cache. All job state transitions are single conditional
UPDATE statements keyed by job id, so retried writes are idempotent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import Select, func, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import aliased

from paperhands_tracker.storage.models import (
    JOB_STATUS_COMPLETE,
    JOB_STATUS_FAILED,
    JOB_STATUS_PROCESSING,
    JOB_STATUS_QUEUED,
    LIVE_JOB_STATUSES,
    ScanJobModel,
    WalletAnalysisModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Key for the transaction-scoped advisory lock that serialises slot claims.
CLAIM_ADVISORY_LOCK_KEY = 0x5041504552  # "PAPER"


def _as_utc(value: datetime | None) -> datetime | None:
    """SQLite returns naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _dialect_name(session: AsyncSession) -> str:
    return session.get_bind().dialect.name


# Rows are changed with bulk UPDATEs; reads must not return stale identity-map objects.
def _select_jobs() -> Select[tuple[ScanJobModel]]:
    return select(ScanJobModel).execution_options(populate_existing=True)


def _select_analyses() -> Select[tuple[WalletAnalysisModel]]:
    return select(WalletAnalysisModel).execution_options(populate_existing=True)


@dataclass
class ScanJobDTO:
    """Data transfer object for analysis jobs."""

    id: str
    wallet_address: str
    lookback_days: int
    status: str
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result_json: str | None = None
    error: str | None = None
    progress_percent: int = 0
    progress_message: str | None = None

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_JOB_STATUSES

    @classmethod
    def from_model(cls, model: ScanJobModel) -> ScanJobDTO:
        return cls(
            id=model.id,
            wallet_address=model.wallet_address,
            lookback_days=model.lookback_days,
            status=model.status,
            created_at=_as_utc(model.created_at),  # type: ignore[arg-type]
            started_at=_as_utc(model.started_at),
            completed_at=_as_utc(model.completed_at),
            result_json=model.result_json,
            error=model.error,
            progress_percent=model.progress_percent,
            progress_message=model.progress_message,
        )


@dataclass
class WalletAnalysisDTO:
    """Data transfer object for cached wallet analyses."""

    wallet_address: str
    total_regret: float
    total_events: int
    distinct_tokens_traded: int
    win_rate: float
    avg_hold_days: int
    paperhands_score: int
    result_json: str
    computed_at: datetime
    expires_at: datetime

    @classmethod
    def from_model(cls, model: WalletAnalysisModel) -> WalletAnalysisDTO:
        return cls(
            wallet_address=model.wallet_address,
            total_regret=model.total_regret,
            total_events=model.total_events,
            distinct_tokens_traded=model.distinct_tokens_traded,
            win_rate=model.win_rate,
            avg_hold_days=model.avg_hold_days,
            paperhands_score=model.paperhands_score,
            result_json=model.result_json,
            computed_at=_as_utc(model.computed_at),  # type: ignore[arg-type]
            expires_at=_as_utc(model.expires_at),  # type: ignore[arg-type]
        )


class ScanJobRepository:
    """Repository for analysis jobs."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, job_id: str) -> ScanJobDTO | None:
        result = await self.session.execute(_select_jobs().where(ScanJobModel.id == job_id))
        model = result.scalar_one_or_none()
        return ScanJobDTO.from_model(model) if model else None

    async def get_live_for_wallet(self, wallet_address: str) -> ScanJobDTO | None:
        """Return the queued/processing job for a wallet, if any."""
        result = await self.session.execute(
            _select_jobs()
            .where(
                ScanJobModel.wallet_address == wallet_address,
                ScanJobModel.status.in_(LIVE_JOB_STATUSES),
            )
            .order_by(ScanJobModel.created_at)
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return ScanJobDTO.from_model(model) if model else None

    async def get_latest_completed_since(
        self, wallet_address: str, *, since: datetime
    ) -> ScanJobDTO | None:
        result = await self.session.execute(
            _select_jobs()
            .where(
                ScanJobModel.wallet_address == wallet_address,
                ScanJobModel.status == JOB_STATUS_COMPLETE,
                ScanJobModel.completed_at >= since,
            )
            .order_by(ScanJobModel.completed_at.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return ScanJobDTO.from_model(model) if model else None

    async def insert(self, dto: ScanJobDTO) -> ScanJobDTO:
        """Insert a new job row.

        Raises:
            sqlalchemy.exc.IntegrityError: If the wallet already has a live job.
        """
        model = ScanJobModel(
            id=dto.id,
            wallet_address=dto.wallet_address,
            lookback_days=dto.lookback_days,
            status=dto.status,
            created_at=dto.created_at,
            progress_percent=dto.progress_percent,
            progress_message=dto.progress_message,
        )
        self.session.add(model)
        await self.session.flush()
        return dto

    async def acquire_claim_lock(self) -> None:
        """Serialise slot claims for the rest of the current transaction.

        PostgreSQL only; SQLite already serialises writers on the database
        write lock.
        """
        if _dialect_name(self.session) == "postgresql":
            await self.session.execute(
                text("SELECT pg_advisory_xact_lock(:key)"), {"key": CLAIM_ADVISORY_LOCK_KEY}
            )

    async def try_claim(self, job_id: str, *, max_concurrent: int, now: datetime) -> bool:
        """Move a queued job to processing if a slot is free.

        The capacity check and the transition are one statement; callers
        must hold the claim lock (see `acquire_claim_lock`).
        """
        running = aliased(ScanJobModel)
        processing_count = (
            select(func.count())
            .select_from(running)
            .where(running.status == JOB_STATUS_PROCESSING)
            .scalar_subquery()
        )
        stmt = (
            update(ScanJobModel)
            .where(
                ScanJobModel.id == job_id,
                ScanJobModel.status == JOB_STATUS_QUEUED,
                processing_count < max_concurrent,
            )
            .values(status=JOB_STATUS_PROCESSING, started_at=now, progress_message="Starting analysis")
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def list_oldest_queued(self, *, limit: int) -> list[ScanJobDTO]:
        result = await self.session.execute(
            _select_jobs()
            .where(ScanJobModel.status == JOB_STATUS_QUEUED)
            .order_by(ScanJobModel.created_at, ScanJobModel.id)
            .limit(limit)
        )
        return [ScanJobDTO.from_model(m) for m in result.scalars().all()]

    async def count_by_status(self, status: str) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(ScanJobModel).where(ScanJobModel.status == status)
        )
        return int(result.scalar_one())

    async def queue_position(self, job: ScanJobDTO) -> int:
        """1-based position among queued jobs (strictly earlier ones ahead)."""
        result = await self.session.execute(
            select(func.count())
            .select_from(ScanJobModel)
            .where(
                ScanJobModel.status == JOB_STATUS_QUEUED,
                ScanJobModel.created_at < job.created_at,
                ScanJobModel.id != job.id,
            )
        )
        return int(result.scalar_one()) + 1

    async def update_progress(self, job_id: str, *, percent: int, message: str) -> None:
        await self.session.execute(
            update(ScanJobModel)
            .where(ScanJobModel.id == job_id, ScanJobModel.status == JOB_STATUS_PROCESSING)
            .values(progress_percent=max(0, min(100, percent)), progress_message=message[:255])
            .execution_options(synchronize_session=False)
        )

    async def mark_complete(self, job_id: str, *, result_json: str, now: datetime) -> bool:
        result = await self.session.execute(
            update(ScanJobModel)
            .where(ScanJobModel.id == job_id, ScanJobModel.status == JOB_STATUS_PROCESSING)
            .values(
                status=JOB_STATUS_COMPLETE,
                result_json=result_json,
                error=None,
                completed_at=now,
                progress_percent=100,
                progress_message="Analysis complete",
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def mark_failed(self, job_id: str, *, error: str, now: datetime) -> bool:
        result = await self.session.execute(
            update(ScanJobModel)
            .where(ScanJobModel.id == job_id, ScanJobModel.status == JOB_STATUS_PROCESSING)
            .values(status=JOB_STATUS_FAILED, error=error, completed_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def fail_stale(self, *, started_before: datetime, error: str, now: datetime) -> list[str]:
        """Fail processing jobs that started before the given instant."""
        result = await self.session.execute(
            select(ScanJobModel.id).where(
                ScanJobModel.status == JOB_STATUS_PROCESSING,
                ScanJobModel.started_at < started_before,
            )
        )
        stale_ids = [row[0] for row in result.all()]
        reclaimed: list[str] = []
        for job_id in stale_ids:
            res = await self.session.execute(
                update(ScanJobModel)
                .where(
                    ScanJobModel.id == job_id,
                    ScanJobModel.status == JOB_STATUS_PROCESSING,
                    ScanJobModel.started_at < started_before,
                )
                .values(status=JOB_STATUS_FAILED, error=error, completed_at=now)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 1:  # type: ignore[attr-defined]
                reclaimed.append(job_id)
        return reclaimed


class WalletAnalysisRepository:
    """Repository for the expiring per-wallet analysis cache."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_fresh(self, wallet_address: str, *, now: datetime) -> WalletAnalysisDTO | None:
        """Return the cached analysis if it has not expired.

        Expired rows are treated as absent; they are never deleted here.
        """
        result = await self.session.execute(
            _select_analyses().where(
                WalletAnalysisModel.wallet_address == wallet_address,
                WalletAnalysisModel.expires_at > now,
            )
        )
        model = result.scalar_one_or_none()
        return WalletAnalysisDTO.from_model(model) if model else None

    async def list_top(self, *, now: datetime, limit: int) -> list[WalletAnalysisDTO]:
        result = await self.session.execute(
            _select_analyses()
            .where(WalletAnalysisModel.expires_at > now)
            .order_by(WalletAnalysisModel.total_regret.desc(), WalletAnalysisModel.wallet_address)
            .limit(limit)
        )
        return [WalletAnalysisDTO.from_model(m) for m in result.scalars().all()]

    async def upsert(self, dto: WalletAnalysisDTO) -> WalletAnalysisDTO:
        """Upsert the cached analysis by wallet address."""
        values: dict[str, Any] = {
            "wallet_address": dto.wallet_address,
            "total_regret": dto.total_regret,
            "total_events": dto.total_events,
            "distinct_tokens_traded": dto.distinct_tokens_traded,
            "win_rate": dto.win_rate,
            "avg_hold_days": dto.avg_hold_days,
            "paperhands_score": dto.paperhands_score,
            "result_json": dto.result_json,
            "computed_at": dto.computed_at,
            "expires_at": dto.expires_at,
        }
        insert_fn = pg_insert if _dialect_name(self.session) == "postgresql" else sqlite_insert
        stmt = insert_fn(WalletAnalysisModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["wallet_address"],
            set_={key: getattr(stmt.excluded, key) for key in values if key != "wallet_address"},
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return dto
