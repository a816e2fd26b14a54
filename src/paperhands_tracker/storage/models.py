"""SQLAlchemy models for persistent storage.

This module defines the database schema for analysis jobs and the
per-wallet analysis cache.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, Float, Index, Integer, String, Text, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JOB_STATUS_QUEUED = "queued"
JOB_STATUS_PROCESSING = "processing"
JOB_STATUS_COMPLETE = "complete"
JOB_STATUS_FAILED = "failed"

LIVE_JOB_STATUSES = (JOB_STATUS_QUEUED, JOB_STATUS_PROCESSING)

_LIVE_STATUS_PREDICATE = "status IN ('queued', 'processing')"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class ScanJobModel(Base):
    """One wallet analysis request and its lifecycle.

    A partial unique index guarantees at most one live (queued or
    processing) job per wallet address.
    """

    __tablename__ = "scan_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    wallet_address: Mapped[str] = mapped_column(String(44), nullable=False)
    lookback_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    status: Mapped[str] = mapped_column(String(16), nullable=False)  # queued|processing|complete|failed

    result_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    progress_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_message: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "uq_scan_jobs_live_wallet",
            "wallet_address",
            unique=True,
            postgresql_where=text(_LIVE_STATUS_PREDICATE),
            sqlite_where=text(_LIVE_STATUS_PREDICATE),
        ),
        Index("idx_scan_jobs_status_created", "status", "created_at"),
        Index("idx_scan_jobs_wallet_completed", "wallet_address", "completed_at"),
    )


class WalletAnalysisModel(Base):
    """Most recent successful analysis per wallet (expiring cache)."""

    __tablename__ = "wallet_analyses"

    wallet_address: Mapped[str] = mapped_column(String(44), primary_key=True)

    total_regret: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_events: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    distinct_tokens_traded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    win_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_hold_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    paperhands_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    result_json: Mapped[str] = mapped_column(Text, nullable=False)

    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_wallet_analyses_expires", "expires_at"),
        Index("idx_wallet_analyses_total_regret", "total_regret"),
    )
