"""Analysis jobs and wallet analysis cache.

Revision ID: 001_analysis_jobs
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001_analysis_jobs"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LIVE_STATUS_PREDICATE = "status IN ('queued', 'processing')"


def upgrade() -> None:
    op.create_table(
        "scan_jobs",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("wallet_address", sa.String(44), nullable=False),
        sa.Column("lookback_days", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("progress_percent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("progress_message", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    # At most one queued/processing job per wallet.
    op.create_index(
        "uq_scan_jobs_live_wallet",
        "scan_jobs",
        ["wallet_address"],
        unique=True,
        postgresql_where=sa.text(LIVE_STATUS_PREDICATE),
        sqlite_where=sa.text(LIVE_STATUS_PREDICATE),
    )
    op.create_index("idx_scan_jobs_status_created", "scan_jobs", ["status", "created_at"])
    op.create_index("idx_scan_jobs_wallet_completed", "scan_jobs", ["wallet_address", "completed_at"])

    op.create_table(
        "wallet_analyses",
        sa.Column("wallet_address", sa.String(44), nullable=False),
        sa.Column("total_regret", sa.Float(), nullable=False),
        sa.Column("total_events", sa.Integer(), nullable=False),
        sa.Column("distinct_tokens_traded", sa.Integer(), nullable=False),
        sa.Column("win_rate", sa.Float(), nullable=False),
        sa.Column("avg_hold_days", sa.Integer(), nullable=False),
        sa.Column("paperhands_score", sa.Integer(), nullable=False),
        sa.Column("result_json", sa.Text(), nullable=False),
        sa.Column("computed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("wallet_address"),
    )
    op.create_index("idx_wallet_analyses_expires", "wallet_analyses", ["expires_at"])
    op.create_index("idx_wallet_analyses_total_regret", "wallet_analyses", ["total_regret"])


def downgrade() -> None:
    op.drop_index("idx_wallet_analyses_total_regret", table_name="wallet_analyses")
    op.drop_index("idx_wallet_analyses_expires", table_name="wallet_analyses")
    op.drop_table("wallet_analyses")
    op.drop_index("idx_scan_jobs_wallet_completed", table_name="scan_jobs")
    op.drop_index("idx_scan_jobs_status_created", table_name="scan_jobs")
    op.drop_index("uq_scan_jobs_live_wallet", table_name="scan_jobs")
    op.drop_table("scan_jobs")
