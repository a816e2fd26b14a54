"""Storage layer - Database schemas and repositories."""

from paperhands_tracker.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from paperhands_tracker.storage.models import (
    Base,
    ScanJobModel,
    WalletAnalysisModel,
)
from paperhands_tracker.storage.repos import (
    ScanJobDTO,
    ScanJobRepository,
    WalletAnalysisDTO,
    WalletAnalysisRepository,
)

__all__ = [
    "Base",
    "DatabaseManager",
    "ScanJobDTO",
    "ScanJobModel",
    "ScanJobRepository",
    "WalletAnalysisDTO",
    "WalletAnalysisModel",
    "WalletAnalysisRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
