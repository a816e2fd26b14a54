"""Trade matching and regret computation engine."""

from paperhands_tracker.engine.models import (
    DateRange,
    Lot,
    Position,
    RegretEvent,
    Sale,
    TokenLabel,
    TopToken,
    WalletAnalysisResult,
)
from paperhands_tracker.engine.positions import build_positions
from paperhands_tracker.engine.regret import RegretEngine
from paperhands_tracker.engine.stats import aggregate

__all__ = [
    "DateRange",
    "Lot",
    "Position",
    "RegretEngine",
    "RegretEvent",
    "Sale",
    "TokenLabel",
    "TopToken",
    "WalletAnalysisResult",
    "aggregate",
    "build_positions",
]
