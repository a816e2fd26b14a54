"""Market data layer - token prices, market caps and metadata."""

from paperhands_tracker.market.dexscreener_client import DexScreenerClient, DexScreenerError
from paperhands_tracker.market.resolver import (
    MarketDataResolver,
    MarketDataUnavailableError,
    MarketQuote,
)

__all__ = [
    "DexScreenerClient",
    "DexScreenerError",
    "MarketDataResolver",
    "MarketDataUnavailableError",
    "MarketQuote",
]
