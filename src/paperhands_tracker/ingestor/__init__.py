"""Data ingestion layer - Solana wallet history and swap extraction."""

from paperhands_tracker.ingestor.address import (
    InvalidAddressError,
    is_valid_address,
    validate_address,
)
from paperhands_tracker.ingestor.helius_client import (
    HeliusClient,
    HeliusClientError,
    HeliusRateLimitError,
)
from paperhands_tracker.ingestor.models import (
    CounterAsset,
    EnhancedTransaction,
    RpcTransaction,
    Swap,
    SwapDirection,
    UnrecognizedTransaction,
    decode_transaction,
)
from paperhands_tracker.ingestor.swaps import ExtractionFailedError, SwapExtractor

__all__ = [
    "CounterAsset",
    "EnhancedTransaction",
    "ExtractionFailedError",
    "HeliusClient",
    "HeliusClientError",
    "HeliusRateLimitError",
    "InvalidAddressError",
    "RpcTransaction",
    "Swap",
    "SwapDirection",
    "SwapExtractor",
    "UnrecognizedTransaction",
    "decode_transaction",
    "is_valid_address",
    "validate_address",
]
