"""Pytest configuration and fixtures."""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import base58
import pytest

from paperhands_tracker.engine.models import DateRange, WalletAnalysisResult
from paperhands_tracker.engine.stats import aggregate
from paperhands_tracker.ingestor.models import CounterAsset, Swap, SwapDirection
from paperhands_tracker.storage.database import DatabaseManager


@pytest.fixture
def wallet_address() -> str:
    """A well-formed Solana address used as the analysed wallet."""
    return "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"


@pytest.fixture
def other_wallet_address() -> str:
    return "SysvarC1ock11111111111111111111111111111111"


@pytest.fixture
def token_mint() -> str:
    return "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"


@pytest.fixture
def wallet_addresses() -> list[str]:
    """Twelve distinct well-formed addresses."""
    return [base58.b58encode(bytes([i + 1]) * 32).decode() for i in range(12)]


@pytest.fixture
def make_swap() -> Callable[..., Swap]:
    """Factory for USD-denominated swaps."""

    counter = iter(range(1, 1_000_000))

    def _make(
        direction: SwapDirection,
        *,
        amount: float,
        price: float,
        timestamp_ms: int,
        mint: str = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263",
        counter_asset: CounterAsset = CounterAsset.USDC,
        signature: str | None = None,
    ) -> Swap:
        return Swap(
            signature=signature or f"sig{next(counter)}",
            timestamp_ms=timestamp_ms,
            token_mint=mint,
            direction=direction,
            counter_asset=counter_asset,
            counter_asset_amount=amount * price,
            token_amount=amount,
        )

    return _make


class FakeClock:
    """Wall clock that advances one millisecond per reading."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(milliseconds=1)
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock(datetime(2026, 10, 18, 12, 0, tzinfo=UTC))


@pytest.fixture
async def job_db(tmp_path):
    """File-backed SQLite so concurrent sessions get separate connections."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
def make_result() -> Callable[..., WalletAnalysisResult]:
    """Factory for an empty (no regret events) analysis result."""

    def _make(address: str, at: datetime) -> WalletAnalysisResult:
        return aggregate(
            address,
            [],
            distinct_tokens_traded=0,
            date_range=DateRange(start=at - timedelta(days=30), end=at),
            computed_at=at,
            expires_at=at + timedelta(hours=48),
        )

    return _make
