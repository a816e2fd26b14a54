"""Tests for FIFO matching and regret computation."""

import copy
from collections.abc import Callable

import pytest

from paperhands_tracker.engine.models import Lot, Position, Sale
from paperhands_tracker.engine.positions import build_positions
from paperhands_tracker.engine.regret import RegretEngine
from paperhands_tracker.ingestor.models import Swap, SwapDirection
from paperhands_tracker.market.resolver import MarketQuote

DAY_MS = 86_400_000


def quote(mint: str, price: float, *, ath: float | None = None) -> MarketQuote:
    return MarketQuote(mint=mint, price_usd=price, market_cap=5_000_000.0, ath_price=ath, symbol="TKN")


@pytest.fixture
def engine() -> RegretEngine:
    return RegretEngine(materiality_threshold=100.0)


# ============================================================================
# Scenario Tests
# ============================================================================


class TestRegretScenarios:
    """End-to-end scenarios over a single token."""

    def test_sold_before_pump(self, engine: RegretEngine, make_swap: Callable[..., Swap], token_mint: str) -> None:
        swaps = [
            make_swap(SwapDirection.BUY, amount=100, price=1.0, timestamp_ms=0),
            make_swap(SwapDirection.SELL, amount=100, price=2.0, timestamp_ms=3 * DAY_MS),
        ]

        events = engine.compute(build_positions(swaps), {token_mint: quote(token_mint, 5.0)})

        assert len(events) == 1
        event = events[0]
        assert event.regret_amount == pytest.approx(300.0)
        assert event.regret_percent == pytest.approx(300.0)
        assert event.realized_value_delta == pytest.approx(100.0)
        assert event.matched_amount == pytest.approx(100.0)
        assert event.buy_unit_price == pytest.approx(1.0)
        assert event.sell_unit_price == pytest.approx(2.0)
        assert event.reference_price_used == 5.0
        assert event.reference_is_live is True
        assert event.hold_days == 3
        assert event.market_cap == 5_000_000.0

    def test_small_loss_is_immaterial(self, engine: RegretEngine, make_swap: Callable[..., Swap], token_mint: str) -> None:
        swaps = [
            make_swap(SwapDirection.BUY, amount=10, price=1.0, timestamp_ms=0),
            make_swap(SwapDirection.SELL, amount=10, price=0.5, timestamp_ms=DAY_MS),
        ]

        events = engine.compute(build_positions(swaps), {token_mint: quote(token_mint, 0.4)})

        assert events == []

    def test_sale_without_prior_buy(self, engine: RegretEngine, make_swap: Callable[..., Swap], token_mint: str) -> None:
        swaps = [make_swap(SwapDirection.SELL, amount=1000, price=5.0, timestamp_ms=0)]

        events = engine.compute(build_positions(swaps), {token_mint: quote(token_mint, 50.0)})

        assert events == []

    def test_material_loss_is_reported(self, engine: RegretEngine, make_swap: Callable[..., Swap], token_mint: str) -> None:
        swaps = [
            make_swap(SwapDirection.BUY, amount=1000, price=1.0, timestamp_ms=0),
            make_swap(SwapDirection.SELL, amount=1000, price=0.5, timestamp_ms=DAY_MS),
        ]

        events = engine.compute(build_positions(swaps), {token_mint: quote(token_mint, 0.1)})

        assert len(events) == 1
        assert events[0].regret_amount == 0.0
        assert events[0].realized_value_delta == pytest.approx(-500.0)


# ============================================================================
# Matching Tests
# ============================================================================


class TestFifoMatching:
    """Tests for lot consumption."""

    def test_partial_lot_consumption(self, engine: RegretEngine, make_swap: Callable[..., Swap], token_mint: str) -> None:
        swaps = [
            make_swap(SwapDirection.BUY, amount=100, price=1.0, timestamp_ms=0),
            make_swap(SwapDirection.BUY, amount=100, price=3.0, timestamp_ms=DAY_MS),
            make_swap(SwapDirection.SELL, amount=150, price=4.0, timestamp_ms=2 * DAY_MS),
        ]

        (event,) = engine.compute(build_positions(swaps), {token_mint: quote(token_mint, 10.0)})

        # 100 @ $1 + 50 @ $3 consumed.
        assert event.matched_amount == pytest.approx(150.0)
        assert event.buy_unit_price == pytest.approx(250.0 / 150.0)
        assert event.realized_value_delta == pytest.approx(600.0 - 250.0)
        assert event.regret_amount == pytest.approx(1500.0 - 600.0)
        assert event.buy_timestamp_ms == 0

    def test_oversold_sale_is_prorated(self, engine: RegretEngine, make_swap: Callable[..., Swap], token_mint: str) -> None:
        swaps = [
            make_swap(SwapDirection.BUY, amount=100, price=1.0, timestamp_ms=0),
            make_swap(SwapDirection.SELL, amount=200, price=2.0, timestamp_ms=DAY_MS),
        ]

        (event,) = engine.compute(build_positions(swaps), {token_mint: quote(token_mint, 5.0)})

        assert event.matched_amount == pytest.approx(100.0)
        # Half the proceeds belong to the matched half.
        assert event.realized_value_delta == pytest.approx(200.0 - 100.0)
        assert event.regret_amount == pytest.approx(500.0 - 200.0)

    def test_later_sales_consume_remaining_lots(self, engine: RegretEngine, make_swap: Callable[..., Swap], token_mint: str) -> None:
        swaps = [
            make_swap(SwapDirection.BUY, amount=100, price=1.0, timestamp_ms=0),
            make_swap(SwapDirection.SELL, amount=60, price=2.0, timestamp_ms=DAY_MS),
            make_swap(SwapDirection.SELL, amount=60, price=2.0, timestamp_ms=2 * DAY_MS),
        ]

        events = engine.compute(build_positions(swaps), {token_mint: quote(token_mint, 10.0)})

        matched = sorted(e.matched_amount for e in events)
        assert matched == [pytest.approx(40.0), pytest.approx(60.0)]

    def test_matched_never_exceeds_sold(self, engine: RegretEngine, make_swap: Callable[..., Swap], token_mint: str) -> None:
        swaps = []
        for i in range(30):
            direction = SwapDirection.BUY if i % 3 != 2 else SwapDirection.SELL
            swaps.append(make_swap(direction, amount=10 + 7 * (i % 5), price=1.0 + i, timestamp_ms=i * DAY_MS))

        positions = build_positions(swaps)
        events = engine.compute(positions, {token_mint: quote(token_mint, 1000.0)})

        total_sold = sum(s.amount for p in positions for s in p.sells)
        assert sum(e.matched_amount for e in events) <= total_sold + 1e-9

    def test_inputs_are_not_mutated(self, engine: RegretEngine, make_swap: Callable[..., Swap], token_mint: str) -> None:
        swaps = [
            make_swap(SwapDirection.BUY, amount=100, price=1.0, timestamp_ms=0),
            make_swap(SwapDirection.SELL, amount=100, price=2.0, timestamp_ms=DAY_MS),
        ]
        positions = build_positions(swaps)
        before = copy.deepcopy(positions)

        engine.compute(positions, {token_mint: quote(token_mint, 5.0)})

        assert positions == before
        assert positions[0].buys[0].remaining_amount == 100

    def test_idempotent(self, engine: RegretEngine, make_swap: Callable[..., Swap], token_mint: str) -> None:
        swaps = [
            make_swap(SwapDirection.BUY, amount=100, price=1.0, timestamp_ms=0),
            make_swap(SwapDirection.BUY, amount=50, price=1.5, timestamp_ms=DAY_MS),
            make_swap(SwapDirection.SELL, amount=120, price=2.0, timestamp_ms=2 * DAY_MS),
        ]
        positions = build_positions(swaps)
        quotes = {token_mint: quote(token_mint, 7.0)}

        assert engine.compute(positions, quotes) == engine.compute(positions, quotes)


# ============================================================================
# Reference Price Tests
# ============================================================================


class TestReferencePrice:
    """Tests for the live-price fallback."""

    def test_unknown_price_yields_zero_regret(self, engine: RegretEngine, make_swap: Callable[..., Swap], token_mint: str) -> None:
        swaps = [
            make_swap(SwapDirection.BUY, amount=1000, price=1.0, timestamp_ms=0),
            make_swap(SwapDirection.SELL, amount=1000, price=0.8, timestamp_ms=DAY_MS),
        ]

        (event,) = engine.compute(build_positions(swaps), {})

        assert event.regret_amount == 0.0
        assert event.reference_price_used == pytest.approx(0.8)
        assert event.reference_is_live is False

    def test_ath_regret(self, engine: RegretEngine, make_swap: Callable[..., Swap], token_mint: str) -> None:
        swaps = [
            make_swap(SwapDirection.BUY, amount=100, price=1.0, timestamp_ms=0),
            make_swap(SwapDirection.SELL, amount=100, price=2.0, timestamp_ms=DAY_MS),
        ]

        (event,) = engine.compute(build_positions(swaps), {token_mint: quote(token_mint, 5.0, ath=9.0)})

        assert event.ath_price == 9.0
        assert event.ath_regret_amount == pytest.approx(700.0)


class TestComputeOrdering:
    """Tests for compute() ordering and error isolation."""

    def test_sorted_by_regret_descending(self, engine: RegretEngine) -> None:
        positions = [
            Position(
                token_mint=f"mint{i}",
                symbol=f"T{i}",
                name=f"Token {i}",
                buys=[Lot(timestamp_ms=0, amount=100, unit_cost=1.0, remaining_amount=100, signature=f"b{i}")],
                sells=[Sale(timestamp_ms=DAY_MS, amount=100, unit_price=2.0, proceeds=200.0, signature=f"s{i}")],
            )
            for i in range(3)
        ]
        quotes = {
            "mint0": quote("mint0", 4.0),
            "mint1": quote("mint1", 10.0),
            "mint2": quote("mint2", 6.0),
        }

        events = engine.compute(positions, quotes)

        assert [e.token_mint for e in events] == ["mint1", "mint2", "mint0"]
        assert [e.id for e in events] == ["mint1-s1", "mint2-s2", "mint0-s0"]

    def test_failing_position_is_skipped(self, engine: RegretEngine) -> None:
        good = Position(
            token_mint="good",
            symbol="G",
            name="Good",
            buys=[Lot(timestamp_ms=0, amount=100, unit_cost=1.0, remaining_amount=100, signature="b")],
            sells=[Sale(timestamp_ms=DAY_MS, amount=100, unit_price=2.0, proceeds=200.0, signature="s")],
        )
        bad = Position(
            token_mint="bad",
            symbol="B",
            name="Bad",
            buys=[Lot(timestamp_ms=0, amount=100, unit_cost=1.0, remaining_amount=100, signature="b")],
            sells=[None],  # type: ignore[list-item]
        )

        events = engine.compute([bad, good], {"good": quote("good", 5.0), "bad": quote("bad", 5.0)})

        assert [e.token_mint for e in events] == ["good"]
