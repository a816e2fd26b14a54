"""Tests for position building."""

from collections.abc import Callable

from paperhands_tracker.engine.models import TokenLabel
from paperhands_tracker.engine.positions import build_positions, fallback_label
from paperhands_tracker.ingestor.models import Swap, SwapDirection

MINT_B = "EKpQGSJtjMFqKZ9KQanSqYXRcF8fBopzLHYxdM65zcjm"


class TestBuildPositions:
    """Tests for build_positions."""

    def test_groups_by_mint_in_first_seen_order(self, make_swap: Callable[..., Swap], token_mint: str) -> None:
        swaps = [
            make_swap(SwapDirection.BUY, amount=10, price=1.0, timestamp_ms=1, mint=MINT_B),
            make_swap(SwapDirection.BUY, amount=5, price=2.0, timestamp_ms=2),
            make_swap(SwapDirection.SELL, amount=10, price=3.0, timestamp_ms=3, mint=MINT_B),
        ]

        positions = build_positions(swaps)

        assert [p.token_mint for p in positions] == [MINT_B, token_mint]
        assert len(positions[0].buys) == 1
        assert len(positions[0].sells) == 1
        assert len(positions[1].buys) == 1
        assert positions[1].sells == []

    def test_partitions_every_swap_exactly_once(self, make_swap: Callable[..., Swap]) -> None:
        swaps = [
            make_swap(
                SwapDirection.BUY if i % 3 else SwapDirection.SELL,
                amount=1 + i,
                price=0.1 * (i + 1),
                timestamp_ms=1000 - i,
                mint=MINT_B if i % 2 else "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263",
            )
            for i in range(20)
        ]

        positions = build_positions(swaps)

        seen = [lot.signature for p in positions for lot in p.buys] + [s.signature for p in positions for s in p.sells]
        assert sorted(seen) == sorted(s.signature for s in swaps)
        for position in positions:
            assert [lot.timestamp_ms for lot in position.buys] == sorted(lot.timestamp_ms for lot in position.buys)
            assert [s.timestamp_ms for s in position.sells] == sorted(s.timestamp_ms for s in position.sells)

    def test_lot_and_sale_values(self, make_swap: Callable[..., Swap]) -> None:
        swaps = [
            make_swap(SwapDirection.BUY, amount=100, price=0.5, timestamp_ms=1),
            make_swap(SwapDirection.SELL, amount=40, price=2.0, timestamp_ms=2),
        ]

        (position,) = build_positions(swaps)

        lot = position.buys[0]
        assert lot.amount == 100
        assert lot.remaining_amount == 100
        assert lot.unit_cost == 0.5
        sale = position.sells[0]
        assert sale.amount == 40
        assert sale.unit_price == 2.0
        assert sale.proceeds == 80.0

    def test_equal_timestamps_keep_input_order(self, make_swap: Callable[..., Swap]) -> None:
        swaps = [
            make_swap(SwapDirection.BUY, amount=1, price=1.0, timestamp_ms=5, signature="first"),
            make_swap(SwapDirection.BUY, amount=1, price=1.0, timestamp_ms=5, signature="second"),
        ]

        (position,) = build_positions(swaps)

        assert [lot.signature for lot in position.buys] == ["first", "second"]

    def test_labels(self, make_swap: Callable[..., Swap], token_mint: str) -> None:
        swaps = [
            make_swap(SwapDirection.BUY, amount=1, price=1.0, timestamp_ms=1),
            make_swap(SwapDirection.BUY, amount=1, price=1.0, timestamp_ms=1, mint=MINT_B),
        ]

        positions = build_positions(swaps, {token_mint: TokenLabel(symbol="BONK", name="Bonk")})

        assert positions[0].symbol == "BONK"
        assert positions[0].name == "Bonk"
        assert positions[1].symbol == "EKpQ...zcjm"
        assert positions[1].name == "Unknown Token"

    def test_empty_input(self) -> None:
        assert build_positions([]) == []


def test_fallback_label_short_mint() -> None:
    assert fallback_label("abc").symbol == "abc"
