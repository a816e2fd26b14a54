"""Grouping of swaps into per-token positions."""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from paperhands_tracker.engine.models import Lot, Position, Sale, TokenLabel
from paperhands_tracker.ingestor.models import Swap, SwapDirection


def fallback_label(mint: str) -> TokenLabel:
    short = f"{mint[:4]}...{mint[-4:]}" if len(mint) > 10 else mint
    return TokenLabel(symbol=short, name="Unknown Token")


def build_positions(
    swaps: Iterable[Swap],
    labels: Mapping[str, TokenLabel] | None = None,
) -> list[Position]:
    """Group swaps by token mint into chronological buy and sell lists.

    Pure and deterministic: every swap lands in exactly one position, mints
    appear in first-seen order, and equal timestamps keep input order.
    Counter amounts are expected in USD already.
    """
    labels = labels or {}
    positions: dict[str, Position] = {}

    for swap in swaps:
        position = positions.get(swap.token_mint)
        if position is None:
            label = labels.get(swap.token_mint) or fallback_label(swap.token_mint)
            position = Position(token_mint=swap.token_mint, symbol=label.symbol, name=label.name)
            positions[swap.token_mint] = position

        if swap.direction is SwapDirection.BUY:
            position.buys.append(
                Lot(
                    timestamp_ms=swap.timestamp_ms,
                    amount=swap.token_amount,
                    unit_cost=swap.price_per_token,
                    remaining_amount=swap.token_amount,
                    signature=swap.signature,
                )
            )
        else:
            position.sells.append(
                Sale(
                    timestamp_ms=swap.timestamp_ms,
                    amount=swap.token_amount,
                    unit_price=swap.price_per_token,
                    proceeds=swap.counter_asset_amount,
                    signature=swap.signature,
                )
            )

    for position in positions.values():
        position.buys.sort(key=lambda lot: lot.timestamp_ms)
        position.sells.sort(key=lambda sale: sale.timestamp_ms)

    return list(positions.values())
