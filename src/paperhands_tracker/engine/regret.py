"""Lot-based FIFO matching and regret computation.

For each position, sales consume the oldest buy lots first (partially if
needed). Each matched sale is compared with what the matched tokens would
be worth at the reference price: the live price when known, otherwise the
sale's own price (which yields zero regret rather than an invented one).
"""

from __future__ import annotations

import dataclasses
import logging
from collections import deque
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING

from paperhands_tracker.engine.models import Lot, Position, RegretEvent, Sale

if TYPE_CHECKING:
    from paperhands_tracker.market.resolver import MarketQuote

logger = logging.getLogger(__name__)

DEFAULT_MATERIALITY_THRESHOLD = 100.0
DEFAULT_EPSILON = 1e-9


class RegretEngine:
    """Pure regret computation over positions (no I/O, no hidden state)."""

    def __init__(
        self,
        *,
        materiality_threshold: float = DEFAULT_MATERIALITY_THRESHOLD,
        epsilon: float = DEFAULT_EPSILON,
    ) -> None:
        self.materiality_threshold = materiality_threshold
        self.epsilon = epsilon

    def compute(
        self,
        positions: Iterable[Position],
        quotes: Mapping[str, MarketQuote] | None = None,
    ) -> list[RegretEvent]:
        """Regret events for all positions, largest regret first.

        A position that fails is logged and skipped; the others still count.
        """
        quotes = quotes or {}
        events: list[RegretEvent] = []
        for position in positions:
            try:
                events.extend(self.compute_position(position, quotes.get(position.token_mint)))
            except Exception as e:
                logger.warning("Skipping position %s after matching error: %s", position.token_mint, e)
        events.sort(key=lambda event: event.regret_amount, reverse=True)
        return events

    def compute_position(self, position: Position, quote: MarketQuote | None = None) -> list[RegretEvent]:
        # Private copies; the caller's lots are never consumed.
        lots: deque[Lot] = deque(dataclasses.replace(lot) for lot in position.buys)
        live_price = quote.price_usd if quote is not None and quote.price_usd > 0 else None

        events: list[RegretEvent] = []
        for sale in position.sells:
            event = self._match_sale(position, sale, lots, quote, live_price)
            if event is not None:
                events.append(event)
        return events

    def _match_sale(
        self,
        position: Position,
        sale: Sale,
        lots: deque[Lot],
        quote: MarketQuote | None,
        live_price: float | None,
    ) -> RegretEvent | None:
        eps = self.epsilon
        remaining = sale.amount
        consumed: list[tuple[Lot, float]] = []

        while remaining > eps and lots:
            lot = lots[0]
            take = min(lot.remaining_amount, remaining)
            if take > 0:
                lot.remaining_amount = max(0.0, lot.remaining_amount - take)
                remaining -= take
                consumed.append((lot, take))
            if lot.remaining_amount <= eps:
                lots.popleft()

        matched = sum(take for _, take in consumed)
        if not consumed or matched <= eps or sale.amount <= 0:
            # Tokens acquired outside the observed window.
            return None

        fraction = min(1.0, matched / sale.amount)
        sell_value = sale.proceeds * fraction
        buy_value = sum(lot.unit_cost * take for lot, take in consumed)
        realized_delta = sell_value - buy_value

        reference = live_price if live_price is not None else sale.unit_price
        current_value = matched * reference
        regret = max(0.0, current_value - sell_value)
        regret_percent = regret / buy_value * 100 if buy_value > 0 else 0.0

        threshold = self.materiality_threshold
        if regret < threshold and realized_delta > -threshold:
            return None

        ath_price = quote.ath_price if quote is not None else None
        ath_regret = max(0.0, matched * ath_price - sell_value) if ath_price else None

        return RegretEvent(
            id=f"{position.token_mint}-{sale.signature}",
            token_mint=position.token_mint,
            symbol=position.symbol,
            name=position.name,
            buy_unit_price=buy_value / matched,
            sell_unit_price=sale.unit_price,
            matched_amount=matched,
            buy_timestamp_ms=consumed[0][0].timestamp_ms,
            sell_timestamp_ms=sale.timestamp_ms,
            realized_value_delta=realized_delta,
            regret_amount=regret,
            regret_percent=regret_percent,
            reference_price_used=reference,
            reference_is_live=live_price is not None,
            sell_signature=sale.signature,
            market_cap=quote.market_cap if quote is not None else None,
            ath_price=ath_price,
            ath_regret_amount=ath_regret,
        )
