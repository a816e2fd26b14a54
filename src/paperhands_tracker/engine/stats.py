"""Reduction of regret events into per-wallet summary statistics."""

from __future__ import annotations

import math
from collections.abc import Sequence
from datetime import datetime

from paperhands_tracker.engine.models import DateRange, RegretEvent, TopToken, WalletAnalysisResult

DEFAULT_TOP_N = 10

SCALPER_MAX_DAYS = 7
SWING_MAX_DAYS = 30
DIAMOND_JEET_MIN_PERCENT = 500.0
JEET_MIN_PERCENT = 200.0


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def top_regretted_tokens(events: Sequence[RegretEvent], *, limit: int = DEFAULT_TOP_N) -> list[TopToken]:
    """Tokens ranked by regret summed across their events (ties by mint)."""
    totals: dict[str, float] = {}
    counts: dict[str, int] = {}
    labels: dict[str, tuple[str, str]] = {}
    for event in events:
        totals[event.token_mint] = totals.get(event.token_mint, 0.0) + event.regret_amount
        counts[event.token_mint] = counts.get(event.token_mint, 0) + 1
        labels.setdefault(event.token_mint, (event.symbol, event.name))

    ranked = sorted(totals, key=lambda mint: (-totals[mint], mint))
    return [
        TopToken(
            token_mint=mint,
            symbol=labels[mint][0],
            name=labels[mint][1],
            total_regret=totals[mint],
            event_count=counts[mint],
        )
        for mint in ranked[:limit]
    ]


def trading_style_tags(avg_hold_days: int, avg_regret_percent: float) -> tuple[str, ...]:
    if avg_hold_days < SCALPER_MAX_DAYS:
        hold_tag = "Scalper"
    elif avg_hold_days < SWING_MAX_DAYS:
        hold_tag = "Swing"
    else:
        hold_tag = "Hold"

    if avg_regret_percent > DIAMOND_JEET_MIN_PERCENT:
        regret_tag = "Diamond Jeet"
    elif avg_regret_percent > JEET_MIN_PERCENT:
        regret_tag = "Jeet"
    else:
        regret_tag = "Paper"
    return (hold_tag, regret_tag)


def aggregate(
    address: str,
    events: Sequence[RegretEvent],
    *,
    distinct_tokens_traded: int,
    date_range: DateRange,
    computed_at: datetime,
    expires_at: datetime,
    top_n: int = DEFAULT_TOP_N,
) -> WalletAnalysisResult:
    """Summarise regret events for one wallet.

    Deterministic in its inputs. Hold time is the rounded mean of whole
    days per event; win rate is the fraction of events with a positive
    realized delta.
    """
    total_events = len(events)
    total_regret = sum(e.regret_amount for e in events)
    total_realized = sum(e.realized_value_delta for e in events)

    if total_events:
        win_rate = sum(1 for e in events if e.realized_value_delta > 0) / total_events
        avg_hold_days = _round_half_up(sum(e.hold_days for e in events) / total_events)
        avg_regret_percent = sum(e.regret_percent for e in events) / total_events
        tags = trading_style_tags(avg_hold_days, avg_regret_percent)
        worst = min(events, key=lambda e: (-e.regret_amount, e.id))
    else:
        win_rate = 0.0
        avg_hold_days = 0
        tags = ()
        worst = None

    if total_realized != 0:
        paperhands_score = min(100, _round_half_up(total_regret / abs(total_realized) * 10))
    else:
        paperhands_score = 0

    ordered = sorted(events, key=lambda e: e.regret_amount, reverse=True)

    return WalletAnalysisResult(
        address=address,
        total_regret=total_regret,
        total_realized=total_realized,
        total_events=total_events,
        distinct_tokens_traded=distinct_tokens_traded,
        win_rate=win_rate,
        avg_hold_days=avg_hold_days,
        paperhands_score=paperhands_score,
        tags=tags,
        top_regretted_tokens=tuple(top_regretted_tokens(events, limit=top_n)),
        events=tuple(ordered),
        worst_regret=worst,
        date_range=date_range,
        computed_at=computed_at,
        expires_at=expires_at,
    )
