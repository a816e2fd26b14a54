"""Data models for trade matching and regret computation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class Lot:
    """A discrete purchase, consumable by later sales.

    `remaining_amount` only ever decreases and stays within
    ``0 <= remaining_amount <= amount``.
    """

    timestamp_ms: int
    amount: float
    unit_cost: float
    remaining_amount: float
    signature: str = ""


@dataclass(frozen=True)
class Sale:
    timestamp_ms: int
    amount: float
    unit_price: float
    proceeds: float
    signature: str


@dataclass(frozen=True)
class TokenLabel:
    symbol: str
    name: str


@dataclass
class Position:
    """All buys and sells of one token, each side in chronological order."""

    token_mint: str
    symbol: str
    name: str
    buys: list[Lot] = field(default_factory=list)
    sells: list[Sale] = field(default_factory=list)


@dataclass(frozen=True)
class RegretEvent:
    """Regret attributed to one sale (or its matched portion)."""

    id: str
    token_mint: str
    symbol: str
    name: str
    buy_unit_price: float
    sell_unit_price: float
    matched_amount: float
    buy_timestamp_ms: int
    sell_timestamp_ms: int
    realized_value_delta: float
    regret_amount: float
    regret_percent: float
    reference_price_used: float
    reference_is_live: bool
    sell_signature: str
    market_cap: float | None = None
    ath_price: float | None = None
    ath_regret_amount: float | None = None

    @property
    def hold_days(self) -> int:
        """Whole days between the earliest consumed buy and the sale."""
        return max(0, (self.sell_timestamp_ms - self.buy_timestamp_ms) // 86_400_000)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "token_mint": self.token_mint,
            "symbol": self.symbol,
            "name": self.name,
            "buy_unit_price": self.buy_unit_price,
            "sell_unit_price": self.sell_unit_price,
            "matched_amount": self.matched_amount,
            "buy_timestamp_ms": self.buy_timestamp_ms,
            "sell_timestamp_ms": self.sell_timestamp_ms,
            "realized_value_delta": self.realized_value_delta,
            "regret_amount": self.regret_amount,
            "regret_percent": self.regret_percent,
            "reference_price_used": self.reference_price_used,
            "reference_is_live": self.reference_is_live,
            "sell_signature": self.sell_signature,
            "market_cap": self.market_cap,
            "ath_price": self.ath_price,
            "ath_regret_amount": self.ath_regret_amount,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RegretEvent:
        return cls(
            id=str(data["id"]),
            token_mint=str(data["token_mint"]),
            symbol=str(data.get("symbol") or ""),
            name=str(data.get("name") or ""),
            buy_unit_price=float(data["buy_unit_price"]),
            sell_unit_price=float(data["sell_unit_price"]),
            matched_amount=float(data["matched_amount"]),
            buy_timestamp_ms=int(data["buy_timestamp_ms"]),
            sell_timestamp_ms=int(data["sell_timestamp_ms"]),
            realized_value_delta=float(data["realized_value_delta"]),
            regret_amount=float(data["regret_amount"]),
            regret_percent=float(data["regret_percent"]),
            reference_price_used=float(data["reference_price_used"]),
            reference_is_live=bool(data.get("reference_is_live", False)),
            sell_signature=str(data.get("sell_signature") or ""),
            market_cap=data.get("market_cap"),
            ath_price=data.get("ath_price"),
            ath_regret_amount=data.get("ath_regret_amount"),
        )


@dataclass(frozen=True)
class TopToken:
    """Regret summed over all events for one token."""

    token_mint: str
    symbol: str
    name: str
    total_regret: float
    event_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "token_mint": self.token_mint,
            "symbol": self.symbol,
            "name": self.name,
            "total_regret": self.total_regret,
            "event_count": self.event_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TopToken:
        return cls(
            token_mint=str(data["token_mint"]),
            symbol=str(data.get("symbol") or ""),
            name=str(data.get("name") or ""),
            total_regret=float(data["total_regret"]),
            event_count=int(data["event_count"]),
        )


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DateRange:
        return cls(
            start=datetime.fromisoformat(data["start"]),
            end=datetime.fromisoformat(data["end"]),
        )


@dataclass(frozen=True)
class WalletAnalysisResult:
    """Aggregate analysis of one wallet; the unit stored in the cache."""

    address: str
    total_regret: float
    total_realized: float
    total_events: int
    distinct_tokens_traded: int
    win_rate: float
    avg_hold_days: int
    paperhands_score: int
    tags: tuple[str, ...]
    top_regretted_tokens: tuple[TopToken, ...]
    events: tuple[RegretEvent, ...]
    date_range: DateRange
    computed_at: datetime
    expires_at: datetime
    worst_regret: RegretEvent | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "total_regret": self.total_regret,
            "total_realized": self.total_realized,
            "total_events": self.total_events,
            "distinct_tokens_traded": self.distinct_tokens_traded,
            "win_rate": self.win_rate,
            "avg_hold_days": self.avg_hold_days,
            "paperhands_score": self.paperhands_score,
            "tags": list(self.tags),
            "top_regretted_tokens": [t.to_dict() for t in self.top_regretted_tokens],
            "events": [e.to_dict() for e in self.events],
            "worst_regret": self.worst_regret.to_dict() if self.worst_regret else None,
            "date_range": self.date_range.to_dict(),
            "computed_at": self.computed_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WalletAnalysisResult:
        worst = data.get("worst_regret")
        return cls(
            address=str(data["address"]),
            total_regret=float(data["total_regret"]),
            total_realized=float(data.get("total_realized") or 0.0),
            total_events=int(data["total_events"]),
            distinct_tokens_traded=int(data["distinct_tokens_traded"]),
            win_rate=float(data["win_rate"]),
            avg_hold_days=int(data["avg_hold_days"]),
            paperhands_score=int(data.get("paperhands_score") or 0),
            tags=tuple(data.get("tags") or ()),
            top_regretted_tokens=tuple(TopToken.from_dict(t) for t in data.get("top_regretted_tokens") or []),
            events=tuple(RegretEvent.from_dict(e) for e in data.get("events") or []),
            worst_regret=RegretEvent.from_dict(worst) if worst else None,
            date_range=DateRange.from_dict(data["date_range"]),
            computed_at=datetime.fromisoformat(data["computed_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )
