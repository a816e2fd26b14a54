"""Market data resolution with a Redis-backed freshness window.

Quotes younger than the freshness window are served from Redis without a
network call. Missing or stale quotes are fetched from DexScreener in
batches. A mint that cannot be resolved gets a zero price, which the regret
engine treats as "use the sale price itself".
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from redis.asyncio import Redis

from paperhands_tracker.ingestor.models import STABLE_MINTS, WSOL_MINT
from paperhands_tracker.market.dexscreener_client import (
    MAX_MINTS_PER_REQUEST,
    DexScreenerClient,
    DexScreenerError,
    TokenPair,
)

logger = logging.getLogger(__name__)

DEFAULT_PRICE_FRESHNESS_SECONDS = 300
DEFAULT_METADATA_TTL_SECONDS = 24 * 3600
DEFAULT_BATCH_DELAY_SECONDS = 0.3


class MarketDataUnavailableError(Exception):
    """Raised when required market data cannot be obtained."""


@dataclass(frozen=True)
class MarketQuote:
    """Current market view of one token (price 0 means unknown)."""

    mint: str
    price_usd: float
    market_cap: float | None = None
    ath_price: float | None = None
    symbol: str | None = None
    name: str | None = None
    fetched_at: float = 0.0

    @property
    def has_price(self) -> bool:
        return self.price_usd > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "mint": self.mint,
            "price_usd": self.price_usd,
            "market_cap": self.market_cap,
            "ath_price": self.ath_price,
            "symbol": self.symbol,
            "name": self.name,
            "fetched_at": self.fetched_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MarketQuote:
        return cls(
            mint=str(data["mint"]),
            price_usd=float(data.get("price_usd") or 0.0),
            market_cap=float(data["market_cap"]) if data.get("market_cap") is not None else None,
            ath_price=float(data["ath_price"]) if data.get("ath_price") is not None else None,
            symbol=data.get("symbol"),
            name=data.get("name"),
            fetched_at=float(data.get("fetched_at") or 0.0),
        )

    @classmethod
    def unresolved(cls, mint: str, *, now: float, previous: MarketQuote | None = None) -> MarketQuote:
        """A zero-price quote, keeping only the labels of `previous`."""
        return cls(
            mint=mint,
            price_usd=0.0,
            symbol=previous.symbol if previous else None,
            name=previous.name if previous else None,
            fetched_at=now,
        )


def _best_pairs(pairs: Iterable[TokenPair]) -> dict[str, TokenPair]:
    """Highest-liquidity priced pair per base mint."""
    best: dict[str, TokenPair] = {}
    for pair in pairs:
        if pair.price_usd is None or pair.price_usd <= 0:
            continue
        current = best.get(pair.base_mint)
        if current is None or pair.liquidity_usd > current.liquidity_usd:
            best[pair.base_mint] = pair
    return best


class MarketDataResolver:
    """Resolves current price, market cap and metadata for token mints."""

    def __init__(
        self,
        client: DexScreenerClient,
        *,
        redis: Redis | None = None,
        batch_size: int = MAX_MINTS_PER_REQUEST,
        price_freshness_seconds: int = DEFAULT_PRICE_FRESHNESS_SECONDS,
        metadata_ttl_seconds: int = DEFAULT_METADATA_TTL_SECONDS,
        batch_delay_seconds: float = DEFAULT_BATCH_DELAY_SECONDS,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._redis = redis
        self._batch_size = max(1, min(batch_size, MAX_MINTS_PER_REQUEST))
        self._freshness = price_freshness_seconds
        self._metadata_ttl = metadata_ttl_seconds
        self._batch_delay = batch_delay_seconds
        self._clock = clock
        self._sleep = sleep
        self._cache_prefix = "paperhands:quote:"

    def _cache_key(self, mint: str) -> str:
        return f"{self._cache_prefix}{mint}"

    async def _get_cached(self, mint: str) -> MarketQuote | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(self._cache_key(mint))
            if value is None:
                return None
            raw = value.decode() if isinstance(value, bytes) else str(value)
            return MarketQuote.from_dict(json.loads(raw))
        except Exception as e:
            logger.warning("Failed to read cached quote for %s: %s", mint, e)
            return None

    async def _set_cached(self, quote: MarketQuote) -> None:
        if not self._redis:
            return
        try:
            # Kept past the freshness window so metadata survives a failed refetch.
            await self._redis.set(
                self._cache_key(quote.mint), json.dumps(quote.to_dict()), ex=self._metadata_ttl
            )
        except Exception as e:
            logger.warning("Failed to cache quote for %s: %s", quote.mint, e)

    def _is_fresh(self, quote: MarketQuote, now: float) -> bool:
        return quote.has_price and (now - quote.fetched_at) < self._freshness

    async def resolve(self, mints: Iterable[str]) -> dict[str, MarketQuote]:
        """Return a quote for every requested mint.

        Never raises for individual mints; unresolvable mints (and mints in
        a batch whose request failed) get a zero price. Stale cached quotes
        only contribute their symbol and name.
        """
        unique = list(dict.fromkeys(m for m in mints if m))
        now = self._clock()
        quotes: dict[str, MarketQuote] = {}
        stale: dict[str, MarketQuote] = {}
        to_fetch: list[str] = []

        for mint in unique:
            if mint in STABLE_MINTS:
                quotes[mint] = MarketQuote(
                    mint=mint, price_usd=1.0, symbol=STABLE_MINTS[mint], name=STABLE_MINTS[mint], fetched_at=now
                )
                continue
            cached = await self._get_cached(mint)
            if cached is not None and self._is_fresh(cached, now):
                quotes[mint] = cached
                continue
            if cached is not None:
                stale[mint] = cached
            to_fetch.append(mint)

        if to_fetch:
            logger.debug(
                "Resolving %d mints (%d served from cache)", len(to_fetch), len(unique) - len(to_fetch)
            )

        for start in range(0, len(to_fetch), self._batch_size):
            if start > 0 and self._batch_delay > 0:
                await self._sleep(self._batch_delay)
            batch = to_fetch[start : start + self._batch_size]
            try:
                pairs = await self._client.get_token_pairs(batch)
            except DexScreenerError as e:
                logger.warning(
                    "Market data unavailable for %d mints, degrading to zero prices: %s",
                    len(batch),
                    e,
                )
                for mint in batch:
                    quotes[mint] = MarketQuote.unresolved(mint, now=now, previous=stale.get(mint))
                continue

            best = _best_pairs(pairs)
            fetched_at = self._clock()
            for mint in batch:
                pair = best.get(mint)
                if pair is None:
                    quotes[mint] = MarketQuote.unresolved(mint, now=fetched_at, previous=stale.get(mint))
                    continue
                quote = MarketQuote(
                    mint=mint,
                    price_usd=float(pair.price_usd or 0.0),
                    market_cap=pair.market_cap,
                    ath_price=None,
                    symbol=pair.symbol or None,
                    name=pair.name or None,
                    fetched_at=fetched_at,
                )
                quotes[mint] = quote
                await self._set_cached(quote)

        return quotes

    async def resolve_sol_price(self) -> float | None:
        """Current SOL/USD price, None when unavailable."""
        quote = (await self.resolve([WSOL_MINT])).get(WSOL_MINT)
        if quote is None or not quote.has_price:
            return None
        return quote.price_usd
