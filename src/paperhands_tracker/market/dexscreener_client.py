"""DexScreener HTTP client for Solana token prices and metadata."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import aiohttp

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.dexscreener.com"
MAX_MINTS_PER_REQUEST = 30
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_TIMEOUT_SECONDS = 20.0
SOLANA_CHAIN_ID = "solana"


class DexScreenerError(Exception):
    """Raised when DexScreener cannot be queried."""


class DexScreenerTransientError(DexScreenerError):
    """Raised for retryable responses (429/5xx)."""


def _to_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class TokenPair:
    """One trading pair whose base token is the looked-up mint."""

    base_mint: str
    symbol: str
    name: str
    price_usd: float | None
    liquidity_usd: float
    market_cap: float | None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenPair:
        base = data.get("baseToken") or {}
        liquidity = data.get("liquidity") or {}
        market_cap = _to_float(data.get("fdv"))
        if market_cap is None:
            market_cap = _to_float(data.get("marketCap"))
        return cls(
            base_mint=str(base["address"]),
            symbol=str(base.get("symbol") or ""),
            name=str(base.get("name") or ""),
            price_usd=_to_float(data.get("priceUsd")),
            liquidity_usd=_to_float(liquidity.get("usd")) or 0.0,
            market_cap=market_cap,
        )


class DexScreenerClient:
    """Batched token lookups against ``/latest/dex/tokens/{mints}``."""

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        session: aiohttp.ClientSession | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def get_token_pairs(self, mints: Sequence[str]) -> list[TokenPair]:
        """Return Solana pairs whose base token is one of `mints`.

        Raises:
            DexScreenerError: If the request fails after all retries.
            ValueError: If more than 30 mints are requested.
        """
        if not mints:
            return []
        if len(mints) > MAX_MINTS_PER_REQUEST:
            raise ValueError(f"At most {MAX_MINTS_PER_REQUEST} mints per request")

        url = f"{self._base_url}/latest/dex/tokens/{','.join(mints)}"
        data = await self._get_with_retry(url)

        wanted = set(mints)
        pairs: list[TokenPair] = []
        for raw in data.get("pairs") or []:
            if raw.get("chainId") not in (None, SOLANA_CHAIN_ID):
                continue
            try:
                pair = TokenPair.from_dict(raw)
            except (KeyError, TypeError) as e:
                logger.debug("Skipping malformed DexScreener pair: %s", e)
                continue
            if pair.base_mint in wanted:
                pairs.append(pair)
        return pairs

    async def _get_with_retry(self, url: str) -> dict[str, Any]:
        last_error: Exception | None = None
        delay = self._retry_delay
        for attempt in range(self._max_retries):
            try:
                async with self._get_session().get(url) as response:
                    if response.status == 429 or response.status >= 500:
                        raise DexScreenerTransientError(f"HTTP {response.status}")
                    if response.status >= 400:
                        raise DexScreenerError(f"HTTP {response.status}")
                    data = await response.json(content_type=None)
                    return data if isinstance(data, dict) else {}
            except (DexScreenerTransientError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = e
            logger.warning(
                "DexScreener request failed (attempt %d/%d): %s",
                attempt + 1,
                self._max_retries,
                last_error,
            )
            if attempt < self._max_retries - 1:
                await asyncio.sleep(delay)
                delay *= 2
        raise DexScreenerError(f"DexScreener request failed after all retries: {last_error}")
