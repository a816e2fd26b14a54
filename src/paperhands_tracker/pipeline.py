"""Wallet analysis pipeline.

Wires the extractor, market data resolver, regret engine and aggregator
into one call:

    history -> swaps -> USD valuation -> positions -> regret events -> summary
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from paperhands_tracker.engine.models import DateRange, TokenLabel, WalletAnalysisResult
from paperhands_tracker.engine.positions import build_positions
from paperhands_tracker.engine.regret import RegretEngine
from paperhands_tracker.engine.stats import aggregate
from paperhands_tracker.ingestor.address import validate_address
from paperhands_tracker.ingestor.helius_client import HeliusClient
from paperhands_tracker.ingestor.models import WSOL_MINT, CounterAsset, Swap
from paperhands_tracker.ingestor.swaps import SwapExtractor
from paperhands_tracker.market.dexscreener_client import DexScreenerClient
from paperhands_tracker.market.resolver import MarketDataResolver, MarketDataUnavailableError, MarketQuote
from paperhands_tracker.progress import (
    STAGE_AGGREGATING,
    STAGE_DONE,
    STAGE_FETCHING,
    STAGE_MATCHING,
    STAGE_PRICING,
    ProgressBus,
)

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from paperhands_tracker.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_RESULT_TTL_HOURS = 48


def _labels_from_quotes(quotes: dict[str, MarketQuote]) -> dict[str, TokenLabel]:
    labels: dict[str, TokenLabel] = {}
    for mint, quote in quotes.items():
        if quote.symbol:
            labels[mint] = TokenLabel(symbol=quote.symbol, name=quote.name or quote.symbol)
    return labels


def value_swaps_in_usd(swaps: list[Swap], *, sol_price_usd: float | None) -> list[Swap]:
    """Express every swap's counter amount in USD.

    Raises:
        MarketDataUnavailableError: If SOL-denominated swaps exist and the
            SOL/USD price is unknown.
    """
    valued: list[Swap] = []
    for swap in swaps:
        if swap.counter_asset is CounterAsset.SOL:
            if sol_price_usd is None:
                raise MarketDataUnavailableError(
                    "SOL/USD price unavailable; cannot value SOL-denominated swaps"
                )
            valued.append(swap.valued_in_usd(sol_price_usd))
        else:
            valued.append(swap.valued_in_usd(1.0))
    return valued


class AnalysisPipeline:
    """Runs one wallet analysis end to end.

    Example:
        ```python
        pipeline = AnalysisPipeline.from_settings(get_settings(), redis=redis)
        try:
            result = await pipeline.analyze("Wallet...", lookback_days=30)
        finally:
            await pipeline.close()
        ```
    """

    def __init__(
        self,
        extractor: SwapExtractor,
        resolver: MarketDataResolver,
        engine: RegretEngine,
        *,
        result_ttl_hours: int = DEFAULT_RESULT_TTL_HOURS,
        top_n: int = 10,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        closeables: tuple[Any, ...] = (),
    ) -> None:
        self._extractor = extractor
        self._resolver = resolver
        self._engine = engine
        self._result_ttl = timedelta(hours=result_ttl_hours)
        self._top_n = top_n
        self._clock = clock
        self._closeables = closeables

    @classmethod
    def from_settings(cls, settings: Settings, *, redis: Redis | None = None) -> AnalysisPipeline:
        solana = settings.solana
        helius = HeliusClient(
            solana.helius_api_key.get_secret_value() if solana.helius_api_key else None,
            api_base=solana.helius_api_base,
            rpc_url=solana.rpc_url,
            timeout_seconds=solana.request_timeout_seconds,
        )
        extractor = SwapExtractor(
            helius,
            history_source=solana.resolved_history_source,
            page_limit=solana.page_limit,
            max_pages=solana.max_pages,
            max_attempts=solana.max_retries,
            retry_base_delay=solana.retry_base_delay_seconds,
        )
        market = settings.market_data
        dexscreener = DexScreenerClient(base_url=market.dexscreener_base_url)
        resolver = MarketDataResolver(
            dexscreener,
            redis=redis,
            batch_size=market.batch_size,
            price_freshness_seconds=market.price_freshness_seconds,
            metadata_ttl_seconds=market.metadata_ttl_seconds,
            batch_delay_seconds=market.batch_delay_seconds,
        )
        engine = RegretEngine(materiality_threshold=settings.analysis.materiality_threshold_usd)
        return cls(
            extractor,
            resolver,
            engine,
            result_ttl_hours=settings.scheduler.result_ttl_hours,
            top_n=settings.analysis.top_n_tokens,
            closeables=(helius, dexscreener),
        )

    async def close(self) -> None:
        for closeable in self._closeables:
            await closeable.close()

    async def analyze(
        self,
        address: str,
        lookback_days: int,
        *,
        progress: ProgressBus | None = None,
    ) -> WalletAnalysisResult:
        """Analyse one wallet.

        Raises:
            InvalidAddressError: If the address is malformed.
            ExtractionFailedError: If history cannot be fetched.
            MarketDataUnavailableError: If SOL-denominated swaps cannot be valued.
        """
        address = validate_address(address)
        progress = progress or ProgressBus()
        now = self._clock()

        await progress.emit(STAGE_FETCHING, "Fetching transaction history...", 5)
        swaps = await self._extractor.extract_swaps(
            address, lookback_days, progress=progress, now_s=now.timestamp()
        )

        mints = list(dict.fromkeys(s.token_mint for s in swaps))
        needs_sol = any(s.counter_asset is CounterAsset.SOL for s in swaps)
        await progress.emit(
            STAGE_PRICING, f"Found {len(swaps)} swaps, fetching prices for {len(mints)} tokens...", 45
        )
        quotes = await self._resolver.resolve(mints + [WSOL_MINT] if needs_sol else mints)
        sol_quote = quotes.get(WSOL_MINT)
        sol_price = sol_quote.price_usd if sol_quote is not None and sol_quote.has_price else None
        usd_swaps = value_swaps_in_usd(swaps, sol_price_usd=sol_price)

        await progress.emit(STAGE_MATCHING, "Matching sells against buys...", 70)
        positions = build_positions(usd_swaps, _labels_from_quotes(quotes))
        events = self._engine.compute(positions, quotes)

        await progress.emit(STAGE_AGGREGATING, f"Summarising {len(events)} regret events...", 90)
        result = aggregate(
            address,
            events,
            distinct_tokens_traded=len(positions),
            date_range=DateRange(start=now - timedelta(days=lookback_days), end=now),
            computed_at=now,
            expires_at=now + self._result_ttl,
            top_n=self._top_n,
        )
        await progress.emit(STAGE_DONE, "Analysis complete", 100)
        logger.info(
            "Analysed %s: %d swaps, %d positions, %d events, total regret $%.2f",
            address,
            len(swaps),
            len(positions),
            result.total_events,
            result.total_regret,
        )
        return result
