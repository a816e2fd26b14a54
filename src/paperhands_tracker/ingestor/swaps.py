"""Ledger swap extraction.

Turns a wallet's transaction history into chronological `Swap` records.
A transaction yields a swap only when it touches a known exchange program
and moves a non-dust amount of both a token and a counter-asset (SOL,
USDC or USDT) in opposite directions for the wallet. Everything else is
dropped silently.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, TypeVar

from paperhands_tracker.ingestor.helius_client import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETRY_BASE_DELAY,
    Failed,
    FetchResult,
    HeliusClient,
    HeliusRateLimitError,
    Ok,
    RateLimited,
    call_with_backoff,
)
from paperhands_tracker.ingestor.models import (
    COUNTER_ASSET_MINTS,
    KNOWN_DEX_PROGRAMS,
    LAMPORTS_PER_SOL,
    USDC_MINT,
    USDT_MINT,
    WSOL_MINT,
    CounterAsset,
    EnhancedTransaction,
    RawTransaction,
    RpcTransaction,
    Swap,
    SwapDirection,
    UnrecognizedTransaction,
    decode_transaction,
    transaction_timestamp,
)
from paperhands_tracker.progress import STAGE_FETCHING, STAGE_RATE_LIMITED, ProgressBus

logger = logging.getLogger(__name__)

T = TypeVar("T")

TOKEN_DUST = 1e-6
SOL_DUST = 0.001
STABLE_DUST = 0.01

DEFAULT_PAGE_LIMIT = 100
DEFAULT_MAX_PAGES = 50
DEFAULT_RPC_BATCH_SIZE = 10

HISTORY_SOURCE_ENHANCED = "enhanced"
HISTORY_SOURCE_RPC = "rpc"
HISTORY_SOURCE_MERGED = "merged"
HISTORY_SOURCES = (HISTORY_SOURCE_ENHANCED, HISTORY_SOURCE_RPC, HISTORY_SOURCE_MERGED)

# Helius labels for swap sources, used when a payload carries no instructions.
KNOWN_DEX_SOURCES = frozenset(
    {"JUPITER", "RAYDIUM", "ORCA", "PHOENIX", "METEORA", "PUMP_FUN", "PUMP_AMM"}
)


class ExtractionFailedError(Exception):
    """Raised when wallet history cannot be obtained; fatal to the analysis."""


def _touches_known_dex(program_ids: frozenset[str]) -> bool:
    return any(pid in KNOWN_DEX_PROGRAMS for pid in program_ids)


def _select_swap(
    *,
    signature: str,
    timestamp_s: int,
    token_deltas: dict[str, float],
    sol_delta: float,
    source: str,
) -> Swap | None:
    """Pick the traded token and the opposing counter-asset movement."""
    candidates = [
        (mint, delta)
        for mint, delta in token_deltas.items()
        if mint not in COUNTER_ASSET_MINTS and abs(delta) > TOKEN_DUST
    ]
    if not candidates:
        return None
    # Largest absolute movement wins; ties go to the first-seen mint.
    token_mint, token_delta = max(candidates, key=lambda item: abs(item[1]))

    counter: tuple[CounterAsset, float] | None = None
    for mint, asset in ((USDC_MINT, CounterAsset.USDC), (USDT_MINT, CounterAsset.USDT)):
        delta = token_deltas.get(mint, 0.0)
        if abs(delta) >= STABLE_DUST and (delta > 0) != (token_delta > 0):
            counter = (asset, abs(delta))
            break
    if counter is None and abs(sol_delta) >= SOL_DUST and (sol_delta > 0) != (token_delta > 0):
        counter = (CounterAsset.SOL, abs(sol_delta))
    if counter is None:
        return None

    return Swap(
        signature=signature,
        timestamp_ms=timestamp_s * 1000,
        token_mint=token_mint,
        direction=SwapDirection.BUY if token_delta > 0 else SwapDirection.SELL,
        counter_asset=counter[0],
        counter_asset_amount=counter[1],
        token_amount=abs(token_delta),
        source=source,
    )


def swap_from_enhanced(tx: EnhancedTransaction, wallet: str) -> Swap | None:
    if tx.failed:
        return None
    if not _touches_known_dex(tx.program_ids) and tx.tx_source.upper() not in KNOWN_DEX_SOURCES:
        return None

    deltas: dict[str, float] = defaultdict(float)
    own_token_accounts: set[str] = set()
    for transfer in tx.token_transfers:
        if transfer.to_user == wallet:
            deltas[transfer.mint] += transfer.amount
            own_token_accounts.add(transfer.to_token_account)
        if transfer.from_user == wallet:
            deltas[transfer.mint] -= transfer.amount
            own_token_accounts.add(transfer.from_token_account)
    own_token_accounts.discard("")

    # Wrapping and unwrapping move lamports between the wallet and its own
    # WSOL account; only the WSOL leg is the trade.
    wsol_delta = deltas.get(WSOL_MINT, 0.0)
    if abs(wsol_delta) >= SOL_DUST:
        sol_delta = wsol_delta
    else:
        lamports = 0
        for native in tx.native_transfers:
            if native.to_user in own_token_accounts or native.from_user in own_token_accounts:
                continue
            if native.to_user == wallet:
                lamports += native.lamports
            if native.from_user == wallet:
                lamports -= native.lamports
        sol_delta = lamports / LAMPORTS_PER_SOL

    return _select_swap(
        signature=tx.signature,
        timestamp_s=tx.timestamp,
        token_deltas=dict(deltas),
        sol_delta=sol_delta,
        source="enhanced",
    )


def swap_from_rpc(tx: RpcTransaction, wallet: str) -> Swap | None:
    if tx.failed:
        return None
    if not _touches_known_dex(tx.program_ids):
        return None

    deltas: dict[str, float] = defaultdict(float)
    for balance in tx.post_token_balances:
        if balance.owner == wallet:
            deltas[balance.mint] += balance.amount
    for balance in tx.pre_token_balances:
        if balance.owner == wallet:
            deltas[balance.mint] -= balance.amount

    sol_delta = deltas.get(WSOL_MINT, 0.0)
    if wallet in tx.account_keys:
        idx = tx.account_keys.index(wallet)
        if idx < len(tx.pre_lamports) and idx < len(tx.post_lamports):
            lamports = tx.post_lamports[idx] - tx.pre_lamports[idx]
            if idx == 0:
                # Fee payer; network fees are not part of the trade.
                lamports += tx.fee_lamports
            sol_delta += lamports / LAMPORTS_PER_SOL

    return _select_swap(
        signature=tx.signature,
        timestamp_s=tx.block_time,
        token_deltas=dict(deltas),
        sol_delta=sol_delta,
        source="rpc",
    )


def swap_from_transaction(tx: RawTransaction, wallet: str) -> Swap | None:
    """Decode one transaction into zero or one swap for `wallet`."""
    if isinstance(tx, EnhancedTransaction):
        return swap_from_enhanced(tx, wallet)
    if isinstance(tx, RpcTransaction):
        return swap_from_rpc(tx, wallet)
    return None


class SwapExtractor:
    """Fetches and decodes a wallet's swap history."""

    def __init__(
        self,
        client: HeliusClient,
        *,
        history_source: str = HISTORY_SOURCE_ENHANCED,
        page_limit: int = DEFAULT_PAGE_LIMIT,
        max_pages: int = DEFAULT_MAX_PAGES,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        rpc_batch_size: int = DEFAULT_RPC_BATCH_SIZE,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if history_source not in HISTORY_SOURCES:
            raise ValueError(f"Unknown history source: {history_source!r}")
        self._client = client
        self._history_source = history_source
        self._page_limit = page_limit
        self._max_pages = max_pages
        self._max_attempts = max_attempts
        self._retry_base_delay = retry_base_delay
        self._rpc_batch_size = rpc_batch_size
        self._sleep = sleep

    async def _call(
        self,
        attempt: Callable[[], Awaitable[FetchResult[T]]],
        *,
        what: str,
        progress: ProgressBus | None,
    ) -> T:
        async def on_rate_limited(wait_seconds: float, attempt_no: int) -> None:
            if progress is not None:
                await progress.emit(
                    STAGE_RATE_LIMITED,
                    f"Rate limited, waiting {wait_seconds:.0f}s...",
                    5,
                    retry_after_seconds=wait_seconds,
                )

        result = await call_with_backoff(
            attempt,
            max_attempts=self._max_attempts,
            base_delay=self._retry_base_delay,
            on_rate_limited=on_rate_limited,
            sleep=self._sleep,
        )
        if isinstance(result, Ok):
            return result.value
        if isinstance(result, RateLimited):
            cause: Exception = HeliusRateLimitError(f"{what}: still rate limited after {self._max_attempts} attempts")
        elif isinstance(result, Failed):
            cause = result.cause
        else:
            cause = RuntimeError(f"unexpected fetch result {result!r}")
        raise ExtractionFailedError(f"Failed to fetch {what}: {cause}") from cause

    async def iter_transactions(
        self,
        address: str,
        *,
        cutoff_s: int | None,
        before: str | None = None,
        source: str | None = None,
        progress: ProgressBus | None = None,
    ) -> AsyncIterator[RawTransaction]:
        """Yield decoded transactions newest first, down to the cutoff.

        Restartable: pass the last seen signature as `before` to resume.
        `source` picks a single upstream and defaults to the enhanced API
        unless the extractor reads plain JSON-RPC only.
        """
        if source is None:
            source = HISTORY_SOURCE_RPC if self._history_source == HISTORY_SOURCE_RPC else HISTORY_SOURCE_ENHANCED
        if source == HISTORY_SOURCE_ENHANCED:
            stream = self._iter_enhanced(address, cutoff_s=cutoff_s, before=before, progress=progress)
        elif source == HISTORY_SOURCE_RPC:
            stream = self._iter_rpc(address, cutoff_s=cutoff_s, before=before, progress=progress)
        else:
            raise ValueError(f"Cannot stream from history source {source!r}")
        async for tx in stream:
            yield tx

    async def _iter_enhanced(
        self,
        address: str,
        *,
        cutoff_s: int | None,
        before: str | None,
        progress: ProgressBus | None,
    ) -> AsyncIterator[RawTransaction]:
        fetched = 0
        for page_no in range(1, self._max_pages + 1):
            cursor = before
            page: list[dict[str, Any]] = await self._call(
                lambda: self._client.fetch_enhanced_page(address, before=cursor, limit=self._page_limit),
                what=f"transaction history page {page_no}",
                progress=progress,
            )
            fetched += len(page)
            if progress is not None:
                await progress.emit(
                    STAGE_FETCHING,
                    f"Fetched {fetched} transactions ({page_no} pages)",
                    min(40, 5 + page_no * 5),
                )
            for raw in page:
                tx = decode_transaction(raw)
                ts = transaction_timestamp(tx)
                if cutoff_s is not None and ts is not None and ts < cutoff_s:
                    return
                yield tx
            if len(page) < self._page_limit or not page:
                return
            before = str(page[-1].get("signature") or "") or None
            if before is None:
                return
        logger.info("History page budget (%d) reached for %s", self._max_pages, address)

    async def _iter_rpc(
        self,
        address: str,
        *,
        cutoff_s: int | None,
        before: str | None,
        progress: ProgressBus | None,
    ) -> AsyncIterator[RawTransaction]:
        fetched = 0
        for page_no in range(1, self._max_pages + 1):
            cursor = before
            entries: list[dict[str, Any]] = await self._call(
                lambda: self._client.fetch_signatures(address, before=cursor, limit=self._page_limit),
                what=f"signature page {page_no}",
                progress=progress,
            )
            reached_cutoff = False
            signatures: list[str] = []
            for entry in entries:
                block_time = entry.get("blockTime")
                if cutoff_s is not None and block_time is not None and int(block_time) < cutoff_s:
                    reached_cutoff = True
                    break
                if entry.get("err") is not None:
                    continue
                signatures.append(str(entry["signature"]))

            for start in range(0, len(signatures), self._rpc_batch_size):
                batch = signatures[start : start + self._rpc_batch_size]
                results = await asyncio.gather(
                    *(
                        self._call(
                            lambda sig=sig: self._client.fetch_transaction(sig),
                            what=f"transaction {sig}",
                            progress=progress,
                        )
                        for sig in batch
                    ),
                    return_exceptions=True,
                )
                # Every fetch in the batch has settled before an error propagates.
                for outcome in results:
                    if isinstance(outcome, BaseException):
                        raise outcome
                for sig, raw in zip(batch, results):
                    if raw is None:
                        yield UnrecognizedTransaction(signature=sig, reason="transaction not found")
                    else:
                        yield decode_transaction(raw)

            fetched += len(signatures)
            if progress is not None:
                await progress.emit(
                    STAGE_FETCHING,
                    f"Fetched {fetched} transactions ({page_no} pages)",
                    min(40, 5 + page_no * 5),
                )
            if reached_cutoff or len(entries) < self._page_limit or not entries:
                return
            before = str(entries[-1]["signature"])
        logger.info("Signature page budget (%d) reached for %s", self._max_pages, address)

    async def _swaps_from_source(
        self,
        address: str,
        source: str,
        *,
        cutoff_s: int | None,
        progress: ProgressBus | None,
    ) -> list[Swap]:
        """Decode one source's swaps, newest first, first occurrence per signature."""
        swaps: list[Swap] = []
        seen: set[str] = set()
        scanned = 0
        skipped_unrecognized = 0
        async for tx in self.iter_transactions(address, cutoff_s=cutoff_s, source=source, progress=progress):
            scanned += 1
            if isinstance(tx, UnrecognizedTransaction):
                skipped_unrecognized += 1
                logger.debug("Skipping unrecognized transaction %s: %s", tx.signature, tx.reason)
                continue
            swap = swap_from_transaction(tx, address)
            if swap is None or swap.signature in seen:
                continue
            seen.add(swap.signature)
            swaps.append(swap)
        logger.info(
            "Extracted %d swaps from %d %s transactions for %s (%d unrecognized)",
            len(swaps),
            scanned,
            source,
            address,
            skipped_unrecognized,
        )
        return swaps

    async def _merged_swaps(
        self,
        address: str,
        *,
        cutoff_s: int | None,
        progress: ProgressBus | None,
    ) -> list[Swap]:
        """Read both sources concurrently; the enhanced decoding wins per signature."""
        results = await asyncio.gather(
            self._swaps_from_source(address, HISTORY_SOURCE_ENHANCED, cutoff_s=cutoff_s, progress=progress),
            self._swaps_from_source(address, HISTORY_SOURCE_RPC, cutoff_s=cutoff_s, progress=progress),
            return_exceptions=True,
        )
        for outcome in results:
            if isinstance(outcome, BaseException):
                raise outcome
        enhanced, rpc = results

        by_signature = {swap.signature: swap for swap in rpc}
        order = [swap.signature for swap in rpc]
        for swap in enhanced:
            if swap.signature not in by_signature:
                order.append(swap.signature)
            by_signature[swap.signature] = swap
        logger.info(
            "Merged history for %s: %d enhanced, %d rpc, %d combined",
            address,
            len(enhanced),
            len(rpc),
            len(by_signature),
        )
        return [by_signature[sig] for sig in order]

    async def extract_swaps(
        self,
        address: str,
        lookback_days: int | None = None,
        *,
        progress: ProgressBus | None = None,
        now_s: float | None = None,
    ) -> list[Swap]:
        """Return the wallet's swaps in chronological order.

        Raises:
            ExtractionFailedError: If history cannot be fetched after retries.
        """
        cutoff_s: int | None = None
        if lookback_days is not None:
            now_s = time.time() if now_s is None else now_s
            cutoff_s = int(now_s - lookback_days * 86400)

        if self._history_source == HISTORY_SOURCE_MERGED:
            swaps = await self._merged_swaps(address, cutoff_s=cutoff_s, progress=progress)
        else:
            swaps = await self._swaps_from_source(
                address, self._history_source, cutoff_s=cutoff_s, progress=progress
            )

        # Upstream is newest first; reverse, then stable-sort by time.
        swaps.reverse()
        swaps.sort(key=lambda s: s.timestamp_ms)
        return swaps
