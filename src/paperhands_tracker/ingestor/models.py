"""Data models for the ingestor module.

Upstream payloads are decoded at the boundary into one of three shapes:
`EnhancedTransaction` (Helius enhanced API), `RpcTransaction` (JSON-RPC
``getTransaction`` with ``jsonParsed`` encoding) or
`UnrecognizedTransaction`. Only the first two can produce a `Swap`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

LAMPORTS_PER_SOL = 1_000_000_000

WSOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDT_MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"

STABLE_MINTS = {
    USDC_MINT: "USDC",
    USDT_MINT: "USDT",
}

# Mints that are never the traded token of a swap.
COUNTER_ASSET_MINTS = frozenset({WSOL_MINT, USDC_MINT, USDT_MINT})

KNOWN_DEX_PROGRAMS = {
    "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4": "Jupiter v6",
    "JUP4Fb2cqiRUcaTHdrPC8h2gNsA2ETXiPDD33WcGuJB": "Jupiter v4",
    "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8": "Raydium AMM v4",
    "CAMMCzo5YL8w4VFF8KVHrK22GGUsp5VTaW7grrKgrWqK": "Raydium CLMM",
    "CPMMoo8L3F4NbTegBCKVNunggL7H1ZpdTHKxQB5qKP1C": "Raydium CPMM",
    "whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc": "Orca Whirlpool",
    "PhoeNiXZ8ByJGLkxNfZRnkUfjvmuYqLR89jjFHGqdXY": "Phoenix",
    "LBUZKhRxPF3XUpBCjp4YzTKgLccjZhTSDM9YuVaPwxo": "Meteora DLMM",
    "6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P": "Pump.fun",
    "pAMMBay6oceH9fJKBRHGP5D4bD4sWpmSwMn52FMfXEA": "PumpSwap",
}


class SwapDirection(str, Enum):
    """Direction of a swap from the analysed wallet's point of view."""

    BUY = "buy"
    SELL = "sell"


class CounterAsset(str, Enum):
    """Asset paid or received in exchange for the traded token."""

    SOL = "SOL"
    USDC = "USDC"
    USDT = "USDT"


@dataclass(frozen=True)
class Swap:
    """One buy or sell of a token against a counter-asset.

    `counter_asset_amount` is in the counter asset's own units until the
    pipeline converts it to USD (see `Swap.valued_in_usd`).
    """

    signature: str
    timestamp_ms: int
    token_mint: str
    direction: SwapDirection
    counter_asset: CounterAsset
    counter_asset_amount: float
    token_amount: float
    source: str = "enhanced"

    @property
    def price_per_token(self) -> float:
        if self.token_amount <= 0:
            return 0.0
        return self.counter_asset_amount / self.token_amount

    def valued_in_usd(self, counter_asset_usd_price: float) -> Swap:
        """Return a copy whose counter amount is expressed in USD."""
        return Swap(
            signature=self.signature,
            timestamp_ms=self.timestamp_ms,
            token_mint=self.token_mint,
            direction=self.direction,
            counter_asset=self.counter_asset,
            counter_asset_amount=self.counter_asset_amount * counter_asset_usd_price,
            token_amount=self.token_amount,
            source=self.source,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "timestamp_ms": self.timestamp_ms,
            "token_mint": self.token_mint,
            "direction": self.direction.value,
            "counter_asset": self.counter_asset.value,
            "counter_asset_amount": self.counter_asset_amount,
            "token_amount": self.token_amount,
            "price_per_token": self.price_per_token,
            "source": self.source,
        }


@dataclass(frozen=True)
class TokenTransfer:
    from_user: str
    to_user: str
    mint: str
    amount: float
    from_token_account: str = ""
    to_token_account: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenTransfer:
        return cls(
            from_user=str(data.get("fromUserAccount") or ""),
            to_user=str(data.get("toUserAccount") or ""),
            mint=str(data["mint"]),
            amount=float(data.get("tokenAmount") or 0),
            from_token_account=str(data.get("fromTokenAccount") or ""),
            to_token_account=str(data.get("toTokenAccount") or ""),
        )


@dataclass(frozen=True)
class NativeTransfer:
    from_user: str
    to_user: str
    lamports: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NativeTransfer:
        return cls(
            from_user=str(data.get("fromUserAccount") or ""),
            to_user=str(data.get("toUserAccount") or ""),
            lamports=int(data.get("amount") or 0),
        )


def _program_ids_from_instructions(instructions: list[dict[str, Any]]) -> frozenset[str]:
    ids: set[str] = set()
    for ix in instructions or []:
        program_id = ix.get("programId")
        if program_id:
            ids.add(str(program_id))
        for inner in ix.get("innerInstructions") or []:
            inner_id = inner.get("programId")
            if inner_id:
                ids.add(str(inner_id))
    return frozenset(ids)


@dataclass(frozen=True)
class EnhancedTransaction:
    """Helius enhanced-API transaction."""

    signature: str
    timestamp: int  # unix seconds
    fee_payer: str
    failed: bool
    program_ids: frozenset[str]
    token_transfers: tuple[TokenTransfer, ...]
    native_transfers: tuple[NativeTransfer, ...]
    tx_type: str = ""
    tx_source: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EnhancedTransaction:
        """Create an EnhancedTransaction from a Helius response item."""
        return cls(
            signature=str(data["signature"]),
            timestamp=int(data["timestamp"]),
            fee_payer=str(data.get("feePayer") or ""),
            failed=data.get("transactionError") is not None,
            program_ids=_program_ids_from_instructions(data.get("instructions") or []),
            token_transfers=tuple(TokenTransfer.from_dict(t) for t in data.get("tokenTransfers") or []),
            native_transfers=tuple(
                NativeTransfer.from_dict(t) for t in data.get("nativeTransfers") or []
            ),
            tx_type=str(data.get("type") or ""),
            tx_source=str(data.get("source") or ""),
        )


@dataclass(frozen=True)
class TokenBalance:
    account_index: int
    owner: str
    mint: str
    amount: float

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenBalance:
        ui = data.get("uiTokenAmount") or {}
        raw_amount = ui.get("uiAmountString")
        if raw_amount is None:
            raw_amount = ui.get("uiAmount")
        return cls(
            account_index=int(data.get("accountIndex", -1)),
            owner=str(data.get("owner") or ""),
            mint=str(data["mint"]),
            amount=float(raw_amount or 0),
        )


@dataclass(frozen=True)
class RpcTransaction:
    """JSON-RPC ``getTransaction`` result (``jsonParsed`` encoding)."""

    signature: str
    block_time: int  # unix seconds
    failed: bool
    fee_lamports: int
    program_ids: frozenset[str]
    account_keys: tuple[str, ...]
    pre_lamports: tuple[int, ...]
    post_lamports: tuple[int, ...]
    pre_token_balances: tuple[TokenBalance, ...]
    post_token_balances: tuple[TokenBalance, ...]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RpcTransaction:
        """Create an RpcTransaction from a ``getTransaction`` result."""
        meta = data.get("meta") or {}
        transaction = data["transaction"]
        message = transaction.get("message") or {}

        account_keys = tuple(
            str(k["pubkey"]) if isinstance(k, dict) else str(k) for k in message.get("accountKeys") or []
        )

        program_ids = set(_program_ids_from_instructions(message.get("instructions") or []))
        for group in meta.get("innerInstructions") or []:
            for ix in group.get("instructions") or []:
                if ix.get("programId"):
                    program_ids.add(str(ix["programId"]))

        return cls(
            signature=str(transaction["signatures"][0]),
            block_time=int(data["blockTime"]),
            failed=meta.get("err") is not None,
            fee_lamports=int(meta.get("fee") or 0),
            program_ids=frozenset(program_ids),
            account_keys=account_keys,
            pre_lamports=tuple(int(v) for v in meta.get("preBalances") or []),
            post_lamports=tuple(int(v) for v in meta.get("postBalances") or []),
            pre_token_balances=tuple(
                TokenBalance.from_dict(b) for b in meta.get("preTokenBalances") or []
            ),
            post_token_balances=tuple(
                TokenBalance.from_dict(b) for b in meta.get("postTokenBalances") or []
            ),
        )


@dataclass(frozen=True)
class UnrecognizedTransaction:
    """A payload that matched no known shape (or failed to decode)."""

    signature: str | None
    reason: str


RawTransaction = Union[EnhancedTransaction, RpcTransaction, UnrecognizedTransaction]


def decode_transaction(data: Any) -> RawTransaction:
    """Decode an upstream payload into one of the known transaction shapes."""
    if not isinstance(data, dict):
        return UnrecognizedTransaction(signature=None, reason=f"unexpected payload type {type(data).__name__}")

    signature = data.get("signature")
    try:
        if "meta" in data and "transaction" in data:
            return RpcTransaction.from_dict(data)
        if "timestamp" in data and ("tokenTransfers" in data or "nativeTransfers" in data):
            return EnhancedTransaction.from_dict(data)
    except (KeyError, IndexError, TypeError, ValueError) as e:
        return UnrecognizedTransaction(signature=signature, reason=f"malformed payload: {e}")
    return UnrecognizedTransaction(signature=signature, reason="unknown payload shape")


def transaction_timestamp(tx: RawTransaction) -> int | None:
    """Unix seconds for decoded transactions, None when unknown."""
    if isinstance(tx, EnhancedTransaction):
        return tx.timestamp
    if isinstance(tx, RpcTransaction):
        return tx.block_time
    return None
