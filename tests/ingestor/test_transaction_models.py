"""Tests for ingestor data models."""

import pytest

from paperhands_tracker.ingestor.models import (
    CounterAsset,
    EnhancedTransaction,
    RpcTransaction,
    Swap,
    SwapDirection,
    UnrecognizedTransaction,
    decode_transaction,
    transaction_timestamp,
)

JUPITER = "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4"


@pytest.fixture
def enhanced_payload(wallet_address: str, token_mint: str) -> dict:
    return {
        "signature": "sigEnhanced",
        "timestamp": 1_700_000_000,
        "feePayer": wallet_address,
        "transactionError": None,
        "type": "SWAP",
        "source": "JUPITER",
        "instructions": [{"programId": JUPITER, "innerInstructions": [{"programId": "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"}]}],
        "tokenTransfers": [
            {"fromUserAccount": "pool", "toUserAccount": wallet_address, "mint": token_mint, "tokenAmount": 1500.5}
        ],
        "nativeTransfers": [{"fromUserAccount": wallet_address, "toUserAccount": "pool", "amount": 2_000_000_000}],
    }


@pytest.fixture
def rpc_payload(wallet_address: str, token_mint: str) -> dict:
    return {
        "blockTime": 1_700_000_100,
        "meta": {
            "err": None,
            "fee": 5000,
            "preBalances": [10_000_000_000, 0],
            "postBalances": [8_000_000_000, 0],
            "preTokenBalances": [],
            "postTokenBalances": [
                {
                    "accountIndex": 1,
                    "owner": wallet_address,
                    "mint": token_mint,
                    "uiTokenAmount": {"uiAmountString": "42.5", "uiAmount": 42.5},
                }
            ],
            "innerInstructions": [{"index": 0, "instructions": [{"programId": "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"}]}],
        },
        "transaction": {
            "signatures": ["sigRpc"],
            "message": {
                "accountKeys": [{"pubkey": wallet_address}, {"pubkey": "tokenAccount"}],
                "instructions": [{"programId": JUPITER}],
            },
        },
    }


class TestDecodeTransaction:
    """Tests for decode_transaction."""

    def test_decodes_enhanced_shape(self, enhanced_payload: dict, wallet_address: str) -> None:
        tx = decode_transaction(enhanced_payload)

        assert isinstance(tx, EnhancedTransaction)
        assert tx.signature == "sigEnhanced"
        assert tx.fee_payer == wallet_address
        assert tx.failed is False
        assert JUPITER in tx.program_ids
        assert "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA" in tx.program_ids
        assert tx.token_transfers[0].amount == 1500.5
        assert tx.native_transfers[0].lamports == 2_000_000_000
        assert tx.tx_source == "JUPITER"
        assert transaction_timestamp(tx) == 1_700_000_000

    def test_decodes_rpc_shape(self, rpc_payload: dict, wallet_address: str) -> None:
        tx = decode_transaction(rpc_payload)

        assert isinstance(tx, RpcTransaction)
        assert tx.signature == "sigRpc"
        assert tx.block_time == 1_700_000_100
        assert tx.fee_lamports == 5000
        assert tx.account_keys == (wallet_address, "tokenAccount")
        assert tx.program_ids == frozenset({JUPITER, "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"})
        assert tx.post_token_balances[0].amount == 42.5
        assert transaction_timestamp(tx) == 1_700_000_100

    def test_failed_enhanced_transaction(self, enhanced_payload: dict) -> None:
        enhanced_payload["transactionError"] = {"InstructionError": [0, "Custom"]}

        tx = decode_transaction(enhanced_payload)

        assert isinstance(tx, EnhancedTransaction)
        assert tx.failed is True

    def test_unknown_shape(self) -> None:
        tx = decode_transaction({"signature": "abc", "foo": "bar"})

        assert isinstance(tx, UnrecognizedTransaction)
        assert tx.signature == "abc"
        assert transaction_timestamp(tx) is None

    def test_malformed_payload_does_not_raise(self, rpc_payload: dict) -> None:
        rpc_payload["transaction"]["signatures"] = []

        tx = decode_transaction(rpc_payload)

        assert isinstance(tx, UnrecognizedTransaction)
        assert "malformed" in tx.reason

    def test_non_dict_payload(self) -> None:
        tx = decode_transaction(None)

        assert isinstance(tx, UnrecognizedTransaction)
        assert tx.signature is None


class TestSwap:
    """Tests for the Swap model."""

    def test_price_per_token(self, token_mint: str) -> None:
        swap = Swap(
            signature="s",
            timestamp_ms=1,
            token_mint=token_mint,
            direction=SwapDirection.BUY,
            counter_asset=CounterAsset.SOL,
            counter_asset_amount=2.0,
            token_amount=1000.0,
        )

        assert swap.price_per_token == pytest.approx(0.002)

    def test_valued_in_usd(self, token_mint: str) -> None:
        swap = Swap(
            signature="s",
            timestamp_ms=1,
            token_mint=token_mint,
            direction=SwapDirection.SELL,
            counter_asset=CounterAsset.SOL,
            counter_asset_amount=2.0,
            token_amount=1000.0,
        )

        valued = swap.valued_in_usd(150.0)

        assert valued.counter_asset_amount == pytest.approx(300.0)
        assert valued.price_per_token == pytest.approx(0.3)
        assert swap.counter_asset_amount == 2.0

    def test_frozen(self, token_mint: str) -> None:
        swap = Swap(
            signature="s",
            timestamp_ms=1,
            token_mint=token_mint,
            direction=SwapDirection.BUY,
            counter_asset=CounterAsset.USDC,
            counter_asset_amount=1.0,
            token_amount=1.0,
        )
        with pytest.raises(AttributeError):
            swap.token_amount = 2.0  # type: ignore[misc]
