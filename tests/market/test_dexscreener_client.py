"""Tests for the DexScreener client."""

import pytest
from aiohttp import test_utils, web

from paperhands_tracker.market.dexscreener_client import DexScreenerClient, DexScreenerError

MINT_A = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"
MINT_B = "EKpQGSJtjMFqKZ9KQanSqYXRcF8fBopzLHYxdM65zcjm"


def pair_payload(mint: str, *, chain: str = "solana", price: str = "1.25") -> dict:
    return {
        "chainId": chain,
        "baseToken": {"address": mint, "symbol": "TKN", "name": "Token"},
        "priceUsd": price,
        "liquidity": {"usd": 12345.6},
        "fdv": 9_000_000,
    }


class TestDexScreenerClient:
    """Tests for DexScreenerClient."""

    async def test_get_token_pairs_filters_chain_and_mint(self) -> None:
        seen: dict = {}

        async def handler(request: web.Request) -> web.Response:
            seen["mints"] = request.match_info["mints"]
            return web.json_response(
                {
                    "pairs": [
                        pair_payload(MINT_A),
                        pair_payload(MINT_A, chain="ethereum"),
                        pair_payload("SomeOtherMint1111111111111111111111111111111"),
                    ]
                }
            )

        app = web.Application()
        app.router.add_get("/latest/dex/tokens/{mints}", handler)
        async with test_utils.TestServer(app) as server:
            client = DexScreenerClient(base_url=str(server.make_url("")))
            try:
                pairs = await client.get_token_pairs([MINT_A, MINT_B])
            finally:
                await client.close()

        assert seen["mints"] == f"{MINT_A},{MINT_B}"
        assert len(pairs) == 1
        assert pairs[0].base_mint == MINT_A
        assert pairs[0].price_usd == 1.25
        assert pairs[0].liquidity_usd == 12345.6
        assert pairs[0].market_cap == 9_000_000

    async def test_retries_transient_errors(self) -> None:
        calls = {"n": 0}

        async def handler(request: web.Request) -> web.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                return web.Response(status=503)
            return web.json_response({"pairs": [pair_payload(MINT_A)]})

        app = web.Application()
        app.router.add_get("/latest/dex/tokens/{mints}", handler)
        async with test_utils.TestServer(app) as server:
            client = DexScreenerClient(base_url=str(server.make_url("")), retry_delay_seconds=0.01)
            try:
                pairs = await client.get_token_pairs([MINT_A])
            finally:
                await client.close()

        assert calls["n"] == 2
        assert len(pairs) == 1

    async def test_client_error_is_not_retried(self) -> None:
        calls = {"n": 0}

        async def handler(request: web.Request) -> web.Response:
            calls["n"] += 1
            return web.Response(status=404)

        app = web.Application()
        app.router.add_get("/latest/dex/tokens/{mints}", handler)
        async with test_utils.TestServer(app) as server:
            client = DexScreenerClient(base_url=str(server.make_url("")), retry_delay_seconds=0.01)
            try:
                with pytest.raises(DexScreenerError):
                    await client.get_token_pairs([MINT_A])
            finally:
                await client.close()

        assert calls["n"] == 1

    async def test_rejects_oversized_batch(self) -> None:
        client = DexScreenerClient()

        with pytest.raises(ValueError):
            await client.get_token_pairs([f"Mint{i}" for i in range(31)])

    async def test_empty_request_makes_no_call(self) -> None:
        client = DexScreenerClient(base_url="http://127.0.0.1:9")

        assert await client.get_token_pairs([]) == []
