"""Solana ledger history client (Helius enhanced API + JSON-RPC).

Every upstream call returns a typed `FetchResult`:

- `Ok(value)` on success
- `RateLimited(retry_after_seconds)` on HTTP 429 / JSON-RPC rate-limit errors
- `Failed(cause, retryable)` for anything else

`call_with_backoff` drives the retry loop over such a call; it never raises
for upstream conditions, so callers decide what an exhausted budget means.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

import aiohttp

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_API_BASE = "https://api.helius.xyz"
DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_RETRY_BASE_DELAY = 1.2

RETRYABLE_STATUS_CODES = (500, 502, 503, 504)
RATE_LIMIT_MARKERS = ("too many requests", "rate limit")


class HeliusClientError(Exception):
    """Raised for non-retryable upstream responses."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class HeliusRateLimitError(HeliusClientError):
    """Raised when the upstream keeps rate limiting after all retries."""


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class RateLimited:
    retry_after_seconds: float | None = None


@dataclass(frozen=True)
class Failed:
    cause: Exception
    retryable: bool = False


FetchResult = Union[Ok[T], RateLimited, Failed]

OnRateLimited = Callable[[float, int], Awaitable[None]]


def _looks_rate_limited(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in RATE_LIMIT_MARKERS)


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


async def call_with_backoff(
    attempt: Callable[[], Awaitable[FetchResult[T]]],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_RETRY_BASE_DELAY,
    on_rate_limited: OnRateLimited | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> FetchResult[T]:
    """Run `attempt` until it succeeds or the attempt budget is spent.

    Rate limits and retryable failures back off exponentially
    (``base_delay * 2**n``, or the server's Retry-After when longer).
    Non-retryable failures return immediately.

    Returns:
        The first `Ok`, the first non-retryable `Failed`, or the last
        `RateLimited`/`Failed` once attempts are exhausted.
    """
    last: FetchResult[T] = Failed(HeliusClientError("no attempt made"))
    for n in range(max_attempts):
        last = await attempt()
        if isinstance(last, Ok):
            return last
        if isinstance(last, Failed) and not last.retryable:
            return last
        if n == max_attempts - 1:
            break

        delay = base_delay * (2**n)
        if isinstance(last, RateLimited):
            if last.retry_after_seconds is not None:
                delay = max(delay, last.retry_after_seconds)
            logger.warning(
                "Upstream rate limited (attempt %d/%d); waiting %.1fs",
                n + 1,
                max_attempts,
                delay,
            )
            if on_rate_limited is not None:
                await on_rate_limited(delay, n + 1)
        else:
            logger.warning(
                "Upstream call failed (attempt %d/%d): %s. Retrying in %.1f seconds...",
                n + 1,
                max_attempts,
                last.cause,
                delay,
            )
        await sleep(delay)
    return last


class HeliusClient:
    """Async client for wallet transaction history.

    Example:
        ```python
        async with HeliusClient(api_key="...") as client:
            result = await client.fetch_enhanced_page("Wallet...", before=None, limit=100)
        ```
    """

    def __init__(
        self,
        api_key: str | None,
        *,
        api_base: str = DEFAULT_API_BASE,
        rpc_url: str = DEFAULT_RPC_URL,
        session: aiohttp.ClientSession | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._api_key = api_key
        self._api_base = api_base.rstrip("/")
        self._rpc_url = rpc_url
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._rpc_ids = itertools.count(1)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> HeliusClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _get_json(self, url: str, params: dict[str, Any]) -> FetchResult[Any]:
        try:
            async with self._get_session().get(url, params=params) as response:
                if response.status == 429:
                    return RateLimited(_parse_retry_after(response.headers.get("Retry-After")))
                if response.status >= 400:
                    body = await response.text()
                    if _looks_rate_limited(body):
                        return RateLimited()
                    return Failed(
                        HeliusClientError(f"HTTP {response.status}: {body[:200]}", status=response.status),
                        retryable=response.status in RETRYABLE_STATUS_CODES,
                    )
                return Ok(await response.json(content_type=None))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return Failed(e, retryable=True)

    async def _rpc(self, method: str, params: list[Any]) -> FetchResult[Any]:
        payload = {"jsonrpc": "2.0", "id": next(self._rpc_ids), "method": method, "params": params}
        try:
            async with self._get_session().post(self._rpc_url, json=payload) as response:
                if response.status == 429:
                    return RateLimited(_parse_retry_after(response.headers.get("Retry-After")))
                if response.status >= 400:
                    body = await response.text()
                    return Failed(
                        HeliusClientError(f"HTTP {response.status}: {body[:200]}", status=response.status),
                        retryable=response.status in RETRYABLE_STATUS_CODES,
                    )
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return Failed(e, retryable=True)

        error = data.get("error") if isinstance(data, dict) else None
        if error:
            message = str(error.get("message") if isinstance(error, dict) else error)
            code = error.get("code") if isinstance(error, dict) else None
            if code in (429, -32429) or _looks_rate_limited(message):
                return RateLimited()
            return Failed(HeliusClientError(f"RPC {method} error: {message}"), retryable=False)
        return Ok(data.get("result") if isinstance(data, dict) else None)

    async def fetch_enhanced_page(
        self, address: str, *, before: str | None, limit: int
    ) -> FetchResult[list[dict[str, Any]]]:
        """One page of enhanced transactions, newest first."""
        params: dict[str, Any] = {"api-key": self._api_key or "", "limit": limit}
        if before:
            params["before"] = before
        result = await self._get_json(f"{self._api_base}/v0/addresses/{address}/transactions", params)
        if isinstance(result, Ok) and not isinstance(result.value, list):
            return Failed(HeliusClientError("Unexpected enhanced API response shape"))
        return result

    async def fetch_signatures(
        self, address: str, *, before: str | None, limit: int
    ) -> FetchResult[list[dict[str, Any]]]:
        """One page of ``getSignaturesForAddress`` results, newest first."""
        options: dict[str, Any] = {"limit": limit}
        if before:
            options["before"] = before
        result = await self._rpc("getSignaturesForAddress", [address, options])
        if isinstance(result, Ok) and not isinstance(result.value, list):
            return Failed(HeliusClientError("Unexpected getSignaturesForAddress response shape"))
        return result

    async def fetch_transaction(self, signature: str) -> FetchResult[dict[str, Any] | None]:
        """``getTransaction`` with jsonParsed encoding (None when unknown)."""
        return await self._rpc(
            "getTransaction",
            [signature, {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0}],
        )
