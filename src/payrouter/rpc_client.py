"""Async JSON-RPC client for reading ERC-20 token balances."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Sequence

import httpx

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class RpcError(Exception):
    """Base exception for JSON-RPC calls."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RpcConnectionError(RpcError):
    """Network/DNS failure (retryable)."""


class RpcTimeoutError(RpcError):
    """Request timeout (retryable)."""


class RpcResponseError(RpcError):
    """HTTP error status, JSON-RPC error object, or malformed result."""


class BalanceReadError(RpcError):
    """Every provider failed after all retries."""


# ---------------------------------------------------------------------------
# ERC-20 call encoding
# ---------------------------------------------------------------------------

_BALANCE_OF_SELECTOR = "0x70a08231"


def encode_balance_of(address: str) -> str:
    """ABI-encode ``balanceOf(address)`` call data."""
    body = address.lower().removeprefix("0x")
    if len(body) != 40:
        raise ValueError(f"Invalid address: {address!r}")
    return _BALANCE_OF_SELECTOR + body.rjust(64, "0")


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class RpcBalanceReader:
    """Reads a token balance with multi-provider fallback and retry.

    Providers are tried in order; each gets ``1 + max_retries`` attempts
    with a linear back-off. Successful reads are cached per address for
    ``cache_ttl_secs``.
    """

    def __init__(
        self,
        rpc_urls: Sequence[str],
        token_address: str,
        *,
        max_retries: int = 2,
        timeout_secs: float = 10.0,
        retry_delay_secs: float = 1.0,
        cache_ttl_secs: float = 300.0,
    ) -> None:
        if not rpc_urls:
            raise ValueError("At least one RPC URL is required.")
        self._rpc_urls = list(rpc_urls)
        self._token_address = token_address
        self._max_retries = max_retries
        self._retry_delay = retry_delay_secs
        self._cache_ttl = cache_ttl_secs
        self._cache: dict[str, tuple[int, float]] = {}
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_secs))

    async def _eth_call(self, rpc_url: str, data: str) -> int:
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_call",
            "params": [{"to": self._token_address, "data": data}, "latest"],
        }
        try:
            response = await self._client.post(rpc_url, json=payload)
        except httpx.ConnectError as exc:
            raise RpcConnectionError(str(exc)) from exc
        except httpx.TimeoutException as exc:
            raise RpcTimeoutError(str(exc)) from exc
        except httpx.HTTPError as exc:
            raise RpcConnectionError(str(exc)) from exc

        if response.status_code >= 400:
            raise RpcResponseError(response.text, status_code=response.status_code)

        try:
            body = response.json()
        except ValueError as exc:
            raise RpcResponseError(f"Non-JSON response: {exc}") from exc

        if not isinstance(body, dict):
            raise RpcResponseError(f"Unexpected response body: {body!r}")
        if body.get("error"):
            raise RpcResponseError(f"RPC error: {body['error']}")
        result = body.get("result")
        if not isinstance(result, str) or not result.startswith("0x"):
            raise RpcResponseError(f"Malformed eth_call result: {result!r}")
        return int(result, 16) if result != "0x" else 0

    async def get_balance(self, address: str) -> int:
        """Return the token balance of ``address``. Raises BalanceReadError."""
        key = address.lower()
        cached = self._cache.get(key)
        if cached and cached[1] > time.monotonic():
            return cached[0]

        data = encode_balance_of(address)
        last_error: Exception | None = None
        for rpc_url in self._rpc_urls:
            for attempt in range(self._max_retries + 1):
                try:
                    balance = await self._eth_call(rpc_url, data)
                except RpcError as exc:
                    last_error = exc
                    logger.warning(
                        "Balance read failed (%s, attempt %d/%d): %s",
                        rpc_url, attempt + 1, self._max_retries + 1, exc,
                    )
                    if attempt < self._max_retries:
                        await asyncio.sleep(self._retry_delay * (attempt + 1))
                    continue
                self._cache[key] = (balance, time.monotonic() + self._cache_ttl)
                return balance

        raise BalanceReadError(f"All RPC providers failed: {last_error}")

    def clear_cache(self) -> None:
        self._cache.clear()

    # -- lifecycle ------------------------------------------------------------

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> RpcBalanceReader:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

