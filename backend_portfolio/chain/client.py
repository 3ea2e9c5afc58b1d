"""
Chain middleware / node HTTP client.

- get_top(): latest key block from /v3/key-blocks?limit=1
- get_key_block(height): /v3/key-blocks/{height}; 404 → BlockNotFoundError
- list_recent_key_blocks(n): newest first, for median-interval estimation
- get_account_balance(address): live balance from the node, aettos → AE

Requests retry with exponential backoff on 429 and transport errors; any
other failure is raised as ChainDataError so callers never see a silently
wrong answer.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any

import httpx

from backend_portfolio.chain.models import BlockRef
from backend_portfolio.core.exceptions import BlockNotFoundError, ChainDataError
from backend_portfolio.portfolio_logging import get_logger

logger = get_logger(__name__)

REQUEST_TIMEOUT = 15.0
MAX_RETRIES = 3
RETRY_BACKOFF = 0.5
AETTOS_PER_AE = Decimal(10) ** 18


class MiddlewareClient:
    """Async client for the chain middleware (blocks) and node (balances)."""

    def __init__(
        self,
        middleware_url: str,
        node_url: str | None = None,
        *,
        timeout: float = REQUEST_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.middleware_url = middleware_url.rstrip("/")
        self.node_url = (node_url or "").rstrip("/")
        self._timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    @property
    def cache_key(self) -> str:
        """Identity used by the process-wide block caches."""
        return self.middleware_url

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "MiddlewareClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def _request_with_retry(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        last_err: Exception | None = None
        for attempt in range(MAX_RETRIES):
            try:
                r = await self._client.request(method, url, timeout=self._timeout, **kwargs)
                if r.status_code == 429:
                    await asyncio.sleep(RETRY_BACKOFF * (2 ** attempt))
                    continue
                return r
            except httpx.TransportError as e:
                last_err = e
                await asyncio.sleep(RETRY_BACKOFF * (2 ** attempt))
        raise ChainDataError(f"{method} {url} failed after {MAX_RETRIES} attempts: {last_err or 'rate limited'}")

    async def _get_json(self, url: str, **kwargs: Any) -> Any:
        r = await self._request_with_retry("GET", url, **kwargs)
        if r.status_code >= 400:
            raise ChainDataError(f"GET {url}: HTTP {r.status_code}")
        try:
            return r.json()
        except ValueError as e:
            raise ChainDataError(f"GET {url}: invalid JSON") from e

    async def get_top(self) -> BlockRef:
        data = await self._get_json(f"{self.middleware_url}/v3/key-blocks", params={"limit": 1})
        items = (data or {}).get("data") or []
        if not items:
            raise ChainDataError("Failed to fetch top key block from middleware")
        return BlockRef.from_mdw_item(items[0])

    async def get_key_block(self, height: int) -> BlockRef:
        url = f"{self.middleware_url}/v3/key-blocks/{height}"
        r = await self._request_with_retry("GET", url)
        if r.status_code == 404:
            raise BlockNotFoundError(height, f"{r.status_code} {r.reason_phrase}")
        if r.status_code >= 400:
            logger.error("chain_key_block_failed", height=height, status=r.status_code)
            raise ChainDataError(f"GET {url}: HTTP {r.status_code}")
        try:
            return BlockRef.from_mdw_item(r.json())
        except (ValueError, KeyError, TypeError) as e:
            raise ChainDataError(f"Malformed key block at height {height}") from e

    async def list_recent_key_blocks(self, n: int) -> list[BlockRef]:
        data = await self._get_json(f"{self.middleware_url}/v3/key-blocks", params={"limit": n})
        if not data or "data" not in data:
            raise ChainDataError("Failed to fetch recent key blocks from middleware")
        return [BlockRef.from_mdw_item(item) for item in data["data"]]

    async def get_account_balance(self, address: str) -> float:
        """Live balance in AE. Unknown accounts (404) have a zero balance."""
        if not self.node_url:
            raise ChainDataError("NODE_URL is not configured; cannot read live balances")
        url = f"{self.node_url}/v3/accounts/{address}"
        r = await self._request_with_retry("GET", url)
        if r.status_code == 404:
            return 0.0
        if r.status_code >= 400:
            raise ChainDataError(f"GET {url}: HTTP {r.status_code}")
        try:
            balance = Decimal(str(r.json()["balance"]))
        except (ValueError, KeyError, ArithmeticError) as e:
            raise ChainDataError(f"Malformed balance for {address}") from e
        return float(balance / AETTOS_PER_AE)
