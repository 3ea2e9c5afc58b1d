"""
Native coin → display-currency rates from CoinGecko.

- get_historical_rates(currency, days): daily [ms, price] points, cached 1 h
- get_current_rate(currency): spot rate
- rate_at(history, ts_ms): closest point within 24 h, else first/last point
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Protocol

import httpx

from backend_portfolio.core.exceptions import RateSourceError
from backend_portfolio.portfolio_logging import get_logger

logger = get_logger(__name__)

COINGECKO_API_URL = "https://api.coingecko.com/api/v3"
NATIVE_COIN_ID = "aeternity"
HISTORY_DAYS = 365
HISTORY_CACHE_TTL_SEC = 3600
MAX_RATE_GAP_MS = 24 * 60 * 60 * 1000
MAX_RETRIES = 3
RETRY_BACKOFF = 1.0

RatePoint = tuple[int, float]


class RateSource(Protocol):
    async def get_historical_rates(self, currency: str, days: int = HISTORY_DAYS) -> list[RatePoint]: ...

    async def get_current_rate(self, currency: str) -> float | None: ...


def rate_at(history: list[RatePoint], ts_ms: int, *, max_gap_ms: int = MAX_RATE_GAP_MS) -> float | None:
    """
    Rate for a timestamp from a time-sorted series.

    Closest point when within max_gap_ms; before the series → first point,
    after it → last point; otherwise the closest point. None for an empty series.
    """
    if not history:
        return None
    closest_ms, closest = min(history, key=lambda p: abs(p[0] - ts_ms))
    if abs(closest_ms - ts_ms) <= max_gap_ms:
        return closest
    if ts_ms < history[0][0]:
        return history[0][1]
    if ts_ms > history[-1][0]:
        return history[-1][1]
    return closest


class CoinGeckoClient:
    """Async CoinGecko client with retry on 429 and a small in-process cache."""

    def __init__(
        self,
        api_key: str = "",
        *,
        base_url: str = COINGECKO_API_URL,
        coin_id: str = NATIVE_COIN_ID,
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._coin_id = coin_id
        self._headers = {"x-cg-demo-api-key": api_key} if api_key else {}
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._clock = clock
        self._history_cache: dict[tuple[str, int], tuple[float, list[RatePoint]]] = {}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get_json(self, path: str, params: dict[str, Any]) -> Any:
        url = f"{self._base_url}{path}"
        for attempt in range(MAX_RETRIES):
            try:
                r = await self._client.get(url, params=params, headers=self._headers)
            except httpx.TransportError as e:
                logger.warning("coingecko_transport_error", url=url, attempt=attempt, error=str(e))
                await asyncio.sleep(RETRY_BACKOFF * (2 ** attempt))
                continue
            if r.status_code == 429:
                await asyncio.sleep(RETRY_BACKOFF * (2 ** attempt))
                continue
            if r.status_code >= 400:
                raise RateSourceError(f"GET {url}: HTTP {r.status_code}")
            try:
                return r.json()
            except ValueError as e:
                raise RateSourceError(f"GET {url}: invalid JSON") from e
        raise RateSourceError(f"GET {url} failed after {MAX_RETRIES} attempts")

    async def get_historical_rates(self, currency: str, days: int = HISTORY_DAYS) -> list[RatePoint]:
        currency = currency.lower()
        key = (currency, days)
        now = self._clock()
        cached = self._history_cache.get(key)
        if cached is not None and cached[0] > now:
            return cached[1]
        data = await self._get_json(
            f"/coins/{self._coin_id}/market_chart",
            {"vs_currency": currency, "days": days, "interval": "daily"},
        )
        points: list[RatePoint] = []
        for item in (data or {}).get("prices") or []:
            try:
                points.append((int(item[0]), float(item[1])))
            except (TypeError, ValueError, IndexError):
                continue
        points.sort(key=lambda p: p[0])
        self._history_cache[key] = (now + HISTORY_CACHE_TTL_SEC, points)
        logger.debug("coingecko_history_fetched", currency=currency, days=days, points=len(points))
        return points

    async def get_current_rate(self, currency: str) -> float | None:
        currency = currency.lower()
        data = await self._get_json(
            "/simple/price", {"ids": self._coin_id, "vs_currencies": currency}
        )
        value = ((data or {}).get(self._coin_id) or {}).get(currency)
        try:
            return float(value) if value is not None else None
        except (TypeError, ValueError):
            return None
