"""
Portfolio value history for one account.

history() samples timestamps from start to end every interval seconds and,
for each sample, reconstructs the native balance (reverse replay from the
live balance) and every traded asset's balance (forward replay), values the
assets at their last trade price at or before the sample, and resolves the
sample's block height. Trades and price points are fetched once for the
whole range. With no range, a single current snapshot is built from the
live balance, current holdings and the tokens' latest prices.

Values are in native coin; a display currency adds total_value_display
using the historical rate closest to each sample.
"""

from __future__ import annotations

import asyncio
import bisect
import time
from dataclasses import dataclass
from typing import Any, Callable

from backend_portfolio.analytics.ledger_replay import (
    native_balance_series,
    ordered,
    sale_addresses_of,
    token_balance_series,
)
from backend_portfolio.analytics.pnl import CostBasisPnlCalculator, PnlResult
from backend_portfolio.chain.block_height import BlockHeightResolver
from backend_portfolio.chain.models import BalanceSource
from backend_portfolio.core.exceptions import RateSourceError
from backend_portfolio.ledger.database import LedgerStore
from backend_portfolio.ledger.models import DEFAULT_DECIMALS, Denomination, PricePoint, to_human_units
from backend_portfolio.portfolio_logging import get_logger
from backend_portfolio.pricing.coingecko import RatePoint, RateSource, rate_at

logger = get_logger(__name__)

DEFAULT_INTERVAL_SEC = 86400
DEFAULT_LOOKBACK_DAYS = 90
MAX_POINTS = 100_000
NATIVE_CURRENCY = Denomination.AE.value


@dataclass
class PortfolioSnapshot:
    """Account value at one sampled timestamp."""

    timestamp_ms: int
    block_height: int | None
    native_balance: float
    assets_value: float
    """Sum of asset balances × unit price, in native coin."""
    total_value: float
    price_used: float | None = None
    """Native → display currency rate applied; None when values stay in native coin."""
    total_value_display: float | None = None
    pnl: PnlResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp_ms": self.timestamp_ms,
            "block_height": self.block_height,
            "native_balance": self.native_balance,
            "assets_value": self.assets_value,
            "total_value": self.total_value,
            "price_used": self.price_used,
            "total_value_display": self.total_value_display,
            "pnl": self.pnl.to_dict() if self.pnl is not None else None,
        }


def sample_timestamps(start_ms: int, end_ms: int, interval_s: int) -> list[int]:
    """start..end inclusive stepping interval_s; non-positive interval → daily; capped."""
    if interval_s <= 0:
        logger.warning("portfolio_invalid_interval", interval_s=interval_s, fallback=DEFAULT_INTERVAL_SEC)
        interval_s = DEFAULT_INTERVAL_SEC
    step_ms = int(interval_s) * 1000
    out: list[int] = []
    ts = int(start_ms)
    while ts <= end_ms:
        if len(out) >= MAX_POINTS:
            logger.error("portfolio_sample_cap_reached", max_points=MAX_POINTS)
            break
        out.append(ts)
        ts += step_ms
    return out


def _price_at(points: list[PricePoint], times: list[int], ts_ms: int) -> float:
    """Native-coin unit price of the last point at or before ts_ms; 0 when none."""
    i = bisect.bisect_right(times, ts_ms)
    if i == 0:
        return 0.0
    return float(points[i - 1].price.get(NATIVE_CURRENCY) or 0.0)


class PortfolioSnapshotBuilder:
    """Builds current and historical portfolio snapshots for an account."""

    def __init__(
        self,
        store: LedgerStore,
        balances: BalanceSource,
        resolver: BlockHeightResolver,
        *,
        pnl: CostBasisPnlCalculator | None = None,
        rates: RateSource | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._balances = balances
        self._resolver = resolver
        self._pnl = pnl or CostBasisPnlCalculator(store)
        self._rates = rates
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def _rate_history(self, currency: str) -> list[RatePoint]:
        if self._rates is None:
            logger.warning("portfolio_no_rate_source", currency=currency)
            return []
        try:
            history = await self._rates.get_historical_rates(currency)
        except RateSourceError as e:
            logger.warning("portfolio_rate_history_failed", currency=currency, error=str(e))
            return []
        if not history:
            logger.warning("portfolio_rate_history_empty", currency=currency)
        return history

    async def current_snapshot(
        self, address: str, currency: str = NATIVE_CURRENCY, include_pnl: bool = False
    ) -> PortfolioSnapshot:
        """Live balance plus current holdings at the tokens' latest prices; no replay."""
        native = await self._balances.get_account_balance(address)
        holdings = await asyncio.to_thread(self._store.get_token_holdings, address)
        tokens = await asyncio.to_thread(self._store.get_tokens, [h.sale_address for h in holdings])
        assets_value = 0.0
        for h in holdings:
            token = tokens.get(h.sale_address)
            price = token.price_in(Denomination.AE) if token else None
            if not price:
                continue
            assets_value += to_human_units(h.balance, token.decimals) * price
        top = await self._resolver.get_top()
        total = native + assets_value
        snap = PortfolioSnapshot(
            timestamp_ms=self._now_ms(),
            block_height=top.height,
            native_balance=native,
            assets_value=assets_value,
            total_value=total,
        )
        if currency.lower() != NATIVE_CURRENCY:
            rate = None
            if self._rates is not None:
                try:
                    rate = await self._rates.get_current_rate(currency)
                except RateSourceError as e:
                    logger.warning("portfolio_current_rate_failed", currency=currency, error=str(e))
            if rate:
                snap.price_used = rate
                snap.total_value_display = total * rate
            else:
                logger.warning("portfolio_no_rate", currency=currency)
        if include_pnl:
            snap.pnl = await self._pnl.pnl_at(address, top.height)
        return snap

    async def history(
        self,
        address: str,
        start_ms: int | None = None,
        end_ms: int | None = None,
        interval_s: int = DEFAULT_INTERVAL_SEC,
        currency: str = NATIVE_CURRENCY,
        include_pnl: bool = False,
    ) -> list[PortfolioSnapshot]:
        if start_ms is None and end_ms is None:
            return [await self.current_snapshot(address, currency, include_pnl)]

        end = int(end_ms) if end_ms is not None else self._now_ms()
        start = int(start_ms) if start_ms is not None else end - DEFAULT_LOOKBACK_DAYS * 86400 * 1000
        timestamps = sample_timestamps(start, end, interval_s)
        if not timestamps:
            return [await self.current_snapshot(address, currency, include_pnl)]

        entries = ordered(await asyncio.to_thread(self._store.get_account_transactions, address))
        current_native = await self._balances.get_account_balance(address)
        sales = sale_addresses_of(entries)
        tokens = await asyncio.to_thread(self._store.get_tokens, sales)
        decimals = {s: (tokens[s].decimals if s in tokens else DEFAULT_DECIMALS) for s in sales}
        price_points = await asyncio.to_thread(self._store.get_price_points, sales, until_ms=end)
        price_points = {s: sorted(pts, key=lambda p: (p.created_at_ms, p.block_height)) for s, pts in price_points.items()}
        price_times = {s: [p.created_at_ms for p in pts] for s, pts in price_points.items()}

        display = currency.lower() != NATIVE_CURRENCY
        rates = await self._rate_history(currency.lower()) if display else []

        natives = native_balance_series(entries, current_native, timestamps)
        token_balances = token_balance_series(entries, timestamps, decimals)

        snapshots: list[PortfolioSnapshot] = []
        previous_height: int | None = None
        for i, ts in enumerate(timestamps):
            height = await self._resolver.resolve(ts, previous_height=previous_height)
            previous_height = height
            native = natives[i]
            assets_value = 0.0
            for sale in sales:
                balance = token_balances[sale][i]
                if balance <= 0:
                    continue
                assets_value += balance * _price_at(price_points.get(sale, []), price_times.get(sale, []), ts)
            total = native + assets_value
            snap = PortfolioSnapshot(
                timestamp_ms=ts,
                block_height=height,
                native_balance=native,
                assets_value=assets_value,
                total_value=total,
            )
            if display:
                rate = rate_at(rates, ts)
                if rate:
                    snap.price_used = rate
                    snap.total_value_display = total * rate
            if include_pnl:
                snap.pnl = await self._pnl.pnl_from_entries(entries, height)
            snapshots.append(snap)

        logger.debug(
            "portfolio_history_built",
            address=address,
            points=len(snapshots),
            trades=len(entries),
            assets=len(sales),
            currency=currency,
        )
        return snapshots
