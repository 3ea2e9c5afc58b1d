"""
Average-cost profit/loss per asset at a block height.

Over an account's trades strictly below the height:

- holdings  = Σ buy/create volume − Σ sell volume (always cumulative)
- avg cost  = Σ coin spent on buy/create / Σ buy/create volume, per denomination
- price     = last valid trade price of the asset at or below the height
- invested  = holdings × avg cost; value = holdings × price; gain = value − invested

Range mode (from_height given) attributes performance to the range only:
cost fields count trades at or above from_height, invested is the coin
spent in range, and gain = proceeds in range + value of the range-bought
units still held − invested. Holdings and current value stay cumulative.

Assets with holdings <= 0 are not reported.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Iterable

from backend_portfolio.ledger.database import LedgerStore
from backend_portfolio.ledger.models import (
    DEFAULT_DECIMALS,
    Amount,
    Denomination,
    LedgerEntry,
    to_human_units,
)
from backend_portfolio.portfolio_logging import get_logger

logger = get_logger(__name__)


def gain_percentage(gain: float, invested: float) -> float:
    """gain / invested × 100; 0 when nothing was invested."""
    return (gain / invested) * 100 if invested > 0 else 0.0


@dataclass
class TokenPnl:
    """PnL breakdown for one asset."""

    current_unit_price: Amount
    percentage: float
    invested: Amount
    current_value: Amount
    gain: Amount
    holdings: float = 0.0
    """Human-unit balance at the height."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_unit_price": self.current_unit_price.to_dict(),
            "percentage": self.percentage,
            "invested": self.invested.to_dict(),
            "current_value": self.current_value.to_dict(),
            "gain": self.gain.to_dict(),
            "holdings": self.holdings,
        }


@dataclass
class PnlResult:
    """Per-asset PnL keyed by sale address, plus totals per denomination."""

    pnls: dict[str, TokenPnl] = field(default_factory=dict)
    total_invested: Amount = field(default_factory=Amount)
    total_current_value: Amount = field(default_factory=Amount)
    total_gain: Amount = field(default_factory=Amount)

    @property
    def total_percentage(self) -> float:
        return gain_percentage(self.total_gain.ae, self.total_invested.ae)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pnls": {k: v.to_dict() for k, v in self.pnls.items()},
            "total_invested": self.total_invested.to_dict(),
            "total_current_value": self.total_current_value.to_dict(),
            "total_gain": self.total_gain.to_dict(),
            "total_percentage": self.total_percentage,
        }


@dataclass
class _Position:
    """Running sums for one asset; volumes in raw units."""

    holdings: int = 0
    bought: int = 0
    sold: int = 0
    spent: Amount = field(default_factory=Amount)
    received: Amount = field(default_factory=Amount)


def _coin(entry: LedgerEntry) -> Amount:
    """Coin amount of a trade per denomination; malformed values count as 0."""
    ae = entry.amount_in(Denomination.AE)
    usd = entry.amount_in(Denomination.USD)
    if ae is None or usd is None:
        logger.debug("pnl_bad_amount", tx_hash=entry.tx_hash, ae_ok=ae is not None, usd_ok=usd is not None)
    return Amount(ae=ae or 0.0, usd=usd or 0.0)


def _positions(
    entries: Iterable[LedgerEntry], block_height: int, from_height: int | None
) -> dict[str, _Position]:
    positions: dict[str, _Position] = {}
    for e in entries:
        if e.block_height >= block_height:
            continue
        pos = positions.setdefault(e.sale_address, _Position())
        in_range = from_height is None or e.block_height >= from_height
        if e.is_acquire:
            pos.holdings += e.volume
            if in_range:
                pos.bought += e.volume
                pos.spent = pos.spent + _coin(e)
        elif e.is_sell:
            pos.holdings -= e.volume
            if in_range:
                pos.sold += e.volume
                pos.received = pos.received + _coin(e)
    return positions


def compute_pnl(
    entries: Iterable[LedgerEntry],
    block_height: int,
    prices: dict[str, dict[str, float]],
    *,
    decimals: dict[str, int] | None = None,
    from_height: int | None = None,
) -> PnlResult:
    """
    Pure PnL computation over already-fetched trades.

    prices: sale_address → {"ae": .., "usd": ..} last valid trade price;
    missing assets or denominations price at 0.
    """
    decimals = decimals or {}
    result = PnlResult()
    for sale, pos in _positions(entries, block_height, from_height).items():
        if pos.holdings <= 0:
            continue
        dec = decimals.get(sale, DEFAULT_DECIMALS)
        holdings = to_human_units(pos.holdings, dec)
        bought = to_human_units(pos.bought, dec)
        price_raw = prices.get(sale) or {}
        price = Amount(ae=float(price_raw.get("ae") or 0.0), usd=float(price_raw.get("usd") or 0.0))
        current_value = price.scaled(holdings)

        if from_height is None:
            avg_cost = pos.spent.scaled(1 / bought) if bought > 0 else Amount()
            invested = avg_cost.scaled(holdings)
            gain = current_value - invested
        else:
            invested = pos.spent
            remaining = max(0.0, min(holdings, to_human_units(max(0, pos.bought - pos.sold), dec)))
            gain = pos.received + price.scaled(remaining) - invested

        result.pnls[sale] = TokenPnl(
            current_unit_price=price,
            percentage=gain_percentage(gain.ae, invested.ae),
            invested=invested,
            current_value=current_value,
            gain=gain,
            holdings=holdings,
        )
        result.total_invested = result.total_invested + invested
        result.total_current_value = result.total_current_value + current_value
        result.total_gain = result.total_gain + gain
    return result


class CostBasisPnlCalculator:
    """pnl_at(address, height) over the ledger store."""

    def __init__(self, store: LedgerStore) -> None:
        self._store = store

    async def pnl_at(self, address: str, block_height: int, from_height: int | None = None) -> PnlResult:
        entries = await asyncio.to_thread(
            self._store.get_account_transactions, address, before_height=block_height
        )
        return await self.pnl_from_entries(entries, block_height, from_height=from_height)

    async def pnl_from_entries(
        self,
        entries: list[LedgerEntry],
        block_height: int,
        *,
        from_height: int | None = None,
    ) -> PnlResult:
        """Same as pnl_at but reuses trades the caller already fetched."""
        sales = list(dict.fromkeys(e.sale_address for e in entries if e.block_height < block_height))
        if not sales:
            return PnlResult()
        prices = await asyncio.to_thread(
            self._store.get_latest_prices, sales, block_height, from_height=from_height
        )
        tokens = await asyncio.to_thread(self._store.get_tokens, sales)
        result = compute_pnl(
            entries,
            block_height,
            prices,
            decimals={s: t.decimals for s, t in tokens.items()},
            from_height=from_height,
        )
        logger.debug(
            "pnl_computed",
            block_height=block_height,
            from_height=from_height,
            assets=len(result.pnls),
            total_gain_ae=result.total_gain.ae,
        )
        return result
