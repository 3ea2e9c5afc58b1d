"""
Transaction ledger replay: balances at a past point in time or height.

Token balances are rebuilt forward from zero over the account's trades
ordered by (block_height, created_at). The native coin balance is rebuilt
backward from the live balance by undoing every trade after the target:
buys and creates add back the coin spent, sells remove the coin received.

The backward replay assumes the account's native balance only moves through
trades; transfers, fees and rewards are not reconstructed.
"""

from __future__ import annotations

import asyncio
import bisect
from typing import Iterable

from backend_portfolio.chain.models import BalanceSource
from backend_portfolio.ledger.database import LedgerStore
from backend_portfolio.ledger.models import (
    DEFAULT_DECIMALS,
    Denomination,
    LedgerEntry,
    to_human_units,
)
from backend_portfolio.portfolio_logging import get_logger

logger = get_logger(__name__)


def is_at_or_before(entry: LedgerEntry, at_ms: int | None = None, at_height: int | None = None) -> bool:
    """True when the entry happened at or before the target (both bounds apply when given)."""
    if at_height is not None and entry.block_height > at_height:
        return False
    if at_ms is not None and entry.created_at_ms > at_ms:
        return False
    return True


def ordered(entries: Iterable[LedgerEntry]) -> list[LedgerEntry]:
    return sorted(entries, key=lambda e: e.order_key)


def raw_token_balance_at(
    entries: Iterable[LedgerEntry],
    sale_address: str,
    at_ms: int | None = None,
    at_height: int | None = None,
) -> int:
    """Raw units held of one asset after all trades at or before the target."""
    balance = 0
    for e in ordered(entries):
        if e.sale_address != sale_address or not is_at_or_before(e, at_ms, at_height):
            continue
        balance = max(0, balance)
        if e.is_acquire:
            balance += e.volume
        elif e.is_sell:
            balance -= e.volume
    return max(0, balance)


def token_balance_at(
    entries: Iterable[LedgerEntry],
    sale_address: str,
    at_ms: int | None = None,
    at_height: int | None = None,
    decimals: int = DEFAULT_DECIMALS,
) -> float:
    """Human-unit balance of one asset at the target; never negative."""
    return to_human_units(raw_token_balance_at(entries, sale_address, at_ms, at_height), decimals)


def native_balance_at(
    entries: Iterable[LedgerEntry],
    current_balance: float,
    at_ms: int | None = None,
    at_height: int | None = None,
) -> float:
    """
    Native coin balance at the target, from the live balance.

    Entries with a malformed coin amount are skipped individually.
    """
    balance = float(current_balance)
    for e in ordered(entries):
        if is_at_or_before(e, at_ms, at_height):
            continue
        amount = e.amount_in(Denomination.AE)
        if amount is None:
            logger.warning("ledger_replay_bad_amount", tx_hash=e.tx_hash, tx_type=e.tx_type)
            continue
        if e.is_acquire:
            balance += amount
        elif e.is_sell:
            balance -= amount
    return max(0.0, balance)


def token_balance_series(
    entries: Iterable[LedgerEntry],
    timestamps: list[int],
    decimals: dict[str, int] | None = None,
) -> dict[str, list[float]]:
    """
    Human-unit balance of every traded asset at each of the ascending timestamps.

    One sort and one forward pass per asset; equals token_balance_at(..., at_ms=ts)
    for each ts as long as trade order by height agrees with trade time.
    """
    decimals = decimals or {}
    by_sale: dict[str, list[LedgerEntry]] = {}
    for e in ordered(entries):
        by_sale.setdefault(e.sale_address, []).append(e)

    series: dict[str, list[float]] = {}
    for sale, trades in by_sale.items():
        scale = decimals.get(sale, DEFAULT_DECIMALS)
        values: list[float] = []
        balance = 0
        i = 0
        for ts in timestamps:
            while i < len(trades) and trades[i].created_at_ms <= ts:
                e = trades[i]
                balance = max(0, balance)
                if e.is_acquire:
                    balance += e.volume
                elif e.is_sell:
                    balance -= e.volume
                i += 1
            values.append(to_human_units(max(0, balance), scale))
        series[sale] = values
    return series


def native_balance_series(
    entries: Iterable[LedgerEntry],
    current_balance: float,
    timestamps: list[int],
) -> list[float]:
    """
    Native coin balance at each timestamp; equals native_balance_at(..., at_ms=ts).

    Each sample undoes the trades strictly after it, read from suffix sums of
    the per-trade coin deltas.
    """
    moves: list[tuple[int, float]] = []
    for e in entries:
        if not (e.is_acquire or e.is_sell):
            continue
        amount = e.amount_in(Denomination.AE)
        if amount is None:
            logger.warning("ledger_replay_bad_amount", tx_hash=e.tx_hash, tx_type=e.tx_type)
            continue
        moves.append((e.created_at_ms, amount if e.is_acquire else -amount))
    moves.sort(key=lambda m: m[0])
    times = [t for t, _ in moves]

    # suffix[i]: coin to add back when undoing moves[i:]
    suffix = [0.0] * (len(moves) + 1)
    for i in range(len(moves) - 1, -1, -1):
        suffix[i] = suffix[i + 1] + moves[i][1]

    base = float(current_balance)
    return [max(0.0, base + suffix[bisect.bisect_right(times, ts)]) for ts in timestamps]


def sale_addresses_of(entries: Iterable[LedgerEntry]) -> list[str]:
    """Distinct assets traded, in first-seen order."""
    return list(dict.fromkeys(e.sale_address for e in entries))


class LedgerReplayer:
    """Single-shot balance lookups backed by the ledger store and live chain balance."""

    def __init__(self, store: LedgerStore, balances: BalanceSource) -> None:
        self._store = store
        self._balances = balances

    async def balance_at(
        self,
        address: str,
        sale_address: str | None = None,
        *,
        at_ms: int | None = None,
        at_height: int | None = None,
    ) -> float:
        """
        Balance of address at the target.

        sale_address None → native coin (reverse replay from live balance);
        otherwise the asset's balance in human units.
        """
        if sale_address is None:
            entries = await asyncio.to_thread(self._store.get_account_transactions, address)
            current = await self._balances.get_account_balance(address)
            return native_balance_at(entries, current, at_ms=at_ms, at_height=at_height)
        entries = await asyncio.to_thread(
            self._store.get_account_transactions, address, sale_address=sale_address
        )
        tokens = await asyncio.to_thread(self._store.get_tokens, [sale_address])
        token = tokens.get(sale_address)
        decimals = token.decimals if token else DEFAULT_DECIMALS
        return token_balance_at(entries, sale_address, at_ms=at_ms, at_height=at_height, decimals=decimals)
