"""
Domain models for the transaction ledger read model.

Trades, tokens, current holdings, and account aggregates as ingested from
the indexer. Amount and price objects are kept raw (JSON keyed by
denomination) because upstream occasionally writes "NaN", null, or garbage;
they are parsed at read time by the helpers below. No ORM coupling so the
backend stays swappable.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any


class Denomination(str, Enum):
    """Units a coin amount can be expressed in."""

    AE = "ae"
    USD = "usd"


class TxType(str, Enum):
    BUY = "buy"
    SELL = "sell"
    CREATE_COMMUNITY = "create_community"


# Trades that add asset volume to the trader (and spend coin).
ACQUIRE_TYPES = frozenset({TxType.BUY.value, TxType.CREATE_COMMUNITY.value})

DEFAULT_DECIMALS = 18


def parse_number(raw: Any) -> float | None:
    """Finite float from a raw numeric value or numeric string; None if unusable."""
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def parse_denominated(raw: Any, denom: Denomination | str) -> float | None:
    """
    Read one denomination from a raw amount/price object.

    raw may be a dict, a JSON string of a dict, or None. Returns None for
    missing keys and for non-finite or non-numeric values.
    """
    if raw is None:
        return None
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return None
    if not isinstance(raw, dict):
        return None
    key = denom.value if isinstance(denom, Denomination) else str(denom)
    return parse_number(raw.get(key))


def parse_volume(raw: Any) -> int:
    """Raw integer asset units; malformed or negative volume reads as 0."""
    if raw is None:
        return 0
    try:
        value = int(Decimal(str(raw)))
    except (InvalidOperation, ValueError):
        return 0
    return max(0, value)


def to_human_units(raw_units: int, decimals: int = DEFAULT_DECIMALS) -> float:
    """Raw asset units divided by 10**decimals."""
    return float(Decimal(raw_units) / (Decimal(10) ** int(decimals)))


@dataclass
class Amount:
    """Coin amount in every supported denomination."""

    ae: float = 0.0
    usd: float = 0.0

    def get(self, denom: Denomination | str) -> float:
        return self.usd if Denomination(denom) is Denomination.USD else self.ae

    def __add__(self, other: "Amount") -> "Amount":
        return Amount(ae=self.ae + other.ae, usd=self.usd + other.usd)

    def __sub__(self, other: "Amount") -> "Amount":
        return Amount(ae=self.ae - other.ae, usd=self.usd - other.usd)

    def scaled(self, factor: float) -> "Amount":
        return Amount(ae=self.ae * factor, usd=self.usd * factor)

    def to_dict(self) -> dict[str, float]:
        return {"ae": self.ae, "usd": self.usd}


@dataclass(frozen=True)
class LedgerEntry:
    """One trade by one account on one bonding-curve sale."""

    tx_hash: str
    address: str
    """Trader account."""
    sale_address: str
    """Asset identifier (bonding-curve sale contract)."""
    tx_type: str
    block_height: int
    created_at_ms: int
    """Trade time, Unix milliseconds."""
    volume: int = 0
    """Asset units moved, raw integer (before decimals)."""
    amount: Any = None
    """Coin spent (buy/create) or received (sell), raw object keyed by denomination."""
    unit_price: Any = None
    buy_price: Any = None
    """Unit price after the trade, raw object keyed by denomination."""
    total_supply: str | None = None
    verified: bool = False

    @property
    def is_acquire(self) -> bool:
        return self.tx_type in ACQUIRE_TYPES

    @property
    def is_sell(self) -> bool:
        return self.tx_type == TxType.SELL.value

    def amount_in(self, denom: Denomination | str) -> float | None:
        return parse_denominated(self.amount, denom)

    def price_in(self, denom: Denomination | str) -> float | None:
        return parse_denominated(self.buy_price, denom)

    @property
    def order_key(self) -> tuple[int, int]:
        return (self.block_height, self.created_at_ms)


@dataclass
class TokenRecord:
    """Bonding-curve token metadata."""

    sale_address: str
    address: str | None = None
    """Token contract."""
    symbol: str | None = None
    decimals: int = DEFAULT_DECIMALS
    creator_address: str | None = None
    price: Any = None
    """Latest unit price, raw object keyed by denomination."""

    def price_in(self, denom: Denomination | str) -> float | None:
        return parse_denominated(self.price, denom)


@dataclass
class TokenHolding:
    """Current (live) balance of one token held by one account."""

    address: str
    sale_address: str
    balance: int = 0
    """Raw integer units."""


@dataclass
class AccountRecord:
    """Lifetime aggregates for one account."""

    address: str
    chain_name: str | None = None
    """Human-readable label, if registered."""
    total_volume: float = 0.0
    """Lifetime traded value in USD."""
    total_tx_count: int = 0
    total_buy_tx_count: int = 0
    total_sell_tx_count: int = 0
    total_created_tokens: int = 0


@dataclass
class PricePoint:
    """Trade price for an asset at a point in time."""

    sale_address: str
    block_height: int
    created_at_ms: int
    price: dict[str, float] = field(default_factory=dict)
