"""
Ledger read model: trades, tokens, holdings, account aggregates.

SQLite via LedgerStore and get_ledger_store(); backend is swappable.
"""

from backend_portfolio.ledger.database import (
    LedgerBackend,
    LedgerStore,
    SQLiteBackend,
    get_ledger_store,
)
from backend_portfolio.ledger.models import (
    AccountRecord,
    Amount,
    Denomination,
    LedgerEntry,
    PricePoint,
    TokenHolding,
    TokenRecord,
    TxType,
)

__all__ = [
    "AccountRecord",
    "Amount",
    "Denomination",
    "LedgerBackend",
    "LedgerEntry",
    "LedgerStore",
    "PricePoint",
    "SQLiteBackend",
    "TokenHolding",
    "TokenRecord",
    "TxType",
    "get_ledger_store",
]
