"""
Ledger read model: trades, tokens, current holdings, and account aggregates.

Uses SQLite behind an abstract backend so the store can be swapped for
PostgreSQL (different placeholders, same interface). Every query is
read-only apart from the insert/upsert helpers used by ingestion and tests.
sqlite3 errors surface as LedgerStoreError.
"""

from __future__ import annotations

import json
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator

from backend_portfolio.core.exceptions import LedgerStoreError
from backend_portfolio.ledger.models import (
    AccountRecord,
    LedgerEntry,
    PricePoint,
    TokenHolding,
    TokenRecord,
    TxType,
    parse_denominated,
    parse_volume,
)
from backend_portfolio.portfolio_logging import get_logger

logger = get_logger(__name__)

# -----------------------------------------------------------------------------
# Schema (SQLite). Amounts/prices are JSON text; volumes are decimal text
# since raw units exceed 64-bit integers.
# -----------------------------------------------------------------------------

SCHEMA_TRANSACTIONS = """
CREATE TABLE IF NOT EXISTS transactions (
    tx_hash TEXT PRIMARY KEY,
    address TEXT NOT NULL,
    sale_address TEXT NOT NULL,
    tx_type TEXT NOT NULL,
    block_height INTEGER NOT NULL,
    created_at INTEGER NOT NULL,
    volume TEXT,
    amount TEXT,
    unit_price TEXT,
    buy_price TEXT,
    total_supply TEXT,
    verified INTEGER DEFAULT 0
);
CREATE INDEX IF NOT EXISTS ix_transactions_address ON transactions(address);
CREATE INDEX IF NOT EXISTS ix_transactions_sale_height ON transactions(sale_address, block_height);
CREATE INDEX IF NOT EXISTS ix_transactions_created_at ON transactions(created_at);
CREATE INDEX IF NOT EXISTS ix_transactions_address_height ON transactions(address, block_height);
"""

SCHEMA_TOKENS = """
CREATE TABLE IF NOT EXISTS tokens (
    sale_address TEXT PRIMARY KEY,
    address TEXT,
    symbol TEXT,
    decimals INTEGER DEFAULT 18,
    creator_address TEXT,
    price TEXT
);
CREATE INDEX IF NOT EXISTS ix_tokens_creator ON tokens(creator_address);
"""

SCHEMA_TOKEN_HOLDERS = """
CREATE TABLE IF NOT EXISTS token_holders (
    address TEXT NOT NULL,
    sale_address TEXT NOT NULL,
    balance TEXT NOT NULL DEFAULT '0',
    PRIMARY KEY (address, sale_address)
);
"""

SCHEMA_ACCOUNTS = """
CREATE TABLE IF NOT EXISTS accounts (
    address TEXT PRIMARY KEY,
    chain_name TEXT,
    total_volume REAL DEFAULT 0,
    total_tx_count INTEGER DEFAULT 0,
    total_buy_tx_count INTEGER DEFAULT 0,
    total_sell_tx_count INTEGER DEFAULT 0,
    total_created_tokens INTEGER DEFAULT 0
);
CREATE INDEX IF NOT EXISTS ix_accounts_total_volume ON accounts(total_volume);
"""


def _dump_json(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value)


def _placeholders(n: int) -> str:
    return ",".join("?" * n)


def _row_to_entry(row: sqlite3.Row) -> LedgerEntry:
    return LedgerEntry(
        tx_hash=row["tx_hash"],
        address=row["address"],
        sale_address=row["sale_address"],
        tx_type=row["tx_type"],
        block_height=row["block_height"],
        created_at_ms=row["created_at"],
        volume=parse_volume(row["volume"]),
        amount=row["amount"],
        unit_price=row["unit_price"],
        buy_price=row["buy_price"],
        total_supply=row["total_supply"],
        verified=bool(row["verified"]),
    )


def _valid_price(raw: Any) -> dict[str, float] | None:
    """Price object with a finite ae value (usd optional); None when unusable."""
    ae = parse_denominated(raw, "ae")
    if ae is None:
        return None
    price = {"ae": ae}
    usd = parse_denominated(raw, "usd")
    if usd is not None:
        price["usd"] = usd
    return price


# -----------------------------------------------------------------------------
# Abstract backend
# -----------------------------------------------------------------------------


class LedgerBackend(ABC):
    """Abstract ledger persistence; implement for SQLite or PostgreSQL."""

    @abstractmethod
    def ensure_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        ...

    @abstractmethod
    def insert_entries(self, entries: Iterable[LedgerEntry]) -> int:
        """Insert trades; duplicates (tx_hash) are ignored. Returns number inserted."""
        ...

    @abstractmethod
    def upsert_tokens(self, tokens: Iterable[TokenRecord]) -> None:
        ...

    @abstractmethod
    def upsert_holdings(self, holdings: Iterable[TokenHolding]) -> None:
        ...

    @abstractmethod
    def upsert_accounts(self, accounts: Iterable[AccountRecord]) -> None:
        ...

    @abstractmethod
    def get_account_transactions(
        self,
        address: str,
        *,
        sale_address: str | None = None,
        until_ms: int | None = None,
        before_height: int | None = None,
    ) -> list[LedgerEntry]:
        """Trades of one account ordered by (block_height, created_at) ascending."""
        ...

    @abstractmethod
    def get_latest_height_at_or_before(self, time_ms: int) -> int | None:
        """Block height of the latest trade (any account) with created_at <= time_ms."""
        ...

    @abstractmethod
    def get_price_points(
        self, sale_addresses: list[str], *, until_ms: int | None = None
    ) -> dict[str, list[PricePoint]]:
        """Valid trade prices per asset ordered by (block_height, created_at) ascending."""
        ...

    @abstractmethod
    def get_latest_prices(
        self,
        sale_addresses: list[str],
        at_height: int,
        *,
        from_height: int | None = None,
    ) -> dict[str, dict[str, float]]:
        """Last valid buy_price per asset at height <= at_height (and >= from_height)."""
        ...

    @abstractmethod
    def get_top_addresses_by_volume(self, limit: int) -> list[str]:
        """Addresses ranked by lifetime USD traded amount, descending (ties by address)."""
        ...

    @abstractmethod
    def get_activity_counts(
        self, addresses: list[str], since_ms: int, until_ms: int
    ) -> dict[str, tuple[int, int]]:
        """(buy_count, sell_count) per address for trades in [since_ms, until_ms]."""
        ...

    @abstractmethod
    def get_created_token_counts(self, addresses: list[str]) -> dict[str, int]:
        ...

    @abstractmethod
    def get_owned_token_counts(self, addresses: list[str]) -> dict[str, int]:
        """Distinct tokens with positive current balance per address."""
        ...

    @abstractmethod
    def get_accounts(self, addresses: list[str]) -> dict[str, AccountRecord]:
        ...

    @abstractmethod
    def get_tokens(self, sale_addresses: list[str]) -> dict[str, TokenRecord]:
        ...

    @abstractmethod
    def get_token_holdings(self, address: str) -> list[TokenHolding]:
        """Current holdings with positive balance."""
        ...


# -----------------------------------------------------------------------------
# SQLite backend
# -----------------------------------------------------------------------------


class SQLiteBackend(LedgerBackend):
    """SQLite implementation; single file, one connection per operation."""

    def __init__(self, path: str | Path, *, timeout_sec: float = 5.0) -> None:
        self._path = Path(path)
        self._timeout_sec = timeout_sec

    def _connect(self) -> sqlite3.Connection:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self._path), timeout=self._timeout_sec)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        return conn

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        try:
            conn = self._connect()
        except sqlite3.Error as e:
            raise LedgerStoreError(f"Cannot open ledger store {self._path}: {e}") from e
        try:
            cur = conn.cursor()
            yield cur
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise LedgerStoreError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        with self._cursor() as cur:
            for stmt in (SCHEMA_TRANSACTIONS, SCHEMA_TOKENS, SCHEMA_TOKEN_HOLDERS, SCHEMA_ACCOUNTS):
                cur.executescript(stmt)

    def insert_entries(self, entries: Iterable[LedgerEntry]) -> int:
        inserted = 0
        with self._cursor() as cur:
            for e in entries:
                cur.execute(
                    """
                    INSERT OR IGNORE INTO transactions (
                        tx_hash, address, sale_address, tx_type, block_height, created_at,
                        volume, amount, unit_price, buy_price, total_supply, verified
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        e.tx_hash,
                        e.address,
                        e.sale_address,
                        e.tx_type,
                        e.block_height,
                        e.created_at_ms,
                        str(e.volume),
                        _dump_json(e.amount),
                        _dump_json(e.unit_price),
                        _dump_json(e.buy_price),
                        e.total_supply,
                        int(e.verified),
                    ),
                )
                inserted += cur.rowcount
        return inserted

    def upsert_tokens(self, tokens: Iterable[TokenRecord]) -> None:
        with self._cursor() as cur:
            for t in tokens:
                cur.execute(
                    """
                    INSERT INTO tokens (sale_address, address, symbol, decimals, creator_address, price)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(sale_address) DO UPDATE SET
                        address = excluded.address,
                        symbol = excluded.symbol,
                        decimals = excluded.decimals,
                        creator_address = excluded.creator_address,
                        price = COALESCE(excluded.price, price)
                    """,
                    (t.sale_address, t.address, t.symbol, t.decimals, t.creator_address, _dump_json(t.price)),
                )

    def upsert_holdings(self, holdings: Iterable[TokenHolding]) -> None:
        with self._cursor() as cur:
            for h in holdings:
                cur.execute(
                    """
                    INSERT INTO token_holders (address, sale_address, balance) VALUES (?, ?, ?)
                    ON CONFLICT(address, sale_address) DO UPDATE SET balance = excluded.balance
                    """,
                    (h.address, h.sale_address, str(h.balance)),
                )

    def upsert_accounts(self, accounts: Iterable[AccountRecord]) -> None:
        with self._cursor() as cur:
            for a in accounts:
                cur.execute(
                    """
                    INSERT INTO accounts (
                        address, chain_name, total_volume, total_tx_count,
                        total_buy_tx_count, total_sell_tx_count, total_created_tokens
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(address) DO UPDATE SET
                        chain_name = excluded.chain_name,
                        total_volume = excluded.total_volume,
                        total_tx_count = excluded.total_tx_count,
                        total_buy_tx_count = excluded.total_buy_tx_count,
                        total_sell_tx_count = excluded.total_sell_tx_count,
                        total_created_tokens = excluded.total_created_tokens
                    """,
                    (
                        a.address,
                        a.chain_name,
                        a.total_volume,
                        a.total_tx_count,
                        a.total_buy_tx_count,
                        a.total_sell_tx_count,
                        a.total_created_tokens,
                    ),
                )

    def get_account_transactions(
        self,
        address: str,
        *,
        sale_address: str | None = None,
        until_ms: int | None = None,
        before_height: int | None = None,
    ) -> list[LedgerEntry]:
        sql = "SELECT * FROM transactions WHERE address = ?"
        params: list[Any] = [address]
        if sale_address is not None:
            sql += " AND sale_address = ?"
            params.append(sale_address)
        if until_ms is not None:
            sql += " AND created_at <= ?"
            params.append(until_ms)
        if before_height is not None:
            sql += " AND block_height < ?"
            params.append(before_height)
        sql += " ORDER BY block_height ASC, created_at ASC"
        with self._cursor() as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [_row_to_entry(row) for row in rows]

    def get_latest_height_at_or_before(self, time_ms: int) -> int | None:
        with self._cursor() as cur:
            cur.execute(
                "SELECT block_height FROM transactions WHERE created_at <= ? ORDER BY created_at DESC LIMIT 1",
                (time_ms,),
            )
            row = cur.fetchone()
        return int(row["block_height"]) if row else None

    def get_price_points(
        self, sale_addresses: list[str], *, until_ms: int | None = None
    ) -> dict[str, list[PricePoint]]:
        out: dict[str, list[PricePoint]] = {s: [] for s in sale_addresses}
        if not sale_addresses:
            return out
        sql = (
            "SELECT sale_address, block_height, created_at, buy_price FROM transactions "
            f"WHERE sale_address IN ({_placeholders(len(sale_addresses))}) AND buy_price IS NOT NULL"
        )
        params: list[Any] = list(sale_addresses)
        if until_ms is not None:
            sql += " AND created_at <= ?"
            params.append(until_ms)
        sql += " ORDER BY block_height ASC, created_at ASC"
        with self._cursor() as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        for row in rows:
            price = _valid_price(row["buy_price"])
            if price is None:
                continue
            out[row["sale_address"]].append(
                PricePoint(
                    sale_address=row["sale_address"],
                    block_height=row["block_height"],
                    created_at_ms=row["created_at"],
                    price=price,
                )
            )
        return out

    def get_latest_prices(
        self,
        sale_addresses: list[str],
        at_height: int,
        *,
        from_height: int | None = None,
    ) -> dict[str, dict[str, float]]:
        out: dict[str, dict[str, float]] = {}
        with self._cursor() as cur:
            for sale in dict.fromkeys(sale_addresses):
                sql = (
                    "SELECT buy_price FROM transactions "
                    "WHERE sale_address = ? AND block_height <= ? AND buy_price IS NOT NULL"
                )
                params: list[Any] = [sale, at_height]
                if from_height is not None:
                    sql += " AND block_height >= ?"
                    params.append(from_height)
                sql += " ORDER BY block_height DESC, created_at DESC"
                cur.execute(sql, params)
                for row in cur:
                    price = _valid_price(row["buy_price"])
                    if price is not None:
                        out[sale] = price
                        break
        return out

    def get_top_addresses_by_volume(self, limit: int) -> list[str]:
        # Malformed amount JSON contributes nothing; "NaN" strings cast to 0.
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT address,
                       COALESCE(SUM(CASE WHEN json_valid(amount)
                                    THEN CAST(json_extract(amount, '$.usd') AS REAL) END), 0) AS volume_usd
                FROM transactions
                GROUP BY address
                ORDER BY volume_usd DESC, address ASC
                LIMIT ?
                """,
                (limit,),
            )
            return [row["address"] for row in cur.fetchall()]

    def get_activity_counts(
        self, addresses: list[str], since_ms: int, until_ms: int
    ) -> dict[str, tuple[int, int]]:
        out = {a: (0, 0) for a in addresses}
        if not addresses:
            return out
        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT address,
                       SUM(CASE WHEN tx_type = ? THEN 1 ELSE 0 END) AS buy_count,
                       SUM(CASE WHEN tx_type = ? THEN 1 ELSE 0 END) AS sell_count
                FROM transactions
                WHERE address IN ({_placeholders(len(addresses))}) AND created_at >= ? AND created_at <= ?
                GROUP BY address
                """,
                [TxType.BUY.value, TxType.SELL.value, *addresses, since_ms, until_ms],
            )
            for row in cur.fetchall():
                out[row["address"]] = (int(row["buy_count"] or 0), int(row["sell_count"] or 0))
        return out

    def get_created_token_counts(self, addresses: list[str]) -> dict[str, int]:
        out = {a: 0 for a in addresses}
        if not addresses:
            return out
        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT creator_address, COUNT(*) AS n FROM tokens
                WHERE creator_address IN ({_placeholders(len(addresses))})
                GROUP BY creator_address
                """,
                addresses,
            )
            for row in cur.fetchall():
                out[row["creator_address"]] = int(row["n"])
        return out

    def get_owned_token_counts(self, addresses: list[str]) -> dict[str, int]:
        out = {a: 0 for a in addresses}
        if not addresses:
            return out
        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT address, COUNT(DISTINCT sale_address) AS n FROM token_holders
                WHERE address IN ({_placeholders(len(addresses))}) AND CAST(balance AS REAL) > 0
                GROUP BY address
                """,
                addresses,
            )
            for row in cur.fetchall():
                out[row["address"]] = int(row["n"])
        return out

    def get_accounts(self, addresses: list[str]) -> dict[str, AccountRecord]:
        if not addresses:
            return {}
        with self._cursor() as cur:
            cur.execute(
                f"SELECT * FROM accounts WHERE address IN ({_placeholders(len(addresses))})",
                addresses,
            )
            rows = cur.fetchall()
        return {
            row["address"]: AccountRecord(
                address=row["address"],
                chain_name=row["chain_name"],
                total_volume=float(row["total_volume"] or 0),
                total_tx_count=int(row["total_tx_count"] or 0),
                total_buy_tx_count=int(row["total_buy_tx_count"] or 0),
                total_sell_tx_count=int(row["total_sell_tx_count"] or 0),
                total_created_tokens=int(row["total_created_tokens"] or 0),
            )
            for row in rows
        }

    def get_tokens(self, sale_addresses: list[str]) -> dict[str, TokenRecord]:
        if not sale_addresses:
            return {}
        with self._cursor() as cur:
            cur.execute(
                f"SELECT * FROM tokens WHERE sale_address IN ({_placeholders(len(sale_addresses))})",
                list(sale_addresses),
            )
            rows = cur.fetchall()
        return {
            row["sale_address"]: TokenRecord(
                sale_address=row["sale_address"],
                address=row["address"],
                symbol=row["symbol"],
                decimals=int(row["decimals"] if row["decimals"] is not None else 18),
                creator_address=row["creator_address"],
                price=row["price"],
            )
            for row in rows
        }

    def get_token_holdings(self, address: str) -> list[TokenHolding]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT address, sale_address, balance FROM token_holders WHERE address = ? ORDER BY sale_address",
                (address,),
            )
            rows = cur.fetchall()
        holdings = [
            TokenHolding(address=row["address"], sale_address=row["sale_address"], balance=parse_volume(row["balance"]))
            for row in rows
        ]
        return [h for h in holdings if h.balance > 0]


# -----------------------------------------------------------------------------
# Facade: single entrypoint; backend is swappable.
# -----------------------------------------------------------------------------


class LedgerStore:
    """
    Ledger read model used by the replayer, PnL calculator, portfolio builder
    and leaderboard. Synchronous; async callers wrap calls in asyncio.to_thread.
    """

    def __init__(self, backend: LedgerBackend) -> None:
        self._backend = backend

    def ensure_schema(self) -> None:
        self._backend.ensure_schema()

    # --- Ingestion ---

    def insert_entries(self, entries: Iterable[LedgerEntry]) -> int:
        return self._backend.insert_entries(list(entries))

    def upsert_tokens(self, tokens: Iterable[TokenRecord]) -> None:
        self._backend.upsert_tokens(list(tokens))

    def upsert_holdings(self, holdings: Iterable[TokenHolding]) -> None:
        self._backend.upsert_holdings(list(holdings))

    def upsert_accounts(self, accounts: Iterable[AccountRecord]) -> None:
        self._backend.upsert_accounts(list(accounts))

    # --- Trades ---

    def get_account_transactions(
        self,
        address: str,
        *,
        sale_address: str | None = None,
        until_ms: int | None = None,
        before_height: int | None = None,
    ) -> list[LedgerEntry]:
        return self._backend.get_account_transactions(
            address, sale_address=sale_address, until_ms=until_ms, before_height=before_height
        )

    def get_latest_height_at_or_before(self, time_ms: int) -> int | None:
        return self._backend.get_latest_height_at_or_before(time_ms)

    # --- Prices ---

    def get_price_points(
        self, sale_addresses: list[str], *, until_ms: int | None = None
    ) -> dict[str, list[PricePoint]]:
        return self._backend.get_price_points(list(sale_addresses), until_ms=until_ms)

    def get_latest_prices(
        self,
        sale_addresses: list[str],
        at_height: int,
        *,
        from_height: int | None = None,
    ) -> dict[str, dict[str, float]]:
        return self._backend.get_latest_prices(list(sale_addresses), at_height, from_height=from_height)

    # --- Accounts / tokens ---

    def get_top_addresses_by_volume(self, limit: int) -> list[str]:
        return self._backend.get_top_addresses_by_volume(limit)

    def get_activity_counts(
        self, addresses: list[str], since_ms: int, until_ms: int
    ) -> dict[str, tuple[int, int]]:
        return self._backend.get_activity_counts(list(addresses), since_ms, until_ms)

    def get_created_token_counts(self, addresses: list[str]) -> dict[str, int]:
        return self._backend.get_created_token_counts(list(addresses))

    def get_owned_token_counts(self, addresses: list[str]) -> dict[str, int]:
        return self._backend.get_owned_token_counts(list(addresses))

    def get_accounts(self, addresses: list[str]) -> dict[str, AccountRecord]:
        return self._backend.get_accounts(list(addresses))

    def get_tokens(self, sale_addresses: list[str]) -> dict[str, TokenRecord]:
        return self._backend.get_tokens(list(sale_addresses))

    def get_token_holdings(self, address: str) -> list[TokenHolding]:
        return self._backend.get_token_holdings(address)


def get_ledger_store(path: str | Path | None = None) -> LedgerStore:
    """
    Return a LedgerStore over SQLite with schema ensured.

    path: SQLite file; defaults to DB_PATH from the environment.
    """
    if path is None:
        from backend_portfolio.config.env import get_db_path

        path = get_db_path()
    store = LedgerStore(SQLiteBackend(path))
    store.ensure_schema()
    logger.debug("ledger_store_ready", path=str(path))
    return store
