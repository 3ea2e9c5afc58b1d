"""
Pytest fixtures for Backend Portfolio tests.

Temporary SQLite ledger per test; in-memory fakes for the chain middleware
(key blocks + live balances) and the display-currency rate source.
Async engine code is driven with asyncio.run from plain tests.
"""

from __future__ import annotations

import itertools
from typing import Any, Callable

import pytest

from backend_portfolio.chain.block_height import clear_block_caches
from backend_portfolio.chain.models import BlockRef
from backend_portfolio.core.exceptions import BlockNotFoundError
from backend_portfolio.ledger.models import LedgerEntry

T0_MS = 1_700_000_000_000  # 2023-11-14T22:13:20Z
MINUTE_MS = 60_000
DAY_MS = 86_400_000

_ids = itertools.count(1)


class FakeChain:
    """Key blocks at given times plus live balances; counts calls per method."""

    def __init__(self, times_ms: list[int], balances: dict[str, float] | None = None) -> None:
        self.blocks = [BlockRef(height=i + 1, time_ms=t) for i, t in enumerate(times_ms)]
        self.balances = dict(balances or {})
        self.calls: dict[str, int] = {"get_top": 0, "get_key_block": 0, "list_recent_key_blocks": 0}
        self.fail_heights: set[int] = set()
        self.cache_key = f"fake-chain-{next(_ids)}"

    @property
    def tip(self) -> BlockRef:
        return self.blocks[-1]

    def time_of(self, height: int) -> int:
        return self.blocks[height - 1].time_ms

    def height_at(self, time_ms: int) -> int:
        """Brute-force greatest height with time <= time_ms (1 if none)."""
        best = 1
        for b in self.blocks:
            if b.time_ms <= time_ms:
                best = b.height
            else:
                break
        return best

    async def get_top(self) -> BlockRef:
        self.calls["get_top"] += 1
        return self.tip

    async def get_key_block(self, height: int) -> BlockRef:
        self.calls["get_key_block"] += 1
        if height in self.fail_heights:
            from backend_portfolio.core.exceptions import ChainDataError

            raise ChainDataError(f"injected failure at {height}")
        if height < 1 or height > len(self.blocks):
            raise BlockNotFoundError(height)
        return self.blocks[height - 1]

    async def list_recent_key_blocks(self, n: int) -> list[BlockRef]:
        self.calls["list_recent_key_blocks"] += 1
        return list(reversed(self.blocks[-n:]))

    async def get_account_balance(self, address: str) -> float:
        return self.balances.get(address, 0.0)


class FakeRates:
    """Rate source with a fixed history and spot rate."""

    def __init__(self, history: list[tuple[int, float]], current: float | None = None) -> None:
        self.history = history
        self.current = current

    async def get_historical_rates(self, currency: str, days: int = 365) -> list[tuple[int, float]]:
        return self.history

    async def get_current_rate(self, currency: str) -> float | None:
        return self.current


@pytest.fixture(autouse=True)
def _fresh_block_caches():
    """Tip / median-interval caches are process-wide; isolate every test."""
    clear_block_caches()
    yield
    clear_block_caches()


@pytest.fixture
def make_chain() -> Callable[..., FakeChain]:
    """Factory: make_chain(n, interval_ms=MINUTE_MS, start_ms=T0_MS, balances=None, times=None)."""

    def _make(
        n: int = 10_000,
        interval_ms: int = MINUTE_MS,
        start_ms: int = T0_MS,
        balances: dict[str, float] | None = None,
        times: list[int] | None = None,
    ) -> FakeChain:
        times_ms = times if times is not None else [start_ms + i * interval_ms for i in range(n)]
        return FakeChain(times_ms, balances)

    return _make


@pytest.fixture
def make_entry() -> Callable[..., LedgerEntry]:
    """Factory for LedgerEntry with sensible defaults and unique tx hashes."""

    def _make(
        tx_type: str,
        volume: int,
        *,
        address: str = "ak_alice",
        sale_address: str = "ct_sale_a",
        block_height: int = 1,
        created_at_ms: int = T0_MS,
        amount: Any = None,
        buy_price: Any = None,
    ) -> LedgerEntry:
        return LedgerEntry(
            tx_hash=f"th_{next(_ids)}",
            address=address,
            sale_address=sale_address,
            tx_type=tx_type,
            block_height=block_height,
            created_at_ms=created_at_ms,
            volume=volume,
            amount=amount,
            buy_price=buy_price,
        )

    return _make


@pytest.fixture
def ledger_store(tmp_path):
    """Fresh SQLite ledger store with schema."""
    from backend_portfolio.ledger.database import get_ledger_store

    return get_ledger_store(tmp_path / "ledger.db")


@pytest.fixture
def snapshot_store(tmp_path):
    """Leaderboard snapshot store on a temporary SQLite file."""
    from backend_portfolio.leaderboard.snapshot_store import LeaderboardSnapshotStore

    store = LeaderboardSnapshotStore(f"sqlite:///{tmp_path / 'snapshots.db'}")
    store.init_db()
    yield store
    store.dispose()


@pytest.fixture
def fake_rates() -> Callable[..., FakeRates]:
    def _make(history: list[tuple[int, float]], current: float | None = None) -> FakeRates:
        return FakeRates(history, current)

    return _make
