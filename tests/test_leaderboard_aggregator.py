"""
Tests for the leaderboard aggregator: candidate selection, per-candidate
value series, partial results under a deadline, and failure isolation.
"""

from __future__ import annotations

import asyncio

import pytest

from backend_portfolio.chain.block_height import BlockHeightResolver
from backend_portfolio.config.settings import LeaderboardSettings
from backend_portfolio.leaderboard.aggregator import LeaderboardAggregator
from backend_portfolio.leaderboard.metrics import LeaderboardItem, LeaderboardWindow
from backend_portfolio.ledger.models import AccountRecord, TokenRecord

from conftest import DAY_MS

SALE = "ct_sale_a"


def _aggregator(ledger_store, chain, settings=None, monotonic=lambda: 0.0) -> LeaderboardAggregator:
    resolver = BlockHeightResolver(chain, ledger=ledger_store)
    return LeaderboardAggregator(
        ledger_store,
        resolver,
        settings=settings,
        clock=lambda: chain.tip.time_ms / 1000,
        monotonic=monotonic,
    )


@pytest.fixture
def market(ledger_store, make_chain, make_entry):
    """
    ak_alice buys 100 units at price 1 USD long before the window; ak_bob buys
    10 at price 3 USD 36 h before the tip, repricing alice's position.
    """
    chain = make_chain(n=20_000)
    bob_ms = chain.tip.time_ms - 3 * DAY_MS // 2
    ledger_store.upsert_tokens([TokenRecord(sale_address=SALE, decimals=0, creator_address="ak_alice")])
    ledger_store.upsert_accounts([AccountRecord(address="ak_alice", chain_name="alice.chain")])
    ledger_store.insert_entries(
        [
            make_entry(
                "buy",
                100,
                block_height=10,
                created_at_ms=chain.time_of(10),
                amount={"ae": 200, "usd": 100},
                buy_price={"ae": 2.0, "usd": 1.0},
            ),
            make_entry(
                "buy",
                10,
                address="ak_bob",
                block_height=chain.height_at(bob_ms),
                created_at_ms=bob_ms,
                amount={"ae": 60, "usd": 30},
                buy_price={"ae": 6.0, "usd": 3.0},
            ),
        ]
    )
    return chain


def test_compute_window_value_series(ledger_store, market):
    """Series values are USD position values at each sampled height."""
    aggregator = _aggregator(ledger_store, market)
    items = asyncio.run(aggregator.compute_window("7d", 10))

    assert [i.address for i in items] == ["ak_alice", "ak_bob"]
    alice, bob = items

    assert [v for _, v in alice.portfolio_value_usd_sparkline] == pytest.approx([100.0] * 6 + [300.0] * 2)
    assert alice.aum_usd == pytest.approx(300.0)
    assert alice.pnl_usd == pytest.approx(200.0)
    assert alice.roi_pct == pytest.approx(200.0)
    assert alice.mdd_pct == 0.0
    assert alice.chain_name == "alice.chain"
    assert alice.created_tokens_count == 1
    assert alice.buy_count == 0

    assert [v for _, v in bob.portfolio_value_usd_sparkline] == pytest.approx([0.0] * 6 + [30.0] * 2)
    assert bob.aum_usd == pytest.approx(30.0)
    assert bob.roi_pct == 0.0
    assert bob.buy_count == 1

    timestamps = [ts for ts, _ in alice.portfolio_value_usd_sparkline]
    assert timestamps == sorted(timestamps)
    assert timestamps[-1] == market.tip.time_ms
    assert timestamps[-1] - timestamps[0] == 7 * DAY_MS


def test_compute_window_respects_candidate_ceiling(ledger_store, market):
    aggregator = _aggregator(ledger_store, market)
    items = asyncio.run(aggregator.compute_window(LeaderboardWindow.D7, 1))
    assert [i.address for i in items] == ["ak_alice"]


def test_get_leaders_sorting_and_filtering(ledger_store, market):
    aggregator = _aggregator(ledger_store, market)

    page = asyncio.run(aggregator.get_leaders("7d", "pnl"))
    assert [i.address for i in page.items] == ["ak_alice", "ak_bob"]
    assert page.total_candidates == 2

    page = asyncio.run(aggregator.get_leaders("7d", "aum", "ASC"))
    assert [i.address for i in page.items] == ["ak_bob", "ak_alice"]

    page = asyncio.run(aggregator.get_leaders("7d", "roi", min_aum_usd=50))
    assert [i.address for i in page.items] == ["ak_alice"]
    assert page.total_candidates == 1

    page = asyncio.run(aggregator.get_leaders("7d", "pnl", page=2, limit=1))
    assert [i.address for i in page.items] == ["ak_bob"]

    # Everyone filtered out by the AUM floor: empty, not an error.
    page = asyncio.run(aggregator.get_leaders("7d", "pnl", min_aum_usd=1e9))
    assert page.items == []
    assert page.total_candidates == 0


def test_no_candidates_gives_empty_leaderboard(ledger_store, make_chain):
    """An empty ledger is an empty (not failing) leaderboard."""
    aggregator = _aggregator(ledger_store, make_chain(n=100))
    assert asyncio.run(aggregator.compute_window("30d", 36)) == []
    page = asyncio.run(aggregator.get_leaders("30d"))
    assert page.items == []
    assert page.total_candidates == 0


def _seed_candidates(ledger_store, make_entry, n: int) -> list[str]:
    addresses = [f"ak_{i:02d}" for i in range(n)]
    ledger_store.insert_entries(
        [make_entry("buy", 1, address=a, amount={"ae": 1, "usd": 1000 - i}) for i, a in enumerate(addresses)]
    )
    return addresses


def test_deadline_returns_partial_results(ledger_store, make_chain, make_entry, monkeypatch):
    """Once the deadline passes no new candidate starts; finished ones are returned."""
    addresses = _seed_candidates(ledger_store, make_entry, 10)
    done: list[str] = []
    settings = LeaderboardSettings(concurrency=1, request_deadline_sec=8)
    aggregator = _aggregator(
        ledger_store, make_chain(n=100), settings=settings, monotonic=lambda: 0.0 if len(done) < 3 else 100.0
    )

    async def fake_item(address, window, timestamps, heights, meta):
        done.append(address)
        return LeaderboardItem(address=address, aum_usd=10.0, pnl_usd=float(len(done)), roi_pct=0.0, mdd_pct=0.0)

    monkeypatch.setattr(aggregator, "_candidate_item", fake_item)
    page = asyncio.run(aggregator.get_leaders("7d", "pnl"))

    assert done == addresses[:3]
    assert page.total_candidates == 3
    assert [i.address for i in page.items] == ["ak_02", "ak_01", "ak_00"]


def test_failed_candidate_is_skipped(ledger_store, make_chain, make_entry, monkeypatch):
    """One candidate raising does not fail the window."""
    addresses = _seed_candidates(ledger_store, make_entry, 4)
    aggregator = _aggregator(ledger_store, make_chain(n=100), settings=LeaderboardSettings(concurrency=2))

    async def flaky_item(address, window, timestamps, heights, meta):
        if address == "ak_01":
            raise RuntimeError("ledger row unreadable")
        return LeaderboardItem(address=address, aum_usd=10.0, pnl_usd=0.0, roi_pct=0.0, mdd_pct=0.0)

    monkeypatch.setattr(aggregator, "_candidate_item", flaky_item)
    items = asyncio.run(aggregator.compute_window("7d", 10))
    assert [i.address for i in items] == [a for a in addresses if a != "ak_01"]
