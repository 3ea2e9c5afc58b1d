"""
Tests for portfolio snapshots and sampled value history.
"""

from __future__ import annotations

import asyncio

import pytest

from backend_portfolio.analytics.portfolio import PortfolioSnapshotBuilder, sample_timestamps
from backend_portfolio.chain.block_height import BlockHeightResolver
from backend_portfolio.core.exceptions import RateSourceError
from backend_portfolio.ledger.models import TokenHolding, TokenRecord

from conftest import DAY_MS, T0_MS

SALE = "ct_sale_a"


@pytest.fixture
def account(ledger_store, make_chain, make_entry):
    """
    ak_alice: buys 10 units for 20 at T0+12h (price 2), sells 4 for 12 at T0+36h
    (price 3); live balance 100, still holds 6.
    """
    chain = make_chain(n=10_000, balances={"ak_alice": 100.0})
    buy_ms = T0_MS + DAY_MS // 2
    sell_ms = T0_MS + 3 * DAY_MS // 2
    ledger_store.upsert_tokens([TokenRecord(sale_address=SALE, decimals=0, price={"ae": 3.0, "usd": 0.6})])
    ledger_store.upsert_holdings([TokenHolding(address="ak_alice", sale_address=SALE, balance=6)])
    ledger_store.insert_entries(
        [
            make_entry(
                "buy",
                10,
                block_height=chain.height_at(buy_ms),
                created_at_ms=buy_ms,
                amount={"ae": 20, "usd": 4},
                buy_price={"ae": 2.0, "usd": 0.4},
            ),
            make_entry(
                "sell",
                4,
                block_height=chain.height_at(sell_ms),
                created_at_ms=sell_ms,
                amount={"ae": 12, "usd": 2},
                buy_price={"ae": 3.0, "usd": 0.6},
            ),
        ]
    )
    return chain


def _builder(ledger_store, chain, rates=None):
    resolver = BlockHeightResolver(chain, ledger=ledger_store)
    return PortfolioSnapshotBuilder(
        ledger_store, chain, resolver, rates=rates, clock=lambda: chain.tip.time_ms / 1000
    ), resolver


def test_sample_timestamps_inclusive_and_interval_fallback():
    assert sample_timestamps(0, 3000, 1) == [0, 1000, 2000, 3000]
    assert sample_timestamps(0, 2 * DAY_MS, 0) == [0, DAY_MS, 2 * DAY_MS]
    assert sample_timestamps(0, 2 * DAY_MS, -5) == [0, DAY_MS, 2 * DAY_MS]
    assert sample_timestamps(10, 5, 1) == []


def test_history_replays_balances_per_sample(ledger_store, account):
    """Native balance from reverse replay, assets from forward replay at the last price."""
    builder, resolver = _builder(ledger_store, account)
    snaps = asyncio.run(builder.history("ak_alice", start_ms=T0_MS, end_ms=T0_MS + 2 * DAY_MS))

    assert [s.timestamp_ms for s in snaps] == [T0_MS, T0_MS + DAY_MS, T0_MS + 2 * DAY_MS]
    assert [s.native_balance for s in snaps] == pytest.approx([108.0, 88.0, 100.0])
    assert [s.assets_value for s in snaps] == pytest.approx([0.0, 20.0, 18.0])
    assert [s.total_value for s in snaps] == pytest.approx([108.0, 108.0, 118.0])
    assert all(s.price_used is None and s.total_value_display is None for s in snaps)

    heights = [s.block_height for s in snaps]
    assert heights == sorted(heights)
    for s in snaps:
        effective, _ = resolver.adjust_target(s.timestamp_ms, account.tip.time_ms)
        assert s.block_height == account.height_at(effective)


def test_history_non_positive_interval_falls_back_to_daily(ledger_store, account):
    builder, _ = _builder(ledger_store, account)
    snaps = asyncio.run(builder.history("ak_alice", start_ms=T0_MS, end_ms=T0_MS + 2 * DAY_MS, interval_s=0))
    assert len(snaps) == 3


def test_history_display_currency_uses_closest_rate(ledger_store, account, fake_rates):
    rates = fake_rates([(T0_MS, 0.5), (T0_MS + DAY_MS, 0.6)])
    builder, _ = _builder(ledger_store, account, rates=rates)
    snaps = asyncio.run(
        builder.history("ak_alice", start_ms=T0_MS, end_ms=T0_MS + 2 * DAY_MS, currency="usd")
    )
    assert [s.price_used for s in snaps] == [0.5, 0.6, 0.6]
    assert [s.total_value_display for s in snaps] == pytest.approx([54.0, 64.8, 70.8])


class _FailingRates:
    async def get_historical_rates(self, currency: str, days: int = 365):
        raise RateSourceError("HTTP 500")

    async def get_current_rate(self, currency: str):
        raise RateSourceError("HTTP 500")


def test_history_rate_failure_omits_display_value(ledger_store, account):
    builder, _ = _builder(ledger_store, account, rates=_FailingRates())
    snaps = asyncio.run(
        builder.history("ak_alice", start_ms=T0_MS, end_ms=T0_MS + DAY_MS, currency="usd")
    )
    assert len(snaps) == 2
    assert all(s.total_value_display is None for s in snaps)
    assert snaps[1].total_value == pytest.approx(108.0)


def test_history_with_pnl(ledger_store, account):
    builder, _ = _builder(ledger_store, account)
    snaps = asyncio.run(
        builder.history("ak_alice", start_ms=T0_MS + 2 * DAY_MS, end_ms=T0_MS + 2 * DAY_MS, include_pnl=True)
    )
    pnl = snaps[0].pnl
    assert pnl is not None
    assert pnl.pnls[SALE].holdings == 6
    assert pnl.total_invested.ae == pytest.approx(12.0)
    assert pnl.total_current_value.ae == pytest.approx(18.0)
    assert snaps[0].to_dict()["pnl"]["total_gain"]["ae"] == pytest.approx(6.0)


def test_history_with_pnl_reads_ledger_once(ledger_store, account, monkeypatch):
    """Per-sample PnL reuses the trades loaded for the range."""
    calls = []
    fetch = ledger_store.get_account_transactions

    def counting_fetch(*args, **kwargs):
        calls.append(args)
        return fetch(*args, **kwargs)

    monkeypatch.setattr(ledger_store, "get_account_transactions", counting_fetch)
    builder, _ = _builder(ledger_store, account)
    snaps = asyncio.run(
        builder.history("ak_alice", start_ms=T0_MS, end_ms=T0_MS + 2 * DAY_MS, include_pnl=True)
    )

    assert len(calls) == 1
    assert snaps[0].pnl.pnls == {}
    assert [s.pnl.pnls[SALE].holdings for s in snaps[1:]] == [10, 6]


def test_no_range_returns_single_current_snapshot(ledger_store, account, fake_rates):
    """Live balance plus current holdings at the token's latest price, at the tip."""
    builder, _ = _builder(ledger_store, account, rates=fake_rates([], current=0.5))
    snaps = asyncio.run(builder.history("ak_alice", currency="usd"))
    assert len(snaps) == 1
    snap = snaps[0]
    assert snap.block_height == account.tip.height
    assert snap.native_balance == 100.0
    assert snap.assets_value == pytest.approx(18.0)
    assert snap.total_value == pytest.approx(118.0)
    assert snap.total_value_display == pytest.approx(59.0)


def test_empty_range_returns_current_snapshot(ledger_store, account):
    builder, _ = _builder(ledger_store, account)
    snaps = asyncio.run(builder.history("ak_alice", start_ms=T0_MS + DAY_MS, end_ms=T0_MS))
    assert len(snaps) == 1
    assert snaps[0].block_height == account.tip.height


def test_unknown_account_history_is_zero(ledger_store, account):
    builder, _ = _builder(ledger_store, account)
    snaps = asyncio.run(builder.history("ak_nobody", start_ms=T0_MS, end_ms=T0_MS + DAY_MS))
    assert [s.total_value for s in snaps] == [0.0, 0.0]
