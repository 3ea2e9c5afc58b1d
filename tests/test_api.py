"""
Tests for the FastAPI routes (TestClient, services overridden with fakes).
"""

from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient

from backend_portfolio.analytics.pnl import CostBasisPnlCalculator
from backend_portfolio.analytics.portfolio import PortfolioSnapshotBuilder
from backend_portfolio.api_server.server import PortfolioServices, app, close_services, get_services
from backend_portfolio.chain.block_height import BlockHeightResolver
from backend_portfolio.core.exceptions import ChainDataError
from backend_portfolio.leaderboard.aggregator import LeaderboardAggregator
from backend_portfolio.leaderboard.metrics import LeaderboardItem
from backend_portfolio.ledger.models import TokenRecord
from backend_portfolio.scheduler.engine import LeaderboardRefreshScheduler

from conftest import DAY_MS, T0_MS

SALE = "ct_sale_a"


@pytest.fixture
def services(ledger_store, snapshot_store, make_chain, make_entry):
    chain = make_chain(n=10_000, balances={"ak_alice": 10.0})
    ledger_store.upsert_tokens([TokenRecord(sale_address=SALE, decimals=0)])
    ledger_store.insert_entries(
        [
            make_entry(
                "buy",
                100,
                block_height=10,
                created_at_ms=chain.time_of(10),
                amount={"ae": 100, "usd": 20},
                buy_price={"ae": 1.0, "usd": 0.2},
            ),
            make_entry(
                "buy",
                5,
                address="ak_bob",
                block_height=12,
                created_at_ms=chain.time_of(12),
                amount={"ae": 10, "usd": 2},
                buy_price={"ae": 2.0, "usd": 0.4},
            ),
        ]
    )
    clock = lambda: chain.tip.time_ms / 1000  # noqa: E731
    resolver = BlockHeightResolver(chain, ledger=ledger_store)
    pnl = CostBasisPnlCalculator(ledger_store)
    aggregator = LeaderboardAggregator(ledger_store, resolver, pnl=pnl, clock=clock, monotonic=lambda: 0.0)
    return PortfolioServices(
        ledger=ledger_store,
        chain=chain,
        resolver=resolver,
        pnl=pnl,
        portfolio=PortfolioSnapshotBuilder(ledger_store, chain, resolver, pnl=pnl, clock=clock),
        aggregator=aggregator,
        snapshots=snapshot_store,
        scheduler=LeaderboardRefreshScheduler(aggregator, snapshot_store),
    )


@pytest.fixture
def client(services):
    """TestClient without lifespan (no background refresh loop)."""
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_pnl_at_height(client):
    r = client.get("/accounts/ak_alice/pnl", params={"block_height": 20})
    assert r.status_code == 200
    body = r.json()
    assert body["block_height"] == 20
    assert body["from_block_height"] is None
    token = body["pnls"][SALE]
    assert token["current_unit_price"]["ae"] == 2.0
    assert token["invested"]["ae"] == pytest.approx(100.0)
    assert token["gain"]["ae"] == pytest.approx(100.0)
    assert body["total_percentage"] == pytest.approx(100.0)


def test_pnl_defaults_to_tip(client, services):
    r = client.get("/accounts/ak_alice/pnl")
    assert r.status_code == 200
    assert r.json()["block_height"] == services.chain.tip.height


def test_pnl_range_after_height_is_400(client):
    r = client.get("/accounts/ak_alice/pnl", params={"block_height": 20, "from_block_height": 30})
    assert r.status_code == 400


def test_chain_failure_maps_to_502(client, services):
    async def broken_top():
        raise ChainDataError("middleware down")

    services.chain.get_top = broken_top
    r = client.get("/accounts/ak_alice/pnl")
    assert r.status_code == 502
    assert r.json() == {"detail": "Chain data unavailable"}


def test_portfolio_history(client, services):
    tip_ms = services.chain.tip.time_ms
    r = client.get(
        "/accounts/ak_alice/portfolio/history",
        params={"start_ms": tip_ms - 2 * DAY_MS, "end_ms": tip_ms, "interval": 86400},
    )
    assert r.status_code == 200
    points = r.json()
    assert len(points) == 3
    assert points[-1]["block_height"] == services.chain.tip.height
    # 10 native + 100 units at the last price of 2.
    assert points[-1]["total_value"] == pytest.approx(210.0)
    assert points[-1]["total_value_display"] is None


def test_portfolio_history_bad_range_is_400(client):
    r = client.get(
        "/accounts/ak_alice/portfolio/history", params={"start_ms": T0_MS + DAY_MS, "end_ms": T0_MS}
    )
    assert r.status_code == 400


def test_portfolio_current_snapshot(client, services):
    r = client.get("/accounts/ak_alice/portfolio/history")
    assert r.status_code == 200
    points = r.json()
    assert len(points) == 1
    assert points[0]["native_balance"] == 10.0


def test_leaderboard_snapshot_mode(client, snapshot_store):
    snapshot_store.replace_window(
        "30d",
        [
            LeaderboardItem(address="ak_a", aum_usd=50, pnl_usd=1, roi_pct=2, mdd_pct=3),
            LeaderboardItem(address="ak_b", aum_usd=60, pnl_usd=9, roi_pct=1, mdd_pct=0,
                            portfolio_value_usd_sparkline=[(1, 60.0)]),
        ],
    )
    r = client.get("/accounts/leaderboard", params={"window": "30d", "sort_by": "pnl", "limit": 1})
    assert r.status_code == 200
    body = r.json()
    assert [i["address"] for i in body["items"]] == ["ak_b"]
    assert body["items"][0]["portfolio_value_usd_sparkline"] == [[1, 60.0]]
    assert body["total_candidates"] == 2
    assert body["total_pages"] == 2


def test_leaderboard_live_mode(client):
    r = client.get("/accounts/leaderboard", params={"window": "7d", "sort_by": "aum", "mode": "live"})
    assert r.status_code == 200
    body = r.json()
    # alice: 100 × 0.4, bob: 5 × 0.4 (USD); both above the default 1 USD floor.
    assert [i["address"] for i in body["items"]] == ["ak_alice", "ak_bob"]
    assert body["items"][0]["aum_usd"] == pytest.approx(40.0)
    assert len(body["items"][0]["portfolio_value_usd_sparkline"]) == 8
    ts, value = body["items"][0]["portfolio_value_usd_sparkline"][-1]
    assert isinstance(ts, int)
    assert value == pytest.approx(40.0)


def test_leaderboard_rejects_unknown_window(client):
    r = client.get("/accounts/leaderboard", params={"window": "1y"})
    assert r.status_code == 422


class _ClosingClient:
    def __init__(self) -> None:
        self.closed = 0

    async def aclose(self) -> None:
        self.closed += 1


def test_close_services_closes_chain_and_rate_clients(services):
    services.chain = _ClosingClient()
    services.rates = _ClosingClient()
    asyncio.run(close_services(services))
    assert (services.chain.closed, services.rates.closed) == (1, 1)
