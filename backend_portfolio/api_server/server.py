"""
FastAPI server: read API over the portfolio analytics engine.

- GET /accounts/{address}/pnl: average-cost PnL at a block height
- GET /accounts/{address}/portfolio/history: sampled portfolio values
- GET /accounts/leaderboard: persisted ranking (mode=snapshot) or an
  on-demand bounded computation (mode=live)

Engine errors map to HTTP: bad parameters → 400, chain middleware → 502,
ledger store → 503. Config via env (see backend_portfolio.config).
"""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Literal

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from backend_portfolio.analytics.pnl import CostBasisPnlCalculator, PnlResult
from backend_portfolio.analytics.portfolio import PortfolioSnapshotBuilder
from backend_portfolio.chain.block_height import BlockHeightResolver
from backend_portfolio.chain.client import MiddlewareClient
from backend_portfolio.config import Settings, get_settings
from backend_portfolio.core.exceptions import ChainDataError, InvalidParameterError, LedgerStoreError
from backend_portfolio.leaderboard.aggregator import LeaderboardAggregator
from backend_portfolio.leaderboard.metrics import LeaderboardPage
from backend_portfolio.leaderboard.snapshot_store import LeaderboardSnapshotStore
from backend_portfolio.ledger.database import LedgerStore, get_ledger_store
from backend_portfolio.portfolio_logging import bind_address, get_logger
from backend_portfolio.pricing.coingecko import CoinGeckoClient
from backend_portfolio.scheduler.engine import LeaderboardRefreshScheduler

logger = get_logger(__name__)


# -----------------------------------------------------------------------------
# Services and dependency
# -----------------------------------------------------------------------------


@dataclass
class PortfolioServices:
    """Engine components shared by all requests."""

    ledger: LedgerStore
    chain: Any
    """ChainDataSource + BalanceSource."""
    resolver: BlockHeightResolver
    pnl: CostBasisPnlCalculator
    portfolio: PortfolioSnapshotBuilder
    aggregator: LeaderboardAggregator
    snapshots: LeaderboardSnapshotStore
    scheduler: LeaderboardRefreshScheduler
    rates: Any = None
    """RateSource; closed with the chain client on shutdown."""


def build_services(settings: Settings) -> PortfolioServices:
    ledger = get_ledger_store(settings.db_path)
    chain = MiddlewareClient(settings.middleware_url, settings.node_url, timeout=settings.http_timeout_sec)
    resolver = BlockHeightResolver(chain, ledger=ledger, settings=settings.resolver)
    pnl = CostBasisPnlCalculator(ledger)
    rates = CoinGeckoClient(settings.coingecko_api_key, timeout=settings.http_timeout_sec)
    portfolio = PortfolioSnapshotBuilder(ledger, chain, resolver, pnl=pnl, rates=rates)
    aggregator = LeaderboardAggregator(ledger, resolver, pnl=pnl, settings=settings.leaderboard)
    snapshots = LeaderboardSnapshotStore(settings.database_url)
    snapshots.init_db()
    scheduler = LeaderboardRefreshScheduler(aggregator, snapshots, settings.leaderboard)
    return PortfolioServices(
        ledger=ledger,
        chain=chain,
        resolver=resolver,
        pnl=pnl,
        portfolio=portfolio,
        aggregator=aggregator,
        snapshots=snapshots,
        scheduler=scheduler,
        rates=rates,
    )


async def close_services(services: PortfolioServices) -> None:
    """Close the HTTP clients the services own."""
    for name in ("chain", "rates"):
        client = getattr(services, name)
        if hasattr(client, "aclose"):
            await client.aclose()
            logger.debug("api_client_closed", client=name)


_services: PortfolioServices | None = None


def get_services() -> PortfolioServices:
    """Dependency: app-scoped services, built on first use."""
    global _services
    if _services is None:
        _services = build_services(get_settings())
    return _services


# -----------------------------------------------------------------------------
# Response models
# -----------------------------------------------------------------------------


class AmountModel(BaseModel):
    ae: float = 0.0
    usd: float = 0.0


class TokenPnlModel(BaseModel):
    current_unit_price: AmountModel
    percentage: float
    invested: AmountModel
    current_value: AmountModel
    gain: AmountModel
    holdings: float = 0.0


class PnlResponse(BaseModel):
    """GET /accounts/{address}/pnl response."""

    address: str
    block_height: int = Field(..., description="Trades strictly below this height are counted")
    from_block_height: int | None = Field(None, description="Range start (range PnL) or null (cumulative)")
    pnls: dict[str, TokenPnlModel] = Field(default_factory=dict, description="Per sale address")
    total_invested: AmountModel
    total_current_value: AmountModel
    total_gain: AmountModel
    total_percentage: float

    @classmethod
    def from_result(cls, address: str, block_height: int, from_height: int | None, result: PnlResult) -> "PnlResponse":
        return cls(address=address, block_height=block_height, from_block_height=from_height, **result.to_dict())


class PortfolioSnapshotModel(BaseModel):
    timestamp_ms: int
    block_height: int | None
    native_balance: float
    assets_value: float
    total_value: float
    price_used: float | None = None
    total_value_display: float | None = None
    pnl: dict[str, Any] | None = None


class LeaderboardItemModel(BaseModel):
    address: str
    chain_name: str | None = None
    aum_usd: float
    pnl_usd: float
    roi_pct: float
    mdd_pct: float
    buy_count: int = 0
    sell_count: int = 0
    created_tokens_count: int = 0
    owned_trends_count: int = 0
    portfolio_value_usd_sparkline: list[tuple[int, float]] = Field(default_factory=list)


class LeaderboardResponse(BaseModel):
    """GET /accounts/leaderboard response."""

    items: list[LeaderboardItemModel]
    total_candidates: int
    page: int
    limit: int
    total_pages: int

    @classmethod
    def from_page(cls, page: LeaderboardPage) -> "LeaderboardResponse":
        return cls(
            items=[LeaderboardItemModel(**i.to_dict()) for i in page.items],
            total_candidates=page.total_candidates,
            page=page.page,
            limit=page.limit,
            total_pages=-(-page.total_candidates // page.limit) if page.limit else 0,
        )


# -----------------------------------------------------------------------------
# Lifespan: leaderboard refresh loop in the background
# -----------------------------------------------------------------------------


def _scheduler_enabled() -> bool:
    return (os.getenv("LEADERBOARD_SCHEDULER_ENABLED") or "1").strip().lower() not in ("0", "false", "no")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the leaderboard refresh loop; stop it and close HTTP clients on shutdown."""
    stop_event = asyncio.Event()
    task: asyncio.Task | None = None
    if _scheduler_enabled():
        services = get_services()
        task = asyncio.create_task(services.scheduler.run_forever(stop_event), name="leaderboard-refresh")
        logger.info("api_leaderboard_scheduler_started")
    yield
    stop_event.set()
    if task is not None:
        await task
        logger.info("api_leaderboard_scheduler_stopped")
    if _services is not None:
        await close_services(_services)


# -----------------------------------------------------------------------------
# App and routes
# -----------------------------------------------------------------------------

app = FastAPI(
    title="Backend Portfolio API",
    description="Historical portfolio valuation, PnL and trading leaderboard.",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/health")
def health() -> dict[str, str]:
    """Liveness probe: API is up."""
    return {"status": "ok"}


@app.get("/accounts/leaderboard", response_model=LeaderboardResponse)
async def get_leaderboard(
    window: Literal["7d", "30d", "all"] = "7d",
    sort_by: Literal["pnl", "roi", "mdd", "aum"] = "pnl",
    sort_dir: Literal["ASC", "DESC"] | None = None,
    page: int = 1,
    limit: int = 18,
    min_aum_usd: float = 1.0,
    max_candidates: int = Query(36, ge=1, le=100),
    mode: Literal["snapshot", "live"] = "snapshot",
    services: PortfolioServices = Depends(get_services),
) -> LeaderboardResponse:
    """
    Ranked accounts for a window. mode=snapshot reads the last scheduled
    refresh; mode=live computes over max_candidates within the request deadline.
    """
    if mode == "live":
        result = await services.aggregator.get_leaders(
            window, sort_by, sort_dir, page, limit, min_aum_usd, max_candidates
        )
    else:
        result = await asyncio.to_thread(
            services.snapshots.get_leaders, window, sort_by, sort_dir, page, limit, min_aum_usd
        )
    return LeaderboardResponse.from_page(result)


@app.get("/accounts/{address}/pnl", response_model=PnlResponse)
async def get_account_pnl(
    address: str,
    block_height: int | None = Query(None, ge=1, description="Defaults to the chain tip"),
    from_block_height: int | None = Query(None, ge=1),
    services: PortfolioServices = Depends(get_services),
) -> PnlResponse:
    address = address.strip()
    if not address:
        raise HTTPException(status_code=400, detail="address must be non-empty")
    if block_height is None:
        block_height = (await services.resolver.get_top()).height
    if from_block_height is not None and from_block_height > block_height:
        raise InvalidParameterError("from_block_height must not exceed block_height")
    result = await services.pnl.pnl_at(address, block_height, from_block_height)
    return PnlResponse.from_result(address, block_height, from_block_height, result)


@app.get("/accounts/{address}/portfolio/history", response_model=list[PortfolioSnapshotModel])
async def get_portfolio_history(
    address: str,
    start_ms: int | None = Query(None, ge=0, description="Range start, Unix ms"),
    end_ms: int | None = Query(None, ge=0, description="Range end, Unix ms"),
    interval: int = Query(86400, description="Seconds between samples"),
    convert_to: str = Query("ae", min_length=2, max_length=8),
    include_pnl: bool = False,
    services: PortfolioServices = Depends(get_services),
) -> list[PortfolioSnapshotModel]:
    address = address.strip()
    if not address:
        raise HTTPException(status_code=400, detail="address must be non-empty")
    if start_ms is not None and end_ms is not None and start_ms > end_ms:
        raise InvalidParameterError("start_ms must not be after end_ms")
    log = bind_address(address)
    snapshots = await services.portfolio.history(
        address,
        start_ms=start_ms,
        end_ms=end_ms,
        interval_s=interval,
        currency=convert_to,
        include_pnl=include_pnl,
    )
    log.debug("portfolio_history_served", points=len(snapshots))
    return [PortfolioSnapshotModel(**s.to_dict()) for s in snapshots]


# -----------------------------------------------------------------------------
# Error mapping
# -----------------------------------------------------------------------------


@app.exception_handler(InvalidParameterError)
def invalid_parameter_handler(request: Request, exc: InvalidParameterError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(ChainDataError)
def chain_data_handler(request: Request, exc: ChainDataError) -> JSONResponse:
    logger.warning("api_chain_data_error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=502, content={"detail": "Chain data unavailable"})


@app.exception_handler(LedgerStoreError)
def ledger_store_handler(request: Request, exc: LedgerStoreError) -> JSONResponse:
    logger.error("api_ledger_store_error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=503, content={"detail": "Ledger store unavailable"})


@app.exception_handler(HTTPException)
def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Consistent JSON error response for HTTPException."""
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
