"""
Persisted leaderboard snapshots (SQLAlchemy).

One row per (window, address). A refresh replaces every row of a window in
a single transaction (delete then insert), so readers see either the old or
the new ranking. Uses DATABASE_URL / PORTFOLIO_DB_URL when set; otherwise
the SQLite file from DB_PATH.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Any, Iterator, Sequence

from sqlalchemy import JSON, Column, Float, Integer, String, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from backend_portfolio.leaderboard.metrics import (
    LeaderboardItem,
    LeaderboardPage,
    LeaderboardWindow,
    SortDirection,
    SortMetric,
    clamp_paging,
    parse_direction,
    parse_metric,
    parse_window,
)
from backend_portfolio.portfolio_logging import get_logger

logger = get_logger(__name__)

Base = declarative_base()

# -----------------------------------------------------------------------------
# SQLAlchemy models
# -----------------------------------------------------------------------------


class AccountLeaderboardSnapshot(Base):
    """Precomputed leaderboard row for one account in one window."""

    __tablename__ = "account_leaderboard_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    window = Column(String(8), nullable=False, index=True)
    address = Column(String(128), nullable=False, index=True)
    chain_name = Column(String(256), nullable=True)
    aum_usd = Column(Float, nullable=False, default=0.0)
    pnl_usd = Column(Float, nullable=False, default=0.0)
    roi_pct = Column(Float, nullable=False, default=0.0)
    mdd_pct = Column(Float, nullable=False, default=0.0)
    buy_count = Column(Integer, nullable=False, default=0)
    sell_count = Column(Integer, nullable=False, default=0)
    created_tokens_count = Column(Integer, nullable=False, default=0)
    owned_trends_count = Column(Integer, nullable=False, default=0)
    portfolio_value_usd_sparkline = Column(JSON, nullable=True)  # [[timestamp_ms, usd], ...]
    created_at = Column(Integer, nullable=False)  # Unix ms

    def to_item(self) -> LeaderboardItem:
        return LeaderboardItem(
            address=self.address,
            chain_name=self.chain_name,
            aum_usd=self.aum_usd,
            pnl_usd=self.pnl_usd,
            roi_pct=self.roi_pct,
            mdd_pct=self.mdd_pct,
            buy_count=self.buy_count,
            sell_count=self.sell_count,
            created_tokens_count=self.created_tokens_count,
            owned_trends_count=self.owned_trends_count,
            portfolio_value_usd_sparkline=[(int(ts), float(v)) for ts, v in (self.portfolio_value_usd_sparkline or [])],
        )


SORT_COLUMNS: dict[SortMetric, Any] = {
    SortMetric.PNL: AccountLeaderboardSnapshot.pnl_usd,
    SortMetric.ROI: AccountLeaderboardSnapshot.roi_pct,
    SortMetric.MDD: AccountLeaderboardSnapshot.mdd_pct,
    SortMetric.AUM: AccountLeaderboardSnapshot.aum_usd,
}


# -----------------------------------------------------------------------------
# Store
# -----------------------------------------------------------------------------


class LeaderboardSnapshotStore:
    """Engine + session factory for the snapshot table."""

    def __init__(self, database_url: str | None = None) -> None:
        if database_url is None:
            from backend_portfolio.config.env import get_database_url

            database_url = get_database_url()
        self._url = database_url
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self._engine = create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self._engine)

    @contextmanager
    def _session_scope(self) -> Iterator[Session]:
        """Single session; commits on success, rolls back on error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def init_db(self) -> None:
        """Create the snapshot table if missing. Safe to call on every startup."""
        Base.metadata.create_all(bind=self._engine)
        logger.info("leaderboard_snapshot_init_db", url=self._url.split("?")[0].split("//")[-1])

    def dispose(self) -> None:
        self._engine.dispose()

    def replace_window(self, window: LeaderboardWindow | str, items: Sequence[LeaderboardItem]) -> int:
        """Atomically replace all rows of a window. Returns rows written."""
        window = parse_window(window)
        now_ms = int(time.time() * 1000)
        with self._session_scope() as session:
            session.query(AccountLeaderboardSnapshot).filter(
                AccountLeaderboardSnapshot.window == window.value
            ).delete(synchronize_session=False)
            session.add_all(
                AccountLeaderboardSnapshot(
                    window=window.value,
                    address=item.address,
                    chain_name=item.chain_name,
                    aum_usd=item.aum_usd,
                    pnl_usd=item.pnl_usd,
                    roi_pct=item.roi_pct,
                    mdd_pct=item.mdd_pct,
                    buy_count=item.buy_count,
                    sell_count=item.sell_count,
                    created_tokens_count=item.created_tokens_count,
                    owned_trends_count=item.owned_trends_count,
                    portfolio_value_usd_sparkline=[[ts, v] for ts, v in item.portfolio_value_usd_sparkline],
                    created_at=now_ms,
                )
                for item in items
            )
        logger.info("leaderboard_snapshot_replaced", window=window.value, rows=len(items))
        return len(items)

    def get_leaders(
        self,
        window: LeaderboardWindow | str = LeaderboardWindow.D7,
        sort_by: SortMetric | str = SortMetric.PNL,
        sort_dir: SortDirection | str | None = None,
        page: int = 1,
        limit: int = 18,
        min_aum_usd: float = 1.0,
    ) -> LeaderboardPage:
        """Paginated read of the persisted ranking; ties keep insertion order."""
        window = parse_window(window)
        metric = parse_metric(sort_by)
        direction = parse_direction(sort_dir, metric)
        page, limit = clamp_paging(page, limit)
        column = SORT_COLUMNS[metric]
        order = column.asc() if direction is SortDirection.ASC else column.desc()
        with self._session_scope() as session:
            q = session.query(AccountLeaderboardSnapshot).filter(
                AccountLeaderboardSnapshot.window == window.value,
                AccountLeaderboardSnapshot.aum_usd >= min_aum_usd,
            )
            total = q.count()
            rows = (
                q.order_by(order, AccountLeaderboardSnapshot.id.asc())
                .offset((page - 1) * limit)
                .limit(limit)
                .all()
            )
            items = [r.to_item() for r in rows]
        return LeaderboardPage(items=items, total_candidates=total, page=page, limit=limit)
