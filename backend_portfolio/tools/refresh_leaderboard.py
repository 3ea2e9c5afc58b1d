"""
One-shot leaderboard refresh (outside the API's scheduler).

Recomputes the requested windows and replaces their persisted rows.

Usage:
    python -m backend_portfolio.tools.refresh_leaderboard
    python -m backend_portfolio.tools.refresh_leaderboard --window 7d --max-candidates 50
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import replace

from backend_portfolio.chain.block_height import BlockHeightResolver
from backend_portfolio.chain.client import MiddlewareClient
from backend_portfolio.config import get_settings
from backend_portfolio.leaderboard.aggregator import LeaderboardAggregator
from backend_portfolio.leaderboard.metrics import LeaderboardWindow
from backend_portfolio.leaderboard.snapshot_store import LeaderboardSnapshotStore
from backend_portfolio.ledger.database import get_ledger_store
from backend_portfolio.portfolio_logging import get_logger
from backend_portfolio.scheduler.engine import REFRESH_WINDOWS, LeaderboardRefreshScheduler

logger = get_logger(__name__)


async def _run(windows: list[LeaderboardWindow], max_candidates: int | None) -> int:
    settings = get_settings()
    lb_settings = settings.leaderboard
    if max_candidates:
        lb_settings = replace(lb_settings, scheduled_max_candidates=max_candidates)
    ledger = get_ledger_store(settings.db_path)
    snapshots = LeaderboardSnapshotStore(settings.database_url)
    snapshots.init_db()
    async with MiddlewareClient(settings.middleware_url, settings.node_url, timeout=settings.http_timeout_sec) as chain:
        resolver = BlockHeightResolver(chain, ledger=ledger, settings=settings.resolver)
        aggregator = LeaderboardAggregator(ledger, resolver, settings=lb_settings)
        scheduler = LeaderboardRefreshScheduler(aggregator, snapshots, lb_settings)
        failed = 0
        for window in windows:
            try:
                rows = await scheduler.refresh_window(window)
                logger.info("refresh_leaderboard_window_done", window=window.value, rows=rows)
            except Exception as e:
                failed += 1
                logger.exception("refresh_leaderboard_window_failed", window=window.value, error=str(e))
    snapshots.dispose()
    return 1 if failed else 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Recompute persisted leaderboard snapshots.")
    parser.add_argument(
        "--window",
        choices=[w.value for w in LeaderboardWindow],
        action="append",
        help="Window to refresh (repeatable). Default: all windows.",
    )
    parser.add_argument("--max-candidates", type=int, default=None, help="Candidate ceiling per window.")
    args = parser.parse_args()
    windows = [LeaderboardWindow(w) for w in args.window] if args.window else list(REFRESH_WINDOWS)
    return asyncio.run(_run(windows, args.max_candidates))


if __name__ == "__main__":
    raise SystemExit(main())
