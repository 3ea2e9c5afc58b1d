"""
Windowed account leaderboard: aggregation, metrics, persisted snapshots.
"""

from backend_portfolio.leaderboard.aggregator import LeaderboardAggregator
from backend_portfolio.leaderboard.metrics import (
    LeaderboardItem,
    LeaderboardPage,
    LeaderboardWindow,
    SortDirection,
    SortMetric,
    max_drawdown_pct,
)
from backend_portfolio.leaderboard.snapshot_store import (
    AccountLeaderboardSnapshot,
    LeaderboardSnapshotStore,
)

__all__ = [
    "AccountLeaderboardSnapshot",
    "LeaderboardAggregator",
    "LeaderboardItem",
    "LeaderboardPage",
    "LeaderboardSnapshotStore",
    "LeaderboardWindow",
    "SortDirection",
    "SortMetric",
    "max_drawdown_pct",
]
