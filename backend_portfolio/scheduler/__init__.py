# Leaderboard refresh scheduling: single-slot cycle over all windows.

from backend_portfolio.scheduler.engine import (
    REFRESH_WINDOWS,
    LeaderboardRefreshScheduler,
)

__all__ = [
    "REFRESH_WINDOWS",
    "LeaderboardRefreshScheduler",
]
