"""
Scheduled leaderboard refresh.

Every refresh_interval_sec, recompute each window (7d, 30d, all) over the
scheduled candidate ceiling and replace its persisted rows. Only one cycle
runs at a time: a tick that finds the lock held is skipped, not queued.
A window that fails keeps its previous rows; the other windows still run.
"""

from __future__ import annotations

import asyncio
import time

from backend_portfolio.config.settings import LeaderboardSettings
from backend_portfolio.leaderboard.aggregator import LeaderboardAggregator
from backend_portfolio.leaderboard.metrics import LeaderboardWindow
from backend_portfolio.leaderboard.snapshot_store import LeaderboardSnapshotStore
from backend_portfolio.portfolio_logging import get_logger

logger = get_logger(__name__)

REFRESH_WINDOWS: tuple[LeaderboardWindow, ...] = (
    LeaderboardWindow.D7,
    LeaderboardWindow.D30,
    LeaderboardWindow.ALL,
)


class LeaderboardRefreshScheduler:
    """Single-slot refresher for persisted leaderboard snapshots."""

    def __init__(
        self,
        aggregator: LeaderboardAggregator,
        snapshots: LeaderboardSnapshotStore,
        settings: LeaderboardSettings | None = None,
    ) -> None:
        self._aggregator = aggregator
        self._snapshots = snapshots
        self._settings = settings or LeaderboardSettings()
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    async def refresh_window(self, window: LeaderboardWindow) -> int:
        items = await self._aggregator.compute_window(window, self._settings.scheduled_max_candidates)
        return await asyncio.to_thread(self._snapshots.replace_window, window, items)

    async def refresh_all_windows(self) -> dict[str, int] | None:
        """
        Recompute and persist every window.

        Returns rows written per successfully refreshed window, or None when
        another cycle already holds the slot.
        """
        if self._lock.locked():
            logger.info("leaderboard_refresh_skipped", reason="cycle_in_progress")
            return None
        async with self._lock:
            written: dict[str, int] = {}
            for window in REFRESH_WINDOWS:
                try:
                    written[window.value] = await self.refresh_window(window)
                except Exception as e:
                    logger.exception("leaderboard_refresh_window_failed", window=window.value, error=str(e))
            logger.info("leaderboard_refresh_done", windows=written)
            return written

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Refresh every refresh_interval_sec until stop_event is set."""
        interval = max(1.0, self._settings.refresh_interval_sec)
        logger.info("leaderboard_scheduler_started", interval_sec=interval)
        ticks = 0
        while not stop_event.is_set():
            tick_start = time.monotonic()
            ticks += 1
            await self.refresh_all_windows()
            remaining = interval - (time.monotonic() - tick_start)
            if remaining > 0:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    pass
        logger.info("leaderboard_scheduler_stopped", ticks=ticks)
