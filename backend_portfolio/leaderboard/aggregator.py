"""
Leaderboard aggregation over the top-volume accounts.

One cycle: select candidates → load metadata in bulk → sample window
heights (sequential, previous height threaded as a hint) → compute each
candidate's USD value series on a bounded worker pool → rank and filter.
The on-demand path paginates the ranked list; the scheduled path hands the
full list to the snapshot store.

A candidate that fails is logged and skipped. The optional deadline is
checked before a worker takes its next candidate; whatever finished by then
is a valid (partial) result.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable

from backend_portfolio.analytics.pnl import CostBasisPnlCalculator, PnlResult
from backend_portfolio.chain.block_height import BlockHeightResolver
from backend_portfolio.config.settings import LeaderboardSettings
from backend_portfolio.ledger.database import LedgerStore
from backend_portfolio.leaderboard.metrics import (
    WINDOW_SPECS,
    LeaderboardItem,
    LeaderboardPage,
    LeaderboardWindow,
    SortDirection,
    SortMetric,
    paginate,
    parse_direction,
    parse_metric,
    parse_window,
    rank,
    sample_timestamps,
    window_metrics,
)
from backend_portfolio.portfolio_logging import get_logger

logger = get_logger(__name__)


@dataclass
class _CandidateMeta:
    chain_name: str | None = None
    buy_count: int = 0
    sell_count: int = 0
    created_tokens_count: int = 0
    owned_trends_count: int = 0


class LeaderboardAggregator:
    """Computes windowed leaderboard items for the top-volume accounts."""

    def __init__(
        self,
        store: LedgerStore,
        resolver: BlockHeightResolver,
        *,
        pnl: CostBasisPnlCalculator | None = None,
        settings: LeaderboardSettings | None = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._pnl = pnl or CostBasisPnlCalculator(store)
        self._settings = settings or LeaderboardSettings()
        self._clock = clock
        self._monotonic = monotonic

    # ----- window sampling -----

    def window_range(self, window: LeaderboardWindow) -> tuple[int, int]:
        end_ms = int(self._clock() * 1000)
        return end_ms - WINDOW_SPECS[window].days * 86400 * 1000, end_ms

    async def sample_heights(self, timestamps: list[int]) -> list[int]:
        """Resolve timestamps in order, seeding each with the previous height."""
        heights: list[int] = []
        previous: int | None = None
        for ts in timestamps:
            previous = await self._resolver.resolve(ts, previous_height=previous)
            heights.append(previous)
        return heights

    # ----- metadata -----

    def _load_metadata(self, addresses: list[str], start_ms: int, end_ms: int) -> dict[str, _CandidateMeta]:
        accounts = self._store.get_accounts(addresses)
        counts = self._store.get_activity_counts(addresses, start_ms, end_ms)
        created = self._store.get_created_token_counts(addresses)
        owned = self._store.get_owned_token_counts(addresses)
        meta: dict[str, _CandidateMeta] = {}
        for a in addresses:
            buys, sells = counts.get(a, (0, 0))
            acct = accounts.get(a)
            meta[a] = _CandidateMeta(
                chain_name=acct.chain_name if acct else None,
                buy_count=buys,
                sell_count=sells,
                created_tokens_count=created.get(a, 0),
                owned_trends_count=owned.get(a, 0),
            )
        return meta

    # ----- per-candidate -----

    async def _candidate_item(
        self,
        address: str,
        window: LeaderboardWindow,
        timestamps: list[int],
        heights: list[int],
        meta: _CandidateMeta,
    ) -> LeaderboardItem | None:
        entries = await asyncio.to_thread(
            self._store.get_account_transactions, address, before_height=max(heights)
        )
        series: list[tuple[int, float]] = []
        last: PnlResult | None = None
        for ts, h in zip(timestamps, heights):
            last = await self._pnl.pnl_from_entries(entries, h)
            series.append((ts, max(last.total_current_value.usd, 0.0)))
        if not series:
            return None
        series.sort(key=lambda p: p[0])
        m = window_metrics(series, window, lifetime=last)
        return LeaderboardItem(
            address=address,
            aum_usd=m.aum_usd,
            pnl_usd=m.pnl_usd,
            roi_pct=m.roi_pct,
            mdd_pct=m.mdd_pct,
            chain_name=meta.chain_name,
            buy_count=meta.buy_count,
            sell_count=meta.sell_count,
            created_tokens_count=meta.created_tokens_count,
            owned_trends_count=meta.owned_trends_count,
            portfolio_value_usd_sparkline=series,
        )

    # ----- cycle -----

    async def compute_window(
        self,
        window: LeaderboardWindow | str,
        max_candidates: int,
        *,
        deadline_sec: float | None = None,
    ) -> list[LeaderboardItem]:
        """
        Unranked items for every candidate that completed, in candidate order.

        deadline_sec: stop handing out candidates once this much time has
        passed (monotonic clock); None runs to completion.
        """
        window = parse_window(window)
        started = self._monotonic()
        candidates = await asyncio.to_thread(self._store.get_top_addresses_by_volume, max_candidates)
        if not candidates:
            logger.info("leaderboard_no_candidates", window=window.value)
            return []

        start_ms, end_ms = self.window_range(window)
        meta = await asyncio.to_thread(self._load_metadata, candidates, start_ms, end_ms)
        timestamps = sample_timestamps(start_ms, end_ms, WINDOW_SPECS[window].points)
        heights = await self.sample_heights(timestamps)

        queue: asyncio.Queue[tuple[int, str]] = asyncio.Queue()
        for idx, address in enumerate(candidates):
            queue.put_nowait((idx, address))
        results: dict[int, LeaderboardItem] = {}
        expired = False

        async def worker() -> None:
            nonlocal expired
            while True:
                if deadline_sec is not None and self._monotonic() - started >= deadline_sec:
                    expired = True
                    return
                try:
                    idx, address = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    item = await self._candidate_item(address, window, timestamps, heights, meta[address])
                except Exception as e:
                    logger.warning(
                        "leaderboard_candidate_failed",
                        window=window.value,
                        address=address,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    continue
                if item is not None:
                    results[idx] = item

        workers = max(1, min(self._settings.concurrency, len(candidates)))
        await asyncio.gather(*(worker() for _ in range(workers)))

        items = [results[i] for i in sorted(results)]
        logger.info(
            "leaderboard_window_computed",
            window=window.value,
            candidates=len(candidates),
            completed=len(items),
            deadline_expired=expired,
            elapsed_sec=round(self._monotonic() - started, 3),
        )
        return items

    async def get_leaders(
        self,
        window: LeaderboardWindow | str = LeaderboardWindow.D7,
        sort_by: SortMetric | str = SortMetric.PNL,
        sort_dir: SortDirection | str | None = None,
        page: int = 1,
        limit: int = 18,
        min_aum_usd: float | None = None,
        max_candidates: int | None = None,
    ) -> LeaderboardPage:
        """On-demand leaderboard: bounded candidates and deadline, paginated in memory."""
        metric = parse_metric(sort_by)
        direction = parse_direction(sort_dir, metric)
        items = await self.compute_window(
            window,
            max_candidates or self._settings.request_max_candidates,
            deadline_sec=self._settings.request_deadline_sec,
        )
        min_aum = self._settings.default_min_aum_usd if min_aum_usd is None else min_aum_usd
        return paginate(rank(items, metric, direction, min_aum), page, limit)
