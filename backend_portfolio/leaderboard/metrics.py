"""
Leaderboard windows, metrics and ranking.

Value series per account are sampled USD portfolio values; from them:
aum = last, pnl = last − first, roi = pnl / first × 100, and max drawdown
over a non-decreasing running peak. Ranking is a stable sort over a closed
set of metrics, each mapped to its item accessor.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Sequence

from backend_portfolio.analytics.pnl import PnlResult
from backend_portfolio.core.exceptions import InvalidParameterError

DEFAULT_PAGE_LIMIT = 18
MAX_PAGE_LIMIT = 50


class LeaderboardWindow(str, Enum):
    D7 = "7d"
    D30 = "30d"
    ALL = "all"


@dataclass(frozen=True)
class WindowSpec:
    days: int
    points: int


# "all" is sampled over the last 365 days; its pnl/roi come from lifetime PnL.
WINDOW_SPECS: dict[LeaderboardWindow, WindowSpec] = {
    LeaderboardWindow.D7: WindowSpec(days=7, points=8),
    LeaderboardWindow.D30: WindowSpec(days=30, points=12),
    LeaderboardWindow.ALL: WindowSpec(days=365, points=24),
}


class SortMetric(str, Enum):
    PNL = "pnl"
    ROI = "roi"
    MDD = "mdd"
    AUM = "aum"


class SortDirection(str, Enum):
    ASC = "ASC"
    DESC = "DESC"


@dataclass
class LeaderboardItem:
    """One ranked account."""

    address: str
    aum_usd: float
    pnl_usd: float
    roi_pct: float
    mdd_pct: float
    chain_name: str | None = None
    buy_count: int = 0
    sell_count: int = 0
    created_tokens_count: int = 0
    owned_trends_count: int = 0
    portfolio_value_usd_sparkline: list[tuple[int, float]] = field(default_factory=list)
    """[(timestamp_ms, usd_value)] chronological."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "chain_name": self.chain_name,
            "aum_usd": self.aum_usd,
            "pnl_usd": self.pnl_usd,
            "roi_pct": self.roi_pct,
            "mdd_pct": self.mdd_pct,
            "buy_count": self.buy_count,
            "sell_count": self.sell_count,
            "created_tokens_count": self.created_tokens_count,
            "owned_trends_count": self.owned_trends_count,
            "portfolio_value_usd_sparkline": [[ts, v] for ts, v in self.portfolio_value_usd_sparkline],
        }


@dataclass
class LeaderboardPage:
    items: list[LeaderboardItem]
    total_candidates: int
    """Ranked items after the min-AUM filter, before pagination."""
    page: int
    limit: int


METRIC_VALUE: dict[SortMetric, Callable[[LeaderboardItem], float]] = {
    SortMetric.PNL: lambda i: i.pnl_usd,
    SortMetric.ROI: lambda i: i.roi_pct,
    SortMetric.MDD: lambda i: i.mdd_pct,
    SortMetric.AUM: lambda i: i.aum_usd,
}


def parse_window(value: str | LeaderboardWindow) -> LeaderboardWindow:
    try:
        return LeaderboardWindow(value)
    except ValueError as e:
        raise InvalidParameterError(f"Unknown leaderboard window: {value!r}") from e


def parse_metric(value: str | SortMetric) -> SortMetric:
    try:
        return SortMetric(value)
    except ValueError as e:
        raise InvalidParameterError(f"Unknown sort metric: {value!r}") from e


def parse_direction(value: str | SortDirection | None, metric: SortMetric) -> SortDirection:
    """Explicit direction, else ASC for drawdown and DESC for everything else."""
    if value is None:
        return SortDirection.ASC if metric is SortMetric.MDD else SortDirection.DESC
    try:
        return SortDirection(str(value).upper())
    except ValueError as e:
        raise InvalidParameterError(f"Unknown sort direction: {value!r}") from e


def sample_timestamps(start_ms: int, end_ms: int, points: int) -> list[int]:
    """points evenly spaced timestamps from start to end inclusive."""
    duration = max(end_ms - start_ms, 1)
    if points <= 1:
        return [int(end_ms)]
    return [int(start_ms + duration * i / (points - 1)) for i in range(points)]


def max_drawdown_pct(values: Sequence[float]) -> float:
    """Largest (peak − v) / peak over the series, in percent; 0 for flat or empty series."""
    peak = float("-inf")
    worst = 0.0
    for v in values:
        peak = max(peak, v)
        if peak > 0:
            worst = max(worst, (peak - v) / peak)
    return worst * 100


@dataclass
class WindowMetrics:
    aum_usd: float
    pnl_usd: float
    roi_pct: float
    mdd_pct: float


def window_metrics(
    series: Sequence[tuple[int, float]],
    window: LeaderboardWindow,
    lifetime: PnlResult | None = None,
) -> WindowMetrics:
    """
    Metrics from a chronological value series.

    For the "all" window, pnl and roi come from the lifetime PnL (gain over
    invested in USD, else AE) instead of the sampled endpoints.
    """
    values = [v for _, v in series]
    first = values[0] if values else 0.0
    last = values[-1] if values else 0.0
    pnl = last - first
    roi = (pnl / first) * 100 if first > 0 else 0.0
    if window is LeaderboardWindow.ALL and lifetime is not None:
        pnl = lifetime.total_gain.usd
        if lifetime.total_invested.usd > 0:
            roi = lifetime.total_gain.usd / lifetime.total_invested.usd * 100
        elif lifetime.total_invested.ae > 0:
            roi = lifetime.total_gain.ae / lifetime.total_invested.ae * 100
        else:
            roi = 0.0
    return WindowMetrics(aum_usd=last, pnl_usd=pnl, roi_pct=roi, mdd_pct=max_drawdown_pct(values))


def rank(
    items: Sequence[LeaderboardItem],
    metric: SortMetric,
    direction: SortDirection,
    min_aum_usd: float = 0.0,
) -> list[LeaderboardItem]:
    """Drop items below min AUM, then stable-sort by metric (equal values keep input order)."""
    kept = [i for i in items if i.aum_usd >= min_aum_usd]
    return sorted(kept, key=METRIC_VALUE[metric], reverse=direction is SortDirection.DESC)


def clamp_paging(page: int | None, limit: int | None) -> tuple[int, int]:
    page = max(1, int(page or 1))
    limit = max(1, min(int(limit or DEFAULT_PAGE_LIMIT), MAX_PAGE_LIMIT))
    return page, limit


def paginate(ranked: Sequence[LeaderboardItem], page: int | None, limit: int | None) -> LeaderboardPage:
    page, limit = clamp_paging(page, limit)
    start = (page - 1) * limit
    return LeaderboardPage(
        items=list(ranked[start : start + limit]),
        total_candidates=len(ranked),
        page=page,
        limit=limit,
    )
