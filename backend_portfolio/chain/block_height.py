"""
Timestamp → key-block height resolution.

resolve(target_ms) returns the greatest key-block height whose time is
<= the target. Chain tip and the median inter-block interval are cached
process-wide (TTL 5 min) and shared by all concurrent callers; a stale read
only costs extra probes.

Guess order: latest ledger entry at or before the target, then linear
extrapolation from the caller's previous height, then from the tip. The
guess window is verified to bracket the answer (and widened when it does
not) before binary search, so the result is exact for fixed chain data.

Precision: targets within 48 h of the tip resolve at millisecond precision;
older targets are advanced to the end of their UTC day, capped at the
48 h boundary so the adjusted target stays monotonic in the input.
"""

from __future__ import annotations

import asyncio
import statistics
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Generic, Protocol, TypeVar

from backend_portfolio.chain.models import BlockRef, ChainDataSource
from backend_portfolio.config.settings import ResolverSettings
from backend_portfolio.portfolio_logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_INTERVAL_MS = 180_000.0  # ~3 min key-block spacing
MAX_CORRECTION_STEPS = 64


@dataclass
class _CacheEntry(Generic[T]):
    value: T
    expires_at: float


# Process-wide caches keyed by chain source identity (middleware URL).
_TOP_CACHE: dict[str, _CacheEntry[BlockRef]] = {}
_MEDIAN_CACHE: dict[str, _CacheEntry[float]] = {}


def clear_block_caches() -> None:
    """Drop cached tip / median interval for every source."""
    _TOP_CACHE.clear()
    _MEDIAN_CACHE.clear()


class HeightGuessSource(Protocol):
    """Local ledger lookup: height of the latest entry at or before a time."""

    def get_latest_height_at_or_before(self, time_ms: int) -> int | None: ...


def median_interval(blocks: list[BlockRef]) -> float:
    """Median absolute gap between consecutive blocks; default when fewer than two."""
    gaps = [abs(a.time_ms - b.time_ms) for a, b in zip(blocks, blocks[1:])]
    if not gaps:
        return DEFAULT_INTERVAL_MS
    med = float(statistics.median(gaps))
    return med if med > 0 else DEFAULT_INTERVAL_MS


def end_of_utc_day(time_ms: int) -> int:
    day = datetime.fromtimestamp(time_ms / 1000, tz=timezone.utc).replace(
        hour=0, minute=0, second=0, microsecond=0
    )
    return int((day + timedelta(days=1)).timestamp() * 1000) - 1


def _source_key(source: Any) -> str:
    return str(getattr(source, "cache_key", None) or id(source))


class BlockHeightResolver:
    """Adaptive binary search over key blocks with cached tip/interval."""

    def __init__(
        self,
        source: ChainDataSource,
        *,
        ledger: HeightGuessSource | None = None,
        settings: ResolverSettings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._source = source
        self._ledger = ledger
        self._settings = settings or ResolverSettings()
        self._clock = clock
        self._key = _source_key(source)

    async def get_top(self) -> BlockRef:
        now = self._clock()
        entry = _TOP_CACHE.get(self._key)
        if entry is not None and entry.expires_at > now:
            return entry.value
        top = await self._source.get_top()
        _TOP_CACHE[self._key] = _CacheEntry(top, now + self._settings.cache_ttl_sec)
        return top

    async def get_median_interval_ms(self) -> float:
        now = self._clock()
        entry = _MEDIAN_CACHE.get(self._key)
        if entry is not None and entry.expires_at > now:
            return entry.value
        blocks = await self._source.list_recent_key_blocks(self._settings.median_sample_blocks)
        value = median_interval(blocks)
        _MEDIAN_CACHE[self._key] = _CacheEntry(value, now + self._settings.cache_ttl_sec)
        return value

    def adjust_target(self, target_ms: int, tip_time_ms: int) -> tuple[int, bool]:
        """Return (effective target, precise?) under the precision policy."""
        precise_span_ms = int(self._settings.precise_window_hours * 3600 * 1000)
        if tip_time_ms - target_ms <= precise_span_ms:
            return target_ms, True
        cutoff = tip_time_ms - precise_span_ms
        return min(end_of_utc_day(target_ms), cutoff), False

    async def _ledger_guess(self, target_ms: int) -> int | None:
        if self._ledger is None:
            return None
        try:
            h = await asyncio.to_thread(self._ledger.get_latest_height_at_or_before, target_ms)
        except Exception as e:
            # Ledger is only an accelerator; the search still yields the exact answer.
            logger.warning("block_height_ledger_guess_failed", target_ms=target_ms, error=str(e))
            return None
        return int(h) if h else None

    async def _guess(self, target_ms: int, top: BlockRef, previous_height: int | None) -> tuple[int, str]:
        guess = await self._ledger_guess(target_ms)
        if guess:
            return guess, "ledger"
        interval_ms = await self.get_median_interval_ms()
        if previous_height:
            prev_time_est = top.time_ms - (top.height - previous_height) * interval_ms
            return previous_height + int((target_ms - prev_time_est) // interval_ms), "previous_height"
        delta = max(0, int((top.time_ms - target_ms) // interval_ms))
        return max(1, top.height - delta), "tip"

    async def resolve(self, target_ms: int, previous_height: int | None = None) -> int:
        """
        Greatest key-block height whose time <= target_ms (after precision policy).

        previous_height: height resolved for the caller's previous (earlier)
        sample; only used to seed the guess.
        """
        top = await self.get_top()
        target, precise = self.adjust_target(int(target_ms), top.time_ms)
        if target >= top.time_ms:
            return top.height

        guess, guess_source = await self._guess(target, top, previous_height)
        half = self._settings.recent_half_window if precise else self._settings.distant_half_window

        probes: dict[int, int] = {top.height: top.time_ms}

        async def time_at(height: int) -> int:
            if height not in probes:
                probes[height] = (await self._source.get_key_block(height)).time_ms
            return probes[height]

        low = max(1, min(top.height, guess - half))
        high = max(1, min(top.height, guess + half))
        if low > high:
            low, high = high, low

        # Bracket: time(low) <= target (or low == 1) and time(high) > target.
        span = half
        while low > 1 and await time_at(low) > target:
            high = low - 1
            span *= 2
            low = max(1, low - span)
        while high < top.height and await time_at(high) <= target:
            low = high
            span *= 2
            high = min(top.height, high + span)

        while low < high:
            mid = (low + high + 1) // 2
            if await time_at(mid) <= target:
                low = mid
            else:
                high = mid - 1

        corrections = 0
        low_time = (await self._source.get_key_block(low)).time_ms
        while low > 1 and low_time > target and corrections < MAX_CORRECTION_STEPS:
            corrections += 1
            low -= 1
            low_time = (await self._source.get_key_block(low)).time_ms

        logger.debug(
            "block_height_resolved",
            target_ms=target_ms,
            effective_target_ms=target,
            precise=precise,
            height=low,
            guess=guess,
            guess_source=guess_source,
            probes=len(probes),
            corrections=corrections,
        )
        return low
