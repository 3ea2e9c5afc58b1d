"""
Application settings and environment configuration.

Typed, frozen settings for the resolver, the leaderboard fan-out and the
refresh scheduler. Every field has a default and an env override.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

from backend_portfolio.config.env import (
    get_coingecko_api_key,
    get_database_url,
    get_db_path,
    get_middleware_url,
    get_node_url,
    load_portfolio_env,
)


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    return float(raw) if raw else default


@dataclass(frozen=True)
class ResolverSettings:
    cache_ttl_sec: float = 300.0
    median_sample_blocks: int = 33
    precise_window_hours: float = 48.0
    recent_half_window: int = 40
    distant_half_window: int = 240


@dataclass(frozen=True)
class LeaderboardSettings:
    concurrency: int = 8
    request_deadline_sec: float = 8.0
    request_max_candidates: int = 36
    scheduled_max_candidates: int = 100
    refresh_interval_sec: float = 600.0
    default_min_aum_usd: float = 1.0


@dataclass(frozen=True)
class Settings:
    middleware_url: str
    node_url: str
    db_path: Path
    database_url: str
    coingecko_api_key: str = ""
    http_timeout_sec: float = 15.0
    resolver: ResolverSettings = field(default_factory=ResolverSettings)
    leaderboard: LeaderboardSettings = field(default_factory=LeaderboardSettings)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Return the current application settings (cached for the process).

    Env overrides: HTTP_TIMEOUT_SEC, BLOCK_CACHE_TTL_SEC, LEADERBOARD_CONCURRENCY,
    LEADERBOARD_DEADLINE_SEC, LEADERBOARD_MAX_CANDIDATES,
    LEADERBOARD_SCHEDULED_MAX_CANDIDATES, LEADERBOARD_REFRESH_INTERVAL_SEC.
    """
    load_portfolio_env()
    resolver = ResolverSettings(
        cache_ttl_sec=_env_float("BLOCK_CACHE_TTL_SEC", ResolverSettings.cache_ttl_sec),
    )
    leaderboard = LeaderboardSettings(
        concurrency=_env_int("LEADERBOARD_CONCURRENCY", LeaderboardSettings.concurrency),
        request_deadline_sec=_env_float("LEADERBOARD_DEADLINE_SEC", LeaderboardSettings.request_deadline_sec),
        request_max_candidates=_env_int("LEADERBOARD_MAX_CANDIDATES", LeaderboardSettings.request_max_candidates),
        scheduled_max_candidates=_env_int(
            "LEADERBOARD_SCHEDULED_MAX_CANDIDATES", LeaderboardSettings.scheduled_max_candidates
        ),
        refresh_interval_sec=_env_float(
            "LEADERBOARD_REFRESH_INTERVAL_SEC", LeaderboardSettings.refresh_interval_sec
        ),
    )
    return Settings(
        middleware_url=get_middleware_url(),
        node_url=get_node_url(),
        db_path=get_db_path(),
        database_url=get_database_url(),
        coingecko_api_key=get_coingecko_api_key(),
        http_timeout_sec=_env_float("HTTP_TIMEOUT_SEC", 15.0),
        resolver=resolver,
        leaderboard=leaderboard,
    )
