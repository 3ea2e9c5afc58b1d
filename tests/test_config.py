"""
Tests for environment-driven configuration.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from backend_portfolio.config import env
from backend_portfolio.config import settings as settings_module
from backend_portfolio.config.settings import get_settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "AE_NETWORK",
        "MIDDLEWARE_URL",
        "NODE_URL",
        "DB_PATH",
        "DATABASE_URL",
        "PORTFOLIO_DB_URL",
        "LEADERBOARD_CONCURRENCY",
        "LEADERBOARD_DEADLINE_SEC",
        "BLOCK_CACHE_TTL_SEC",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(env, "load_portfolio_env", lambda: None)
    monkeypatch.setattr(settings_module, "load_portfolio_env", lambda: None)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_network_defaults(monkeypatch):
    assert env.get_middleware_url() == env.MAINNET_MIDDLEWARE_URL
    monkeypatch.setenv("AE_NETWORK", "testnet")
    assert env.get_middleware_url() == env.TESTNET_MIDDLEWARE_URL
    assert env.get_node_url() == env.TESTNET_NODE_URL


def test_explicit_urls_win(monkeypatch):
    monkeypatch.setenv("MIDDLEWARE_URL", "http://localhost:4000/mdw/")
    monkeypatch.setenv("DB_PATH", "/tmp/ledger.db")
    assert env.get_middleware_url() == "http://localhost:4000/mdw"
    assert env.get_db_path() == Path("/tmp/ledger.db")
    assert env.get_database_url() == "sqlite:////tmp/ledger.db"
    monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db/portfolio")
    assert env.get_database_url() == "postgresql://u:p@db/portfolio"


def test_settings_env_overrides(monkeypatch):
    monkeypatch.setenv("LEADERBOARD_CONCURRENCY", "3")
    monkeypatch.setenv("LEADERBOARD_DEADLINE_SEC", "2.5")
    monkeypatch.setenv("BLOCK_CACHE_TTL_SEC", "60")
    settings = get_settings()
    assert settings.leaderboard.concurrency == 3
    assert settings.leaderboard.request_deadline_sec == 2.5
    assert settings.leaderboard.scheduled_max_candidates == 100
    assert settings.resolver.cache_ttl_sec == 60.0
    assert settings.resolver.precise_window_hours == 48.0
    assert get_settings() is settings
