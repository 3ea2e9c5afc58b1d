"""
Environment variable loading for Backend Portfolio.

- AE_NETWORK: mainnet | testnet (default: mainnet)
- MIDDLEWARE_URL: chain indexer (middleware) base URL; network default otherwise
- NODE_URL: node API base URL used for live account balances
- COINGECKO_API_KEY: optional demo key for the rate source
- DB_PATH: SQLite ledger file
- DATABASE_URL / PORTFOLIO_DB_URL: SQLAlchemy URL for leaderboard snapshots
- Loads .env from project root when available.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

# Project root: config is backend_portfolio/config/, root is 2 levels up
_CONFIG_DIR = Path(__file__).resolve().parent
_BACKEND_DIR = _CONFIG_DIR.parent
_ROOT = _BACKEND_DIR.parent
_ENV_PATH = _ROOT / ".env"

MAINNET_MIDDLEWARE_URL = "https://mainnet.aeternity.io/mdw"
TESTNET_MIDDLEWARE_URL = "https://testnet.aeternity.io/mdw"
MAINNET_NODE_URL = "https://mainnet.aeternity.io"
TESTNET_NODE_URL = "https://testnet.aeternity.io"

DEFAULT_DB_PATH = "portfolio.db"


def load_portfolio_env() -> None:
    """Load .env from project root. Safe to call multiple times."""
    load_dotenv(_ENV_PATH)


def get_network() -> str:
    """
    Return AE_NETWORK from env: mainnet | testnet.
    Default: mainnet.
    """
    load_portfolio_env()
    raw = (os.getenv("AE_NETWORK") or "mainnet").strip().lower()
    return "testnet" if raw in ("testnet", "uat") else "mainnet"


def get_middleware_url() -> str:
    """
    Resolve the chain middleware URL.
    Order: MIDDLEWARE_URL > network default.
    """
    load_portfolio_env()
    url = (os.getenv("MIDDLEWARE_URL") or "").strip()
    if url:
        return url.rstrip("/")
    return TESTNET_MIDDLEWARE_URL if get_network() == "testnet" else MAINNET_MIDDLEWARE_URL


def get_node_url() -> str:
    """Resolve the node URL: NODE_URL > network default."""
    load_portfolio_env()
    url = (os.getenv("NODE_URL") or "").strip()
    if url:
        return url.rstrip("/")
    return TESTNET_NODE_URL if get_network() == "testnet" else MAINNET_NODE_URL


def get_coingecko_api_key() -> str:
    load_portfolio_env()
    return (os.getenv("COINGECKO_API_KEY") or "").strip()


def get_db_path() -> Path:
    """SQLite ledger path (DB_PATH env, default portfolio.db in cwd)."""
    load_portfolio_env()
    return Path((os.getenv("DB_PATH") or DEFAULT_DB_PATH).strip() or DEFAULT_DB_PATH)


def get_database_url() -> str:
    """Return PORTFOLIO_DB_URL or DATABASE_URL if set; else SQLite URL built from DB_PATH."""
    load_portfolio_env()
    url = (os.getenv("PORTFOLIO_DB_URL") or os.getenv("DATABASE_URL") or "").strip()
    if url:
        return url
    return f"sqlite:///{get_db_path()}"
