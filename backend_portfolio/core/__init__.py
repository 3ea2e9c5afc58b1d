"""
Core utilities: exceptions and cross-cutting helpers shared by the chain,
ledger, analytics and leaderboard packages.
"""

from backend_portfolio.core.exceptions import (
    BlockNotFoundError,
    ChainDataError,
    InvalidParameterError,
    LedgerStoreError,
    PortfolioEngineError,
    RateSourceError,
)

__all__ = [
    "BlockNotFoundError",
    "ChainDataError",
    "InvalidParameterError",
    "LedgerStoreError",
    "PortfolioEngineError",
    "RateSourceError",
]
