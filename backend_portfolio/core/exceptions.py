"""
Application-level exceptions.

Upstream failures (chain middleware, ledger store) propagate to the
immediate caller as these types; the leaderboard fan-out turns them into
skipped candidates and the API layer into HTTP errors.
"""

from __future__ import annotations


class PortfolioEngineError(Exception):
    """Base class for engine errors."""


class ChainDataError(PortfolioEngineError):
    """Chain middleware / node request failed or returned an unusable payload."""


class BlockNotFoundError(ChainDataError):
    """Requested block height does not exist (e.g. beyond the tip)."""

    def __init__(self, height: int, detail: str = "") -> None:
        self.height = height
        super().__init__(f"Height {height} not found{': ' + detail if detail else ''}")


class LedgerStoreError(PortfolioEngineError):
    """Ledger store read/write failed."""


class InvalidParameterError(PortfolioEngineError, ValueError):
    """Caller supplied an unusable parameter (window, metric, interval, ...)."""


class RateSourceError(PortfolioEngineError):
    """Display-currency rate provider failed or returned an unusable payload."""
