"""
Portfolio analytics engine.

Reconstructs historical balances from the trade ledger, computes
average-cost PnL, and builds portfolio value histories.
Modules: ledger_replay, pnl, portfolio.
"""

from backend_portfolio.analytics.ledger_replay import (
    LedgerReplayer,
    native_balance_at,
    token_balance_at,
)
from backend_portfolio.analytics.pnl import CostBasisPnlCalculator, PnlResult, TokenPnl, compute_pnl
from backend_portfolio.analytics.portfolio import PortfolioSnapshot, PortfolioSnapshotBuilder

__all__ = [
    "CostBasisPnlCalculator",
    "LedgerReplayer",
    "PnlResult",
    "PortfolioSnapshot",
    "PortfolioSnapshotBuilder",
    "TokenPnl",
    "compute_pnl",
    "native_balance_at",
    "token_balance_at",
]
