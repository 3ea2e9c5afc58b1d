"""
Backend Portfolio: historical valuation and trading-performance analytics.

Reconstructs what an address's bonding-curve token portfolio was worth at
any past point by resolving timestamps to block heights and replaying the
append-only trade ledger, computes average-cost PnL, and ranks addresses on
windowed leaderboards (AUM, PnL, ROI, max drawdown).
"""

__version__ = "0.1.0"
