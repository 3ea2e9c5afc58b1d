"""
API server package: HTTP interface over the portfolio analytics engine.

Exposes account PnL, portfolio history and the trading leaderboard;
delegates to the analytics and leaderboard layers for data.
"""
