"""Display-currency rates for the native coin."""

from backend_portfolio.pricing.coingecko import CoinGeckoClient, RateSource, rate_at

__all__ = ["CoinGeckoClient", "RateSource", "rate_at"]
