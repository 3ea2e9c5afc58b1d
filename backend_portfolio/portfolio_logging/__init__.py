"""
Structured logging for the engine (structlog).
"""

from backend_portfolio.portfolio_logging.logger import bind_address, configure_logging, get_logger

__all__ = ["bind_address", "configure_logging", "get_logger"]
