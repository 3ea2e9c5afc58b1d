"""
structlog setup for the engine.

Every record carries the event name (first positional argument), level,
logger name and a UTC ISO timestamp. LOG_FORMAT=json (default) renders one
JSON object per line with the name under event_type; anything else renders
for a terminal. LOG_LEVEL drops records below that level.

Imports nothing from backend_portfolio so any module can log at import time.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any, TextIO

import structlog


def _level_from_env() -> int:
    return getattr(logging, os.getenv("LOG_LEVEL", "INFO").strip().upper(), logging.INFO)


def configure_logging(log_format: str | None = None, level: int | None = None, stream: TextIO | None = None) -> None:
    """(Re)configure structlog; called once on import with env defaults and stdout."""
    fmt = (log_format or os.getenv("LOG_FORMAT", "json")).strip().lower()
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
        structlog.processors.format_exc_info,
    ]
    if fmt == "json":
        processors += [structlog.processors.EventRenamer("event_type"), structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level if level is not None else _level_from_env()),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stdout),
        cache_logger_on_first_use=True,
    )


if not structlog.is_configured():
    configure_logging()


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Logger for a module, with its name bound as `logger`.

        logger = get_logger(__name__)
        logger.info("leaderboard_window_refreshed", window="7d", rows=36)
    """
    return structlog.get_logger(name).bind(logger=name)


def bind_address(address: str) -> structlog.BoundLogger:
    """Request-scoped logger with the account address on every record."""
    return get_logger("backend_portfolio.api").bind(address=address)
