"""
Tests for the structlog setup: import without cycles, JSON record shape.
"""

from __future__ import annotations

import io
import json
import logging

from backend_portfolio.portfolio_logging import bind_address, get_logger
from backend_portfolio.portfolio_logging.logger import configure_logging


def test_logging_import():
    logger = get_logger("test")
    for method in ("debug", "info", "warning", "error"):
        assert hasattr(logger, method)
    logger.info("test_message", key="value")


def test_json_record_shape():
    """event_type, level, logger, timestamp and bound keys land in one JSON line."""
    out = io.StringIO()
    configure_logging("json", level=logging.INFO, stream=out)
    try:
        bind_address("ak_test").info("portfolio_history_served", points=3)
    finally:
        configure_logging()

    record = json.loads(out.getvalue().strip().splitlines()[-1])
    assert record["event_type"] == "portfolio_history_served"
    assert record["address"] == "ak_test"
    assert record["points"] == 3
    assert record["level"] == "info"
    assert record["logger"] == "backend_portfolio.api"
    assert record["timestamp"].endswith("Z")
