"""
Main entrypoint: FastAPI server with the leaderboard refresh loop.

The refresh loop runs inside the API's lifespan (disable with
LEADERBOARD_SCHEDULER_ENABLED=0); the server runs in the main thread.

Env: MIDDLEWARE_URL, NODE_URL, DB_PATH, DATABASE_URL, COINGECKO_API_KEY, API_HOST, API_PORT, LOG_LEVEL.

API only: uvicorn backend_portfolio.api_server.app:app --host 0.0.0.0 --port 8000
"""

import os

# Configure structured JSON logging before other imports that may log
from backend_portfolio.portfolio_logging import get_logger

logger = get_logger("main")


def main() -> None:
    """Load config and run the FastAPI server."""
    from backend_portfolio.config import get_settings

    settings = get_settings()
    api_host = os.getenv("API_HOST", "0.0.0.0").strip()
    api_port = int(os.getenv("API_PORT", "8000").strip() or "8000")

    logger.info(
        "main_config_loaded",
        middleware_url=settings.middleware_url,
        db_path=str(settings.db_path),
        refresh_interval_sec=settings.leaderboard.refresh_interval_sec,
    )

    from backend_portfolio.api_server.app import app
    import uvicorn

    logger.info("main_server_starting", host=api_host, port=api_port)
    uvicorn.run(app, host=api_host, port=api_port, log_level=os.getenv("LOG_LEVEL", "info").lower())


if __name__ == "__main__":
    main()
