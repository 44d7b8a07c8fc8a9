#!/usr/bin/env python3
"""
Memobot - Entry point.

Starts the Telegram poller and optionally the FastAPI health server.
Workers are started separately with ``rq worker default low``.
"""
import logging
import threading

import uvicorn
from fastapi import FastAPI

from memobot.api.health import router as health_router
from memobot.bot.poller import run_polling
from memobot.config import settings
from memobot.logging_config import setup_logging

logger = logging.getLogger(__name__)


def create_api() -> FastAPI:
    """Create FastAPI application."""
    app = FastAPI(
        title="Memobot API",
        description="Health endpoints for the Memobot Telegram bot",
        version="2.0.0",
    )

    app.include_router(health_router)

    return app


def run_api_server() -> None:
    """Run the FastAPI server in a separate thread."""
    app = create_api()
    uvicorn.run(app, host="0.0.0.0", port=settings.API_PORT, log_level="info")


def main() -> None:
    """Main entry point."""
    setup_logging("Bot")
    logger.info("Starting Memobot...")
    logger.info(f"API enabled: {settings.API_ENABLED}")

    if settings.API_ENABLED:
        api_thread = threading.Thread(target=run_api_server, daemon=True)
        api_thread.start()
        logger.info(f"API server started on port {settings.API_PORT}")

    run_polling()


if __name__ == "__main__":
    main()
