"""
Planner Command Server - Main entry point.

Starts the HTTP transport (FastAPI under uvicorn) in front of the command
router, idempotency guard and audit ledger.

Usage:
    python -m planner.command_server.main

Configuration is entirely via environment variables.
See config.py for command-processing settings and api/settings.py for
the HTTP bind address and CORS origins.

Invariants:
    - Configuration is validated before anything is started
    - Logging is configured before the first component logs

How to change safely:
    - Keep startup work in CommandServer.start(), not here
"""

from __future__ import annotations

import logging
import sys

import json_log_formatter
import uvicorn

from .api import Settings, create_app
from .config import ServerConfig
from .server import CommandServer

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    settings = Settings()
    app = create_app(server=CommandServer(config), settings=settings)

    logger.info("Listening", extra={"host": settings.host, "port": settings.port})
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
