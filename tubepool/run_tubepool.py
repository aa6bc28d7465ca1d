#!/usr/bin/env python3
"""Runner script for the tubepool service."""

import logging
import warnings

# Suppress ResourceWarning about unclosed transports during shutdown
warnings.filterwarnings("ignore", category=ResourceWarning, message="unclosed transport")

from tubepool.src.api import create_app, load_config, server_address
import uvicorn

from shared.logging import configure_logging, get_logger

log = get_logger("tubepool", "run_tubepool")


class PollingFilter(logging.Filter):
    """Filter out health check, status polling and activity endpoint logs."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        if "/health" in message or "/api/summary/status" in message or "/activity" in message:
            return False
        return True


def run(config: dict):
    """Configure logging and serve the app until interrupted."""
    logging_config = config.get("logging", {})
    configure_logging(logging_config.get("level", "INFO"), logging_config.get("file"))

    host, port = server_address(config)

    print(f"\n  Tubepool Service")
    print(f"  ================")
    print(f"  Running on http://{host}:{port}")
    print(f"  Press Ctrl+C to stop\n")

    logging.getLogger("uvicorn.access").addFilter(PollingFilter())

    log.info("tubepool.runner.start", host=host, port=port)
    app = create_app(config)
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    run(load_config())
