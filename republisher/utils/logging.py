"""Structured logging configuration.

All modules log through structlog with an event name first and context as
keyword arguments:

    log = get_logger(__name__)
    log.info("video_posted", video_id=str(video_id), user_id=str(user_id))

``configure_logging()`` is called once by each process entry point (worker,
API). JSON output is the default for log aggregation; set ``LOG_JSON=false``
for human-readable console output during local development.
"""

import logging
import os
import sys
from typing import Any

import structlog


def configure_logging(level: str | None = None, json_output: bool | None = None) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Log level name (defaults to LOG_LEVEL env var, then INFO).
        json_output: Render JSON lines (defaults to LOG_JSON env var, then True).
    """
    level_name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    log_level = getattr(logging, level_name, logging.INFO)
    if json_output is None:
        json_output = os.getenv("LOG_JSON", "true").lower() != "false"

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    renderer: Any = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> Any:
    """Get a structlog logger bound to the given module name.

    Args:
        name: Module name (typically __name__)

    Returns:
        structlog BoundLogger
    """
    return structlog.get_logger(name)
