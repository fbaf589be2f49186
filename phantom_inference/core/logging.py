import sys
from typing import TextIO

import structlog

from phantom_inference.config import settings

_NAME_TO_LEVEL = {
    "debug": 10,
    "info": 20,
    "warning": 30,
    "warn": 30,
    "error": 40,
    "critical": 50,
}


def resolve_level(name: str | None) -> int:
    """Map a level name to its numeric value, defaulting to INFO."""
    return _NAME_TO_LEVEL.get((name or "").lower(), 20)


def configure_logging(
    level: str | None = None,
    log_format: str | None = None,
    stream: TextIO | None = None,
) -> None:
    """Configure structlog for the process.

    Falls back to the PHANTOM_LOG_LEVEL / PHANTOM_LOG_FORMAT settings when
    arguments are omitted. Events are written to `stream` (stdout by default).
    """
    log_format = (log_format or settings.phantom_log_format).lower()
    renderer = (
        structlog.dev.ConsoleRenderer(colors=False)
        if log_format == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            resolve_level(level or settings.phantom_log_level)
        ),
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stdout),
    )
