"""Logging configuration using structlog.

Both the CLI and the scoring daemon log through structlog. Work on a single
source unit runs inside ``unit_context(path)`` so every event emitted while
scanning or confirming that unit carries ``unit=<path>``, whichever worker
thread it runs on.
"""

import logging
import sys
from contextlib import AbstractContextManager
from typing import Any, TextIO

import structlog


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    stream: TextIO | None = None,
) -> None:
    """Configure structlog for resemble.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format ("json" for JSON lines, "console" for human-readable)
        stream: Destination; stderr by default since the CLI prints results
            to stdout. The daemon passes stdout, which the supervisor
            redirects to its log file.
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=stream or sys.stderr,
        level=numeric_level,
    )

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if log_format == "console":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.extend([
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def unit_context(path: str) -> AbstractContextManager[None]:
    """Tag log events in the current thread with the unit being processed."""
    return structlog.contextvars.bound_contextvars(unit=path)
