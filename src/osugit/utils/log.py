"""Structured logging setup (structlog).

Every module logs through `get_logger(__name__)`; `setup_logging` is called by
the CLI before anything else runs, so log lines never reach stdout.
"""

import logging
import sys

import structlog


def setup_logging(level: str = "INFO"):
    """Configure structlog for readable, filterable console logs on stderr."""
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        # Module-level loggers must follow a later reconfiguration
        cache_logger_on_first_use=False,
    )


def get_logger(name: str):
    return structlog.get_logger(name)
