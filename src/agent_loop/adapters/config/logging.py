"""Structured logging configuration.

Modules log through ``structlog.get_logger(__name__)`` at import time;
``configure_logging`` decides where those events end up.
"""

import logging
import sys
from collections.abc import Callable, Sequence
from typing import Any

import structlog
from structlog.typing import EventDict, WrappedLogger

VALID_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

# Transport libraries that log every request through stdlib logging
CHATTY_LIBRARY_LOGGERS = ("httpx", "httpcore", "mcp")


def configure_logging(log_level: str = "WARNING", json_output: bool = False) -> None:
    """Configure structured logging.

    Log events go to stderr so they never interleave with conversation
    output printed on stdout. Loggers are not cached on first use, so
    module-level loggers created before this call pick up the new
    configuration.
    """
    normalized_level = log_level.upper()
    if normalized_level not in VALID_LEVELS:
        logging.warning(
            f"Invalid log level '{log_level}', defaulting to INFO. "
            f"Valid levels: {', '.join(sorted(VALID_LEVELS))}"
        )
        normalized_level = "INFO"
    level = getattr(logging, normalized_level)

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)
    for name in CHATTY_LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: Sequence[Callable[[WrappedLogger, str, EventDict], Any]]
    if json_output:
        processors = [
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="%H:%M:%S"),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
