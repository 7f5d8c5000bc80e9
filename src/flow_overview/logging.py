"""Logging configuration for the overview worker.

Everything logs through structlog.  Events are snake_case names with
key/value context; the job runner and scheduler bind ``job_id`` and
``user_id`` as contextvars, so every line of a cycle carries them.
"""

import logging
import sys
from typing import Any

import structlog

from flow_overview.config import get_settings

# Client libraries that log every request at INFO/DEBUG.
_NOISY_LOGGERS = ("httpx", "httpcore", "asyncpg", "google_genai")


def _processors(development: bool) -> list[Any]:
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if development:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        # JSON lines need the traceback as a string field.
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    return processors


def setup_logging(level: str | None = None) -> None:
    """Configure structlog and stdlib logging.

    Args:
        level: Overrides ``Settings.log_level`` when given.
    """
    settings = get_settings()
    level_name = (level or settings.log_level).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    structlog.configure(
        processors=_processors(settings.is_development),
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Third-party packages log through the stdlib.
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
