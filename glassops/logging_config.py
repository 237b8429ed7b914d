"""
Structured logging configuration using structlog.

API and worker processes log JSON lines. Every entry carries the context
bound for the current request or task (request_id, transaction_id,
retry_entry_id, job_request_id) through structlog contextvars.
"""
import logging
import sys

import structlog

from glassops.config import settings


def _level() -> int:
    level = logging.getLevelName(settings.LOG_LEVEL.upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging():
    """Route stdlib and structlog output to stdout at LOG_LEVEL."""
    level = _level()

    # uvicorn, arq and sqlalchemy log through the stdlib
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    if settings.LOG_FORMAT == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger()


logger = configure_logging()


def get_logger(**context):
    """
    Logger with component-level context bound.

    Usage:
        log = get_logger(component="retry_queue")
        log.info("retry_scheduled", transaction_id=transaction_id, delay_seconds=60)
    """
    return logger.bind(**context)


def bind_context(**context) -> None:
    """Attach context to every entry logged by the current request or task."""
    structlog.contextvars.bind_contextvars(**context)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
