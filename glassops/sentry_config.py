"""
Sentry configuration for error tracking.

Captures unhandled exceptions and dead-lettered work with transaction context.
"""
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from glassops.config import settings
from glassops.logging_config import get_logger

log = get_logger(component="sentry")


def configure_sentry():
    """
    Initialize Sentry with FastAPI and SQLAlchemy integrations.

    Requires SENTRY_DSN environment variable to be set.
    """
    dsn = settings.SENTRY_DSN

    if not dsn:
        log.warning("sentry_disabled", reason="SENTRY_DSN not set")
        return

    sentry_sdk.init(
        dsn=dsn,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
        ],
        before_send=add_context,
        # Sample rate: capture 10% of transactions for performance monitoring
        traces_sample_rate=0.1,
        environment=settings.ENVIRONMENT,
        release=settings.APP_VERSION,
    )

    log.info("sentry_initialized", environment=settings.ENVIRONMENT)


def add_context(event, hint):
    """
    Tag error events with the service-request identifiers found in extras.

    Makes it possible to search Sentry by transaction or job request.
    """
    extra = event.get("extra") or {}
    tags = event.setdefault("tags", {})
    for key in ("transaction_id", "job_request_id", "retry_entry_id"):
        if extra.get(key) is not None:
            tags[key] = str(extra[key])
    return event


def capture_exception(exc_info=None, **extras):
    """
    Capture an exception to Sentry.

    Usage:
        try:
            ...
        except Exception as exc:
            capture_exception(exc, transaction_id=txn_id)
    """
    if sentry_sdk.get_client().is_active():
        with sentry_sdk.new_scope() as scope:
            for key, value in extras.items():
                scope.set_extra(key, value)
            sentry_sdk.capture_exception(exc_info)


def capture_message(message, level="info", **extras):
    """
    Capture a message to Sentry.

    Usage:
        capture_message("Retry entry dead-lettered", level="error", retry_entry_id=7)
    """
    if sentry_sdk.get_client().is_active():
        with sentry_sdk.new_scope() as scope:
            for key, value in extras.items():
                scope.set_extra(key, value)
            sentry_sdk.capture_message(message, level=level)
