"""
Sentry error reporting for the API, the database layer and Celery workers.
"""
import sentry_sdk
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from newsletter.config import settings
from newsletter.obs.errors import AuthenticationError, ValidationError
from newsletter.obs.logging import PIIRedactor, get_logger

logger = get_logger(__name__)
_redactor = PIIRedactor(enabled=True)

# Client mistakes are answered with 4xx and are not worth an alert
IGNORED_EXCEPTIONS = (ValidationError, AuthenticationError)


def setup_sentry() -> bool:
    """Initialize the SDK when SENTRY_DSN is set. Returns whether it was enabled."""
    if not settings.SENTRY_DSN:
        logger.info("SENTRY_DSN not configured, error reporting disabled")
        return False

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            CeleryIntegration(),
        ],
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        before_send=before_send_event,
        send_default_pii=False,
    )
    logger.info(f"Sentry error reporting enabled for {settings.ENVIRONMENT}")
    return True


def before_send_event(event, hint):
    """Drop client errors and mask subscriber addresses in what remains."""
    exc_info = (hint or {}).get("exc_info")
    if exc_info and isinstance(exc_info[1], IGNORED_EXCEPTIONS):
        return None

    for exception in event.get("exception", {}).get("values", []):
        if exception.get("value"):
            exception["value"] = _redactor.redact(exception["value"])

    for breadcrumb in event.get("breadcrumbs", {}).get("values", []):
        if breadcrumb.get("message"):
            breadcrumb["message"] = _redactor.redact(breadcrumb["message"])

    return event
