"""
Sentry error monitoring for the API and the Celery workers.

Nothing that could unlock elevated access may leave the process: promotion
codes, their Fernet ciphertext, keys and session cookies are replaced with
``[REDACTED]`` in every event, wherever they are nested.
"""

import logging

import sentry_sdk
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from academic_portal.core.config import settings

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

# Substring match on the lowercased key, so camelCase and prefixed keys are caught too
SENSITIVE_KEY_PARTS = (
    "promotion_code",
    "promotioncode",
    "password",
    "secret",
    "api_key",
    "encryption_key",
    "session",
    "cookie",
    "csrf",
)

EVENT_SECTIONS = ("extra", "contexts", "request")


def init_sentry() -> None:
    """No-op unless SENTRY_DSN is set."""
    if not settings.SENTRY_DSN:
        logger.info("SENTRY_DSN not set, error monitoring disabled")
        return

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        release=f"academic-portal@{settings.APP_VERSION}",
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            CeleryIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        traces_sample_rate=0.1 if settings.is_production else 1.0,
        send_default_pii=False,
        before_send=filter_sensitive_data,
    )
    logger.info(f"Sentry enabled for {settings.ENVIRONMENT}")


def _is_sensitive(key) -> bool:
    lowered = str(key).lower()
    return any(part in lowered for part in SENSITIVE_KEY_PARTS)


def redact(obj):
    """Blank sensitive values in nested dicts and lists, in place. Returns obj."""
    if isinstance(obj, dict):
        for key, value in obj.items():
            obj[key] = REDACTED if _is_sensitive(key) else redact(value)
    elif isinstance(obj, list):
        for item in obj:
            redact(item)
    return obj


def filter_sensitive_data(event, hint):
    """``before_send`` hook."""
    for section in EVENT_SECTIONS:
        if event.get(section):
            redact(event[section])

    crumbs = event.get("breadcrumbs") or {}
    for crumb in crumbs.get("values", []) if isinstance(crumbs, dict) else []:
        redact(crumb.get("data") or {})

    return event


def capture_business_error(error: Exception, context: dict, level: str = "error") -> None:
    """
    Report a handled failure, such as a scheduled task giving up.

    The context is redacted on a copy before it reaches the log or Sentry.
    """
    safe_context = redact(dict(context))
    sentry_sdk.capture_exception(error, level=level, extras=safe_context)
    logger.error(f"{context.get('operation', 'operation')} failed: {error}", extra=safe_context, exc_info=True)
