"""
Admin alerts for privileged-access events.

Every break-glass activation raises one alert: a warning log line, a Sentry
message and an email to ``ADMIN_EMAIL``. Alerts carry ids and reasons only;
promotion codes go to the activator alone.
"""

import logging
from datetime import datetime
from typing import Optional

import redis
import sentry_sdk
from markupsafe import escape

from academic_portal.core.config import settings
from academic_portal.core.email_service import send_email

logger = logging.getLogger(__name__)

SENTRY_LEVELS = {
    "CRITICAL": "error",
    "HIGH": "error",
    "MEDIUM": "warning",
    "LOW": "info",
}


def _get_sentry_level(severity: str) -> str:
    return SENTRY_LEVELS.get(severity, "warning")


def _is_rate_limited(title: str, rate_limit_seconds: int) -> bool:
    """
    Claim the alert slot for ``title`` in Redis.

    SET NX makes the check and the claim one step, so two workers racing on
    the same alert send it once. Redis being down never suppresses an alert.
    """
    if rate_limit_seconds <= 0:
        return False

    try:
        client = redis.from_url(settings.CELERY_BROKER_URL, socket_connect_timeout=2)
        try:
            claimed = client.set(f"admin_alert:{title}", "1", nx=True, ex=rate_limit_seconds)
        finally:
            client.close()
    except Exception as e:
        logger.warning(f"Alert rate limit unavailable, sending anyway: {e}")
        return False

    return not claimed


async def send_admin_alert(
    title: str,
    message: str,
    severity: str = "MEDIUM",
    extra_data: Optional[dict] = None,
    rate_limit_seconds: int = 0,
) -> bool:
    """
    Raise an admin alert.

    Args:
        title: Short subject, also the rate-limit key
        message: Human-readable details
        severity: CRITICAL, HIGH, MEDIUM or LOW
        extra_data: Ids to attach to the log record, Sentry event and email
        rate_limit_seconds: Suppress repeats of ``title`` inside this window (0 = never)

    Returns:
        True if the email went out
    """
    if _is_rate_limited(title, rate_limit_seconds):
        logger.info(f"Alert '{title}' suppressed, already sent in the last {rate_limit_seconds}s")
        return False

    # 'message' is reserved on LogRecord, hence alert_message
    context = {
        "timestamp": datetime.utcnow().isoformat(),
        "severity": severity,
        "title": title,
        "alert_message": message,
        "environment": settings.ENVIRONMENT,
        "extra_data": extra_data or {},
    }
    headline = f"[{severity}] {title}"

    logger.warning(headline, extra=context)
    sentry_sdk.capture_message(headline, level=_get_sentry_level(severity), extras=context)

    if not settings.ADMIN_EMAIL:
        logger.error("ADMIN_EMAIL is not set, admin alert not emailed")
        return False

    text_body = _alert_text(headline, message, context)
    sent = await send_email(
        to=settings.ADMIN_EMAIL,
        subject=headline,
        html_body=f"<pre>{escape(text_body)}</pre>",
        text_body=text_body,
        tag="admin-alert",
    )
    if not sent:
        logger.error(f"Admin alert email failed: {title}")
    return sent


def _alert_text(headline: str, message: str, context: dict) -> str:
    lines = [headline, "", message, "", "---"]
    lines += [f"{key}: {value}" for key, value in context["extra_data"].items()]
    lines += [
        f"environment: {context['environment']}",
        f"raised at: {context['timestamp']} UTC",
        "",
        f"Sent by {settings.APP_NAME} when privileged access changes.",
    ]
    return "\n".join(lines)
