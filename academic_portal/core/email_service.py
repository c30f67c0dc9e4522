"""
Outbound email through Postmark.

Used for the promotion-code email sent to whoever activates a break-glass
override and for admin alerts. ``send_email`` never raises: a failed send is
logged, reported to Sentry and returned as False, so a mail outage cannot
undo an activation that already committed.
"""

import asyncio
import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import html2text
import requests
import sentry_sdk
from jinja2 import Environment, FileSystemLoader, select_autoescape
from postmarker.core import PostmarkClient
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from academic_portal.core.config import settings

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "emails"

# Network-level failures are retried; Postmark API rejections are not
TRANSIENT_FAILURES = (requests.ConnectionError, requests.Timeout)

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


@lru_cache(maxsize=1)
def get_template_env() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=select_autoescape(["html", "xml"]),
    )


def render_email_template(template_name: str, data: Dict[str, Any]) -> Tuple[str, str]:
    """Render ``template_name`` and derive the plain-text part from the HTML."""
    html_body = get_template_env().get_template(template_name).render(**data)

    converter = html2text.HTML2Text()
    converter.ignore_images = True
    converter.body_width = 78
    return html_body, converter.handle(html_body)


def get_postmark_client() -> PostmarkClient:
    if not settings.POSTMARK_API_KEY:
        raise ValueError("POSTMARK_API_KEY is not set")
    return PostmarkClient(server_token=settings.POSTMARK_API_KEY)


def sanitize_email_header(value: str) -> str:
    """Strip CR, LF, NUL and other control characters so a header cannot be split."""
    return CONTROL_CHARS.sub("", value).strip()


def validate_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match(email))


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=8),
    retry=retry_if_exception_type(TRANSIENT_FAILURES),
    reraise=True,
)
def _deliver(client: PostmarkClient, **message) -> dict:
    return client.emails.send(**message)


def _send_sync(to: str, subject: str, html_body: str, text_body: str,
               from_email: Optional[str], tag: Optional[str]) -> bool:
    recipient = sanitize_email_header(to)
    if not validate_email(recipient):
        logger.warning(f"Email not sent, invalid recipient: {to!r}")
        return False

    try:
        response = _deliver(
            get_postmark_client(),
            From=sanitize_email_header(from_email or settings.POSTMARK_FROM_EMAIL),
            To=recipient,
            Subject=sanitize_email_header(subject),
            HtmlBody=html_body,
            TextBody=text_body,
            Tag=tag,
            TrackOpens=False,
        )
    except Exception as e:
        # Never log the body: it may hold a promotion code
        logger.error(f"Email to {recipient} failed: {e}", extra={"tag": tag})
        sentry_sdk.capture_exception(e)
        return False

    logger.info(f"Email sent to {recipient}", extra={"message_id": response.get("MessageID"), "tag": tag})
    return True


async def send_email(
    to: str,
    subject: str,
    html_body: str,
    text_body: str,
    from_email: Optional[str] = None,
    tag: Optional[str] = None,
) -> bool:
    """
    Send one transactional email.

    The Postmark client is synchronous, so delivery (including its retries)
    runs in a worker thread.

    Returns:
        True if Postmark accepted the message
    """
    return await asyncio.to_thread(_send_sync, to, subject, html_body, text_body, from_email, tag)
