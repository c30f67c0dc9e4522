"""Break-glass notification emails."""

import logging

from academic_portal.core.alerting import send_admin_alert
from academic_portal.core.config import settings
from academic_portal.core.email_service import render_email_template, send_email
from academic_portal.models.break_glass import BreakGlassSession

logger = logging.getLogger(__name__)


async def send_break_glass_code_email(
    activator: dict,
    subject: dict,
    session: BreakGlassSession,
    promotion_code: str,
) -> bool:
    """
    Email the one-time promotion code to whoever activated the override.

    Signature matches the engine's notifier hook.

    Returns:
        True if email sent successfully
    """
    recipient = activator.get("email")
    if not recipient:
        logger.warning("Break-glass activator has no email; promotion code not sent",
                       extra={"session_id": str(session.id)})
        return False

    html_body, text_body = render_email_template(
        "break_glass_code.html",
        {
            "app_name": settings.APP_NAME,
            "portal_url": settings.APP_URL,
            "recipient_name": activator.get("name") or recipient,
            "subject_name": subject.get("name") or subject.get("email"),
            "subject_email": subject.get("email"),
            "reason": session.reason,
            "expires_at": session.expires_at.strftime("%Y-%m-%d %H:%M") if session.expires_at else None,
            "promotion_code": promotion_code,
        },
    )

    success = await send_email(
        to=recipient,
        subject=f"{settings.APP_NAME}: Break-glass override activated",
        html_body=html_body,
        text_body=text_body,
        tag="break-glass-code",
    )
    if not success:
        logger.warning("Break-glass promotion code email not delivered",
                       extra={"session_id": str(session.id)})
    return success


async def notify_break_glass_activation(
    activator: dict,
    subject: dict,
    session: BreakGlassSession,
    promotion_code: str,
) -> None:
    """Engine notifier: code email to the activator plus an admin alert."""
    await send_break_glass_code_email(activator, subject, session, promotion_code)

    await send_admin_alert(
        title="Break-glass override activated",
        message=(
            f"{activator.get('name') or activator.get('email')} activated a break-glass "
            f"override for {subject.get('name') or subject.get('email')}.\n\n"
            f"Reason: {session.reason}\n"
            f"Expires: {session.expires_at.isoformat() if session.expires_at else 'never'}"
        ),
        severity="HIGH",
        extra_data={
            "session_id": str(session.id),
            "subject_user_id": str(session.subject_user_id),
            "activated_by_user_id": str(session.activated_by_user_id),
        },
    )
