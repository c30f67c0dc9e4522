"""
Portal sessions stored in the signed Starlette session cookie.

The cookie carries two keys only: the user id and the time the session was
started. Roles are never cached in the cookie; every request re-reads the
user, so role changes and break-glass elevation apply immediately.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from starlette.requests import Request

USER_ID_KEY = "user_id"
STARTED_AT_KEY = "created_at"


def start_session(request: Request, user_id: UUID) -> None:
    """
    Begin a fresh session for ``user_id``.

    Anything left from a previous session is discarded so a session id
    issued before login can never carry over (session fixation).
    """
    request.session.clear()
    request.session[USER_ID_KEY] = str(user_id)
    request.session[STARTED_AT_KEY] = datetime.now(timezone.utc).isoformat()


def get_session_user_id(request: Request) -> Optional[UUID]:
    """User id of the session, or None. A tampered value ends the session."""
    raw = request.session.get(USER_ID_KEY)
    if not raw:
        return None

    try:
        return UUID(raw)
    except (ValueError, TypeError):
        end_session(request)
        return None


def session_age(request: Request, now: Optional[datetime] = None) -> Optional[timedelta]:
    raw = request.session.get(STARTED_AT_KEY)
    if not raw:
        return None

    try:
        started = datetime.fromisoformat(raw)
    except (ValueError, TypeError):
        return None

    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)
    return (now or datetime.now(timezone.utc)) - started


def is_session_expired(request: Request, max_age_hours: int = 24) -> bool:
    """Sessions without a readable start time count as expired."""
    age = session_age(request)
    return age is None or age >= timedelta(hours=max_age_hours)


def end_session(request: Request) -> None:
    request.session.clear()
