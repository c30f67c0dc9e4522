"""Authentication dependencies for the portal API.

Provides get_current_user and role guards for protecting routes.
"""

from fastapi import Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from academic_portal.core.config import settings
from academic_portal.core.database import get_db
from academic_portal.core.errors import Forbidden, Unauthenticated
from academic_portal.core.session import (
    end_session,
    get_session_user_id,
    is_session_expired,
)
from academic_portal.models.user import User, UserStatus
from academic_portal.modules.roles.permissions import Role


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db)
) -> User:
    """
    FastAPI dependency to get the currently authenticated user.

    Raises:
        Unauthenticated: if there is no session, it expired, or the user is archived

    Usage:
        @router.get("/status")
        async def status(user: User = Depends(get_current_user)):
            return {"email": user.email}
    """
    user_id = get_session_user_id(request)
    if not user_id:
        raise Unauthenticated("Not authenticated. Please log in.")

    if is_session_expired(request, max_age_hours=settings.SESSION_MAX_AGE_HOURS):
        end_session(request)
        raise Unauthenticated("Session expired. Please log in again.")

    result = await db.execute(
        select(User).where(User.id == user_id, User.status == UserStatus.ACTIVE.value)
    )
    user = result.scalar_one_or_none()

    if not user:
        end_session(request)
        raise Unauthenticated("User not found or account archived. Please log in again.")

    return user


def require_any_role(*roles: Role):
    """
    Build a dependency that admits users holding at least one of ``roles``.

    Checks base roles only; break-glass elevation is resolved by the engine.
    """
    async def _guard(user: User = Depends(get_current_user)) -> User:
        if not any(user.has_role(role) for role in roles):
            names = " or ".join(role.value for role in roles)
            raise Forbidden(f"Access denied. Required role: {names}")
        return user

    return _guard
