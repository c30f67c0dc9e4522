"""
User provisioning and role management.

This is the only write path for base roles. Role sets are validated for
exclusivity here and again by the User model validator.
"""

import logging
import uuid
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from academic_portal.core.errors import BreakGlassError, Forbidden, NotFound, ValidationFailed
from academic_portal.models.audit_log import AuditStatus
from academic_portal.models.break_glass import BreakGlassSession
from academic_portal.models.user import User
from academic_portal.modules.audit.sink import AuditSink
from academic_portal.modules.roles.permissions import (
    InvalidRoleSet,
    Role,
    can_manage_user,
    sorted_role_values,
    validate_role_set,
)

logger = logging.getLogger(__name__)

AUDIT_MODULE = "User Management"


async def _is_temporary_admin(db: AsyncSession, user: User) -> bool:
    session = (await db.execute(
        select(BreakGlassSession).where(
            BreakGlassSession.subject_user_id == user.id,
            BreakGlassSession.is_active.is_(True),
        )
    )).scalars().first()
    return session is not None and session.is_in_effect()


async def _require_permanent_admin(db: AsyncSession, actor: User) -> None:
    if actor.has_role(Role.ADMIN):
        return
    if await _is_temporary_admin(db, actor):
        raise Forbidden("Temporary admins cannot change user roles")
    raise Forbidden("Access denied. Required role: ADMIN")


def _validated(roles: Iterable) -> List[str]:
    try:
        return sorted_role_values(validate_role_set(roles))
    except InvalidRoleSet as exc:
        raise ValidationFailed(str(exc)) from exc


async def update_user_roles(
    db: AsyncSession,
    actor: User,
    user_id,
    roles: Iterable,
    sink: AuditSink,
) -> User:
    """
    Replace a user's base roles.

    The change is flushed in ``db`` together with its audit entry; the caller
    commits. Rejections are audited as USER_ROLES_UPDATE_FAILED.

    Raises:
        Forbidden: actor is not a permanent ADMIN
        ValidationFailed: empty, unknown, or ADMIN + ACADEMIC_HEAD role set
        NotFound: unknown user
    """
    try:
        await _require_permanent_admin(db, actor)
        new_roles = _validated(roles)

        try:
            target_id = user_id if isinstance(user_id, uuid.UUID) else uuid.UUID(str(user_id))
        except ValueError:
            raise ValidationFailed("userId is not a valid id")

        user = await db.get(User, target_id)
        if user is None:
            raise NotFound("User not found")
    except BreakGlassError as exc:
        await sink.record(
            action="USER_ROLES_UPDATE_FAILED",
            module=AUDIT_MODULE,
            actor_user_id=actor.id,
            status=AuditStatus.FAILED,
            error_message=exc.message,
            metadata={"userId": str(user_id), "requestedRoles": [str(r) for r in roles or []]},
        )
        raise

    before = user.snapshot()
    user.roles = new_roles
    await db.flush()

    await sink.record(
        db,
        action="USER_ROLES_UPDATED",
        module=AUDIT_MODULE,
        actor_user_id=actor.id,
        before=before,
        after=user.snapshot(),
        reason=f"Roles for {user.email} changed from {', '.join(before['roles'])} to {', '.join(new_roles)}",
        metadata={"previousRoles": before["roles"], "newRoles": new_roles},
    )

    logger.info(
        "User roles updated",
        extra={"user_id": str(user.id), "actor_user_id": str(actor.id), "roles": new_roles},
    )
    return user


async def create_user(
    db: AsyncSession,
    actor: User,
    email: str,
    name: str,
    roles: Optional[Iterable] = None,
    department: Optional[str] = None,
    sink: Optional[AuditSink] = None,
    batch_id: Optional[str] = None,
) -> User:
    """
    Provision a new user (FACULTY by default).

    ADMIN may create any user; ACADEMIC_HEAD only FACULTY.
    """
    new_roles = _validated(roles or [Role.FACULTY])
    if not can_manage_user(actor.roles, new_roles) or (
        not actor.has_role(Role.ADMIN) and new_roles != [Role.FACULTY.value]
    ):
        raise Forbidden("You cannot create a user with these roles")

    email = (email or "").strip().lower()
    name = (name or "").strip()
    if not email or not name:
        raise ValidationFailed("email and name are required")

    existing = (await db.execute(select(User).where(User.email == email))).scalar_one_or_none()
    if existing is not None:
        raise ValidationFailed(f"A user with email {email} already exists")

    user = User(id=uuid.uuid4(), email=email, name=name, department=department, roles=new_roles)
    db.add(user)
    await db.flush()

    if sink is not None:
        await sink.record(
            db,
            action="USER_CREATED",
            module=AUDIT_MODULE,
            actor_user_id=actor.id,
            after=user.snapshot(),
            reason=f"User created: {name} ({email}) with roles {', '.join(new_roles)}",
            batch_id=batch_id,
        )
    return user


async def import_users(
    db: AsyncSession,
    actor: User,
    rows: Iterable[dict],
    sink: AuditSink,
) -> dict:
    """
    Create many users in one operation. Every audit entry shares one batch id.

    Invalid rows are skipped and reported; valid rows are created.

    Returns:
        {"batchId", "created", "errors": [{"row", "error"}]}
    """
    created = 0
    errors = []

    async with sink.batch() as batch_id:
        for index, row in enumerate(rows, start=1):
            try:
                async with db.begin_nested():
                    await create_user(
                        db,
                        actor,
                        email=row.get("email"),
                        name=row.get("name"),
                        roles=row.get("roles"),
                        department=row.get("department"),
                        sink=sink,
                        batch_id=batch_id,
                    )
                created += 1
            except BreakGlassError as exc:
                errors.append({"row": index, "error": exc.message})

        await sink.record(
            db,
            action="USER_IMPORT",
            module=AUDIT_MODULE,
            actor_user_id=actor.id,
            batch_id=batch_id,
            status=AuditStatus.SUCCESS if not errors else AuditStatus.FAILED,
            error_message=f"{len(errors)} rows rejected" if errors else None,
            metadata={"created": created, "rejected": len(errors)},
        )

    logger.info("User import finished", extra={"batch_id": batch_id, "created": created, "rejected": len(errors)})
    return {"batchId": batch_id, "created": created, "errors": errors}
