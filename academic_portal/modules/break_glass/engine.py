"""
Break-glass engine - temporary elevation of a user to ADMIN.

State per subject user: INACTIVE (no session in effect) or ACTIVE (an open
session whose lifetime has not elapsed). Every activate/deactivate/promote
attempt made by an identified actor produces an audit entry, success or not.

Concurrency:
- Each mutating call runs in one transaction, bounded by lock/statement
  timeouts (PostgreSQL) and an overall asyncio deadline.
- The partial unique index "one active session per subject" is the
  serialization point. A losing concurrent activation hits IntegrityError,
  rolls back and re-reads, converging on the idempotent no-op path.
- Expiry is lazy: reads compare expires_at with the clock. The periodic
  sweep (expire_sessions) only tidies rows that are already expired.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from sqlalchemy import select, or_
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from academic_portal.core.config import BreakGlassConfig
from academic_portal.core.database import apply_transaction_timeouts
from academic_portal.core.errors import (
    BreakGlassError,
    Forbidden,
    NotFound,
    PreconditionFailed,
    TransactionTimeout,
    Unauthenticated,
    ValidationFailed,
)
from academic_portal.core.security import encrypt_code, generate_promotion_code, verify_promotion_code
from academic_portal.models.audit_log import AuditStatus
from academic_portal.models.break_glass import ActivationFlow, BreakGlassSession, SessionEndReason
from academic_portal.models.user import User
from academic_portal.modules.audit.sink import AuditSink
from academic_portal.modules.roles.permissions import (
    Role,
    effective_roles,
    has_permission,
    sorted_role_values,
)

logger = logging.getLogger(__name__)

AUDIT_MODULE = "Security"
ACTION_ACTIVATE = "BREAK_GLASS_ACTIVATE"
ACTION_DEACTIVATE = "BREAK_GLASS_DEACTIVATE"
ACTION_PROMOTE = "BREAK_GLASS_PROMOTE"
ACTION_EXPIRE = "BREAK_GLASS_EXPIRED"

# PostgreSQL SQLSTATEs for lock_timeout and statement_timeout
_TIMEOUT_SQLSTATES = {"55P03", "57014"}

Notifier = Callable[[dict, dict, BreakGlassSession, str], Awaitable[object]]


@dataclass
class ActivationResult:
    """Outcome of activate(). promotion_code is only set for a newly created session."""

    session: BreakGlassSession
    created: bool
    promotion_code: Optional[str] = None
    checked_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        payload = {
            "success": True,
            "message": (
                "Break-glass override activated"
                if self.created
                else "Break-glass override already active"
            ),
            "session": self.session.to_dict(self.checked_at),
        }
        if self.promotion_code:
            payload["promotionCode"] = self.promotion_code
        return payload


@dataclass
class DeactivationResult:
    """Outcome of deactivate(). ended is False for the idempotent no-op."""

    ended: bool
    session: Optional[BreakGlassSession] = None

    def to_dict(self) -> dict:
        return {
            "success": True,
            "message": (
                "Break-glass override deactivated"
                if self.ended
                else "Break-glass override was not active"
            ),
        }


@dataclass
class StatusResult:
    is_active: bool
    sessions: List[BreakGlassSession] = field(default_factory=list)
    checked_at: Optional[datetime] = None

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        now = now or self.checked_at
        sessions = [s.to_dict(now) for s in self.sessions]
        return {
            "isActive": self.is_active,
            "sessions": sessions,
            "session": sessions[0] if sessions else None,
        }


def _coerce_id(value, error: BreakGlassError) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise error


def _is_timeout_error(exc: DBAPIError) -> bool:
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code in _TIMEOUT_SQLSTATES


def _role_snapshot(user: User, elevated: bool) -> dict:
    snapshot = user.snapshot()
    snapshot["effectiveRoles"] = sorted_role_values(effective_roles(user.roles, elevated))
    snapshot["isTemporaryAdmin"] = elevated and not user.has_role(Role.ADMIN)
    return snapshot


class BreakGlassEngine:
    """
    Policy engine for emergency elevation.

    Usage:
        engine = BreakGlassEngine(AsyncSessionLocal, AuditSink(AsyncSessionLocal),
                                  BreakGlassConfig.from_settings(settings))
        result = await engine.activate(admin.id, faculty.id, "system outage")
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        audit_sink: AuditSink,
        config: BreakGlassConfig,
        clock: Callable[[], datetime] = datetime.utcnow,
        notifier: Optional[Notifier] = None,
    ):
        self._session_factory = session_factory
        self.audit = audit_sink
        self.config = config
        self._clock = clock
        self._notifier = notifier

    # Transaction plumbing

    async def _run_bounded(self, operation, *args):
        """
        Run ``operation(db, *args)`` in a fresh session under the execution ceiling.

        Timeouts (asyncio deadline, lock_timeout, statement_timeout) become the
        retryable TransactionTimeout. The transaction is rolled back on any error.
        """
        async with self._session_factory() as db:
            try:
                return await asyncio.wait_for(
                    operation(db, *args),
                    timeout=self.config.statement_timeout_seconds,
                )
            except asyncio.TimeoutError as exc:
                await self._safe_rollback(db)
                logger.warning("Break-glass transaction exceeded its deadline")
                raise TransactionTimeout() from exc
            except DBAPIError as exc:
                await self._safe_rollback(db)
                if _is_timeout_error(exc):
                    logger.warning("Break-glass transaction hit a database timeout")
                    raise TransactionTimeout() from exc
                raise

    async def _safe_rollback(self, db: AsyncSession) -> None:
        try:
            await db.rollback()
        except Exception as exc:
            logger.error(f"Rollback after failed break-glass transaction failed: {exc}")

    async def _begin(self, db: AsyncSession):
        await apply_transaction_timeouts(db, self.config.lock_timeout_ms, self.config.statement_timeout_ms)

    # Lookups

    async def _load_actor(self, db: AsyncSession, actor_user_id) -> User:
        if actor_user_id is None:
            raise Unauthenticated()
        actor_id = _coerce_id(actor_user_id, Unauthenticated())
        actor = await db.get(User, actor_id)
        if actor is None or not actor.is_active:
            raise Unauthenticated("User not found or account archived")
        return actor

    async def _load_subject(self, db: AsyncSession, subject_id: uuid.UUID, lock: bool = False) -> User:
        stmt = select(User).where(User.id == subject_id)
        if lock:
            stmt = stmt.with_for_update()
        subject = (await db.execute(stmt)).scalar_one_or_none()
        if subject is None:
            raise NotFound("User not found")
        return subject

    async def _open_session(self, db: AsyncSession, subject_id: uuid.UUID, lock: bool = False) -> Optional[BreakGlassSession]:
        """The subject's open row, if any, expired or not."""
        stmt = select(BreakGlassSession).where(
            BreakGlassSession.subject_user_id == subject_id,
            BreakGlassSession.is_active.is_(True),
        )
        if lock:
            stmt = stmt.with_for_update()
        return (await db.execute(stmt)).scalars().first()

    async def _sessions_in_effect(self, db: AsyncSession, now: datetime) -> List[BreakGlassSession]:
        result = await db.execute(
            select(BreakGlassSession)
            .where(
                BreakGlassSession.is_active.is_(True),
                or_(BreakGlassSession.expires_at.is_(None), BreakGlassSession.expires_at > now),
            )
            .order_by(BreakGlassSession.activated_at.desc())
        )
        return list(result.scalars().all())

    def _close(self, session: BreakGlassSession, now: datetime, ended_by: Optional[uuid.UUID], reason: SessionEndReason) -> None:
        session.is_active = False
        session.ended_at = now
        session.ended_by_user_id = ended_by
        session.end_reason = reason.value

    async def _close_expired(self, db: AsyncSession, session: BreakGlassSession, now: datetime) -> None:
        """Close an open row whose lifetime has elapsed and audit it as a system action."""
        self._close(session, now, None, SessionEndReason.EXPIRED)
        await db.flush()
        await self.audit.record(
            db,
            action=ACTION_EXPIRE,
            module=AUDIT_MODULE,
            actor_user_id=None,
            reason="Break-glass session lifetime elapsed",
            metadata={
                "sessionId": str(session.id),
                "subjectUserId": str(session.subject_user_id),
                "expiresAt": session.expires_at.isoformat() if session.expires_at else None,
            },
        )

    async def _audit_rejection(self, action: str, actor_user_id, subject_user_id, exc: BreakGlassError, reason: Optional[str] = None, **metadata) -> None:
        await self.audit.record(
            action=action,
            module=AUDIT_MODULE,
            actor_user_id=_coerce_id(actor_user_id, exc) if actor_user_id else None,
            reason=reason or None,
            status=AuditStatus.FAILED,
            error_message=exc.message,
            metadata={
                "subjectUserId": str(subject_user_id) if subject_user_id else None,
                "errorKind": exc.kind,
                **metadata,
            },
        )

    # Activation

    async def activate(
        self,
        actor_user_id,
        subject_user_id,
        reason: Optional[str],
        flow: ActivationFlow = ActivationFlow.SELF_ELEVATION,
    ) -> ActivationResult:
        """
        Elevate ``subject_user_id`` to ADMIN for the configured lifetime.

        Idempotent: if the subject already has a session in effect, that
        session is returned unchanged (first writer wins for the reason).

        Raises:
            Unauthenticated, ValidationFailed, Forbidden, NotFound,
            PreconditionFailed, TransactionTimeout
        """
        flow = ActivationFlow(flow)
        reason = (reason or "").strip()

        if actor_user_id is None:
            raise Unauthenticated()

        try:
            try:
                result = await self._run_bounded(self._activate_once, actor_user_id, subject_user_id, reason, flow)
            except IntegrityError:
                # Lost the race on the active-session index; the winner's row is committed now
                logger.info(
                    "Concurrent break-glass activation detected, re-reading",
                    extra={"subject_user_id": str(subject_user_id)},
                )
                try:
                    result = await self._run_bounded(self._activate_once, actor_user_id, subject_user_id, reason, flow)
                except IntegrityError as exc:
                    raise TransactionTimeout("Concurrent activation in progress, please retry") from exc
        except Unauthenticated:
            raise
        except BreakGlassError as exc:
            await self._audit_rejection(ACTION_ACTIVATE, actor_user_id, subject_user_id, exc, reason, flow=flow.value)
            raise

        if not result.created:
            await self.audit.record(
                action=ACTION_ACTIVATE,
                module=AUDIT_MODULE,
                actor_user_id=_coerce_id(actor_user_id, Unauthenticated()),
                reason=reason,
                metadata={
                    "noop": True,
                    "flow": flow.value,
                    "sessionId": str(result.session.id),
                    "subjectUserId": str(result.session.subject_user_id),
                    "activatedByUserId": str(result.session.activated_by_user_id),
                },
            )
            return result

        logger.warning(
            "Break-glass override activated",
            extra={
                "session_id": str(result.session.id),
                "subject_user_id": str(result.session.subject_user_id),
                "activated_by_user_id": str(result.session.activated_by_user_id),
                "flow": flow.value,
            },
        )
        await self._notify(result)
        return result

    def _authorize_activation(self, actor: User, subject_id: uuid.UUID, flow: ActivationFlow) -> None:
        is_admin = actor.has_role(Role.ADMIN)
        is_head = actor.has_role(Role.ACADEMIC_HEAD)

        if not (is_admin or is_head):
            raise Forbidden("Only Admin and Academic Head can activate break-glass")

        if flow == ActivationFlow.DELEGATED_PROMOTION:
            if subject_id == actor.id:
                label = "Admin" if is_admin else "Academic Head"
                raise Forbidden(f"{label} cannot promote themselves")
        elif not is_admin and subject_id != actor.id:
            raise Forbidden("Academic Head can only activate break-glass for themselves")

    def _check_subject(self, actor: User, subject: User, flow: ActivationFlow) -> None:
        if not subject.is_active:
            raise PreconditionFailed("User account is archived")

        if flow != ActivationFlow.DELEGATED_PROMOTION:
            return

        if not actor.has_role(Role.ADMIN) and (
            subject.has_role(Role.ADMIN) or subject.has_role(Role.ACADEMIC_HEAD)
        ):
            raise Forbidden("Academic Head cannot promote an Admin or Academic Head")

        if subject.role_set != frozenset({Role.FACULTY}):
            raise PreconditionFailed("Break-glass can only be activated for Faculty members")

    async def _activate_once(self, db: AsyncSession, actor_user_id, subject_user_id, reason: str, flow: ActivationFlow) -> ActivationResult:
        async with db.begin():
            await self._begin(db)
            actor = await self._load_actor(db, actor_user_id)

            if not subject_user_id or not reason:
                raise ValidationFailed("userId and reason are required")
            subject_id = _coerce_id(subject_user_id, ValidationFailed("userId is not a valid id"))

            self._authorize_activation(actor, subject_id, flow)
            subject = await self._load_subject(db, subject_id, lock=True)
            self._check_subject(actor, subject, flow)

            now = self._clock()
            existing = await self._open_session(db, subject.id, lock=True)
            if existing is not None:
                if existing.is_in_effect(now):
                    return ActivationResult(session=existing, created=False, checked_at=now)
                await self._close_expired(db, existing, now)

            promotion_code = generate_promotion_code()
            session = BreakGlassSession(
                id=uuid.uuid4(),
                subject_user_id=subject.id,
                activated_by_user_id=actor.id,
                flow=flow.value,
                reason=reason,
                original_roles=sorted_role_values(subject.roles),
                activated_at=now,
                expires_at=BreakGlassSession.calculate_expiry(now, self.config.max_session_lifetime),
                encrypted_promotion_code=encrypt_code(promotion_code),
                is_active=True,
            )
            db.add(session)
            await db.flush()

            await self.audit.record(
                db,
                action=ACTION_ACTIVATE,
                module=AUDIT_MODULE,
                actor_user_id=actor.id,
                reason=reason,
                before=_role_snapshot(subject, elevated=False),
                after=_role_snapshot(subject, elevated=True),
                metadata={
                    "sessionId": str(session.id),
                    "subjectUserId": str(subject.id),
                    "activatedByUserId": str(actor.id),
                    "flow": flow.value,
                    "selfActivation": subject.id == actor.id,
                    "expiresAt": session.expires_at.isoformat() if session.expires_at else None,
                },
            )

            # Captured for the post-commit notification
            session.activator_contact = {"name": actor.name, "email": actor.email}
            session.subject_contact = {"name": subject.name, "email": subject.email}

        return ActivationResult(session=session, created=True, promotion_code=promotion_code, checked_at=now)

    async def _notify(self, result: ActivationResult) -> None:
        """Send the promotion code to the activating user. Failure never fails activation."""
        if not self.config.notify_email or self._notifier is None:
            return

        session = result.session
        try:
            await self._notifier(
                getattr(session, "activator_contact", {}),
                getattr(session, "subject_contact", {}),
                session,
                result.promotion_code,
            )
        except Exception as exc:
            logger.error(
                f"Failed to send break-glass notification: {exc}",
                extra={"session_id": str(session.id)},
            )

    # Status

    async def status(self, requesting_user_id, target_user_id=None) -> StatusResult:
        """
        Report whether break-glass is in effect.

        - ACADEMIC_HEAD without a target: every session in effect system-wide
        - Anyone else: their own status; another user's status requires ADMIN

        Read-only; not audited.
        """
        async with self._session_factory() as db:
            requester = await self._load_actor(db, requesting_user_id)
            now = self._clock()

            if target_user_id is None and requester.has_role(Role.ACADEMIC_HEAD):
                sessions = await self._sessions_in_effect(db, now)
                return StatusResult(is_active=bool(sessions), sessions=sessions, checked_at=now)

            target_id = (
                _coerce_id(target_user_id, ValidationFailed("userId is not a valid id"))
                if target_user_id
                else requester.id
            )
            if target_id != requester.id and not requester.has_role(Role.ADMIN):
                raise Forbidden("Access denied. Required role: ADMIN")

            session = await self._open_session(db, target_id)
            if session is not None and session.is_in_effect(now):
                return StatusResult(is_active=True, sessions=[session], checked_at=now)

            logger.debug("Break-glass not in effect", extra={"user_id": str(target_id)})
            return StatusResult(is_active=False, sessions=[], checked_at=now)

    async def is_temporary_admin(self, user_id) -> bool:
        """True if the user currently has a break-glass session in effect."""
        async with self._session_factory() as db:
            session = await self._open_session(db, _coerce_id(user_id, ValidationFailed()))
            return session is not None and session.is_in_effect(self._clock())

    async def effective_roles_for(self, user: User) -> frozenset:
        """Base roles plus ADMIN while break-glass is in effect."""
        return effective_roles(user.roles, await self.is_temporary_admin(user.id))

    async def user_has_permission(self, user: Optional[User], permission) -> bool:
        """Permission check against the user's effective roles."""
        if user is None:
            return False
        return has_permission(user, permission, elevated=await self.is_temporary_admin(user.id))

    # Deactivation

    async def deactivate(self, actor_user_id, subject_user_id) -> DeactivationResult:
        """
        End the subject's session, restoring their base roles.

        Idempotent: a subject with nothing in effect is a successful no-op.
        ADMIN may deactivate anyone; ACADEMIC_HEAD themselves or sessions they activated.
        """
        if actor_user_id is None:
            raise Unauthenticated()

        try:
            result = await self._run_bounded(self._deactivate_once, actor_user_id, subject_user_id)
        except Unauthenticated:
            raise
        except BreakGlassError as exc:
            await self._audit_rejection(ACTION_DEACTIVATE, actor_user_id, subject_user_id, exc)
            raise

        if not result.ended:
            await self.audit.record(
                action=ACTION_DEACTIVATE,
                module=AUDIT_MODULE,
                actor_user_id=_coerce_id(actor_user_id, Unauthenticated()),
                reason="No active break-glass session",
                metadata={"noop": True, "subjectUserId": str(subject_user_id)},
            )
        else:
            logger.info(
                "Break-glass override deactivated",
                extra={"session_id": str(result.session.id), "subject_user_id": str(subject_user_id)},
            )
        return result

    async def _last_activator(self, db: AsyncSession, subject_id: uuid.UUID) -> Optional[uuid.UUID]:
        result = await db.execute(
            select(BreakGlassSession.activated_by_user_id)
            .where(BreakGlassSession.subject_user_id == subject_id)
            .order_by(BreakGlassSession.activated_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _deactivate_once(self, db: AsyncSession, actor_user_id, subject_user_id) -> DeactivationResult:
        async with db.begin():
            await self._begin(db)
            actor = await self._load_actor(db, actor_user_id)

            if not subject_user_id:
                raise ValidationFailed("userId is required")
            subject_id = _coerce_id(subject_user_id, ValidationFailed("userId is not a valid id"))

            is_admin = actor.has_role(Role.ADMIN)
            if not (is_admin or actor.has_role(Role.ACADEMIC_HEAD)):
                raise Forbidden("Only Admin and Academic Head can deactivate break-glass")

            subject = await self._load_subject(db, subject_id, lock=True)
            session = await self._open_session(db, subject.id, lock=True)

            if not is_admin and subject.id != actor.id:
                owner = session.activated_by_user_id if session else await self._last_activator(db, subject.id)
                if owner != actor.id:
                    raise Forbidden("You can only deactivate break-glass sessions you activated")

            if session is None:
                return DeactivationResult(ended=False)

            now = self._clock()
            if session.is_expired(now):
                await self._close_expired(db, session, now)
                return DeactivationResult(ended=False, session=session)

            self._close(session, now, actor.id, SessionEndReason.DEACTIVATED)
            await db.flush()

            before = _role_snapshot(subject, elevated=True)
            before["activatedByUserId"] = str(session.activated_by_user_id)
            await self.audit.record(
                db,
                action=ACTION_DEACTIVATE,
                module=AUDIT_MODULE,
                actor_user_id=actor.id,
                reason=session.reason,
                before=before,
                after=_role_snapshot(subject, elevated=False),
                metadata={
                    "sessionId": str(session.id),
                    "subjectUserId": str(subject.id),
                    "originalRoles": list(session.original_roles or []),
                },
            )

        return DeactivationResult(ended=True, session=session)

    # Promotion to permanent admin

    async def promote_to_permanent(self, actor_user_id, subject_user_id, promotion_code: Optional[str]) -> BreakGlassSession:
        """
        Turn a temporary admin into a permanent ADMIN.

        The actor is a permanent ADMIN, or the temporary admin themselves.
        Requires the promotion code issued at activation.
        """
        if actor_user_id is None:
            raise Unauthenticated()

        try:
            session = await self._run_bounded(self._promote_once, actor_user_id, subject_user_id, promotion_code)
        except Unauthenticated:
            raise
        except BreakGlassError as exc:
            await self._audit_rejection(ACTION_PROMOTE, actor_user_id, subject_user_id, exc)
            raise

        logger.warning(
            "Temporary admin promoted to permanent Admin",
            extra={"subject_user_id": str(session.subject_user_id), "session_id": str(session.id)},
        )
        return session

    async def _promote_once(self, db: AsyncSession, actor_user_id, subject_user_id, promotion_code: Optional[str]) -> BreakGlassSession:
        async with db.begin():
            await self._begin(db)
            actor = await self._load_actor(db, actor_user_id)

            if not subject_user_id or not promotion_code:
                raise ValidationFailed("userId and promotionCode are required")
            subject_id = _coerce_id(subject_user_id, ValidationFailed("userId is not a valid id"))

            now = self._clock()
            if subject_id != actor.id:
                if not actor.has_role(Role.ADMIN):
                    own = await self._open_session(db, actor.id)
                    if own is not None and own.is_in_effect(now):
                        raise Forbidden("Temporary admins cannot promote other users to permanent admin")
                    raise Forbidden("Only permanent admins can promote temporary admins")

            subject = await self._load_subject(db, subject_id, lock=True)
            session = await self._open_session(db, subject.id, lock=True)
            if session is None or not session.is_in_effect(now):
                raise PreconditionFailed("User is not a temporary admin")

            if subject.has_role(Role.ACADEMIC_HEAD):
                raise PreconditionFailed("An Academic Head cannot be made a permanent Admin")

            if not verify_promotion_code(promotion_code, session.encrypted_promotion_code):
                raise ValidationFailed("Invalid promotion code")

            before = _role_snapshot(subject, elevated=True)
            subject.roles = sorted_role_values((subject.role_set - {Role.FACULTY}) | {Role.ADMIN})
            self._close(session, now, actor.id, SessionEndReason.PROMOTED)
            session.encrypted_promotion_code = None
            await db.flush()

            await self.audit.record(
                db,
                action=ACTION_PROMOTE,
                module=AUDIT_MODULE,
                actor_user_id=actor.id,
                reason="Temporary admin promoted to permanent Admin",
                before=before,
                after=_role_snapshot(subject, elevated=False),
                metadata={
                    "sessionId": str(session.id),
                    "subjectUserId": str(subject.id),
                    "selfPromotion": subject.id == actor.id,
                },
            )

        return session

    # Expiry sweep

    async def expire_sessions(self) -> int:
        """
        Close every open session whose lifetime has elapsed.

        Optional housekeeping; reads already treat these sessions as inactive.

        Returns:
            Number of sessions closed
        """
        async def _sweep(db: AsyncSession) -> int:
            async with db.begin():
                await self._begin(db)
                now = self._clock()
                result = await db.execute(
                    select(BreakGlassSession)
                    .where(
                        BreakGlassSession.is_active.is_(True),
                        BreakGlassSession.expires_at.is_not(None),
                        BreakGlassSession.expires_at <= now,
                    )
                    .with_for_update(skip_locked=True)
                )
                expired = list(result.scalars().all())
                for session in expired:
                    await self._close_expired(db, session, now)
                return len(expired)

        closed = await self._run_bounded(_sweep)
        if closed:
            logger.info(f"Closed {closed} expired break-glass sessions", extra={"closed": closed})
        return closed
