"""
Audit sink - durable, append-only record of privileged actions.

record() is fire-and-forget from the caller's point of view: a failed write is
logged to the process log and Sentry, then swallowed. The caller's outcome is
never derived from the audit write.

Two write modes:
- Standalone: the entry is written in its own session and committed at once.
  Used for rejected attempts and no-op outcomes.
- Joined: the entry is written inside the caller's transaction under a
  SAVEPOINT, so it commits atomically with the caller's change but a failed
  insert only rolls back the savepoint.
"""

import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import sentry_sdk
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from academic_portal.core.config import settings
from academic_portal.core.errors import AuditWriteFailed
from academic_portal.models.audit_log import AuditLogEntry, AuditStatus

logger = logging.getLogger(__name__)

MAX_ACTION_LENGTH = 100
MAX_MODULE_LENGTH = 100
MAX_REASON_LENGTH = 2000
MAX_PAGE_SIZE = 1000


def new_batch_id() -> str:
    """Correlation id shared by every entry of one multi-record operation."""
    return uuid.uuid4().hex


def sanitize_snapshot(value: Any, max_bytes: int) -> Any:
    """
    Keep a before/after snapshot within the storage limit.

    Oversized values are replaced with a truncation marker and values that
    cannot be serialized with an error marker.
    """
    if value is None:
        return None

    try:
        encoded = json.dumps(value, default=str)
    except (TypeError, ValueError):
        return {"_error": True, "_message": "Failed to serialize object"}

    size = len(encoded.encode("utf-8"))
    if size > max_bytes:
        return {
            "_truncated": True,
            "_size": size,
            "_message": "Object exceeded maximum size limit and was truncated",
        }

    # Round-trip so datetimes/UUIDs become JSON-safe strings
    return json.loads(encoded)


@dataclass
class AuditFilters:
    """Query filters for the audit log. Empty fields are ignored."""

    actor_user_ids: Sequence[uuid.UUID] = field(default_factory=list)
    actions: Sequence[str] = field(default_factory=list)  # exact match on any
    action_contains: Optional[str] = None
    modules: Sequence[str] = field(default_factory=list)  # exact match on any
    module_contains: Optional[str] = None
    allowed_modules: Optional[Sequence[str]] = None  # role restriction, substring match
    status: Optional[str] = None
    batch_id: Optional[str] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None


@dataclass
class AuditPage:
    """One page of audit entries, newest first."""

    entries: List[AuditLogEntry]
    page: int
    page_size: int
    total_count: int

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return (self.total_count + self.page_size - 1) // self.page_size

    @property
    def has_more(self) -> bool:
        return self.page * self.page_size < self.total_count

    def to_dict(self) -> dict:
        return {
            "logs": [entry.to_dict() for entry in self.entries],
            "currentPage": self.page,
            "totalPages": self.total_pages,
            "totalCount": self.total_count,
            "pageSize": self.page_size,
            "hasMore": self.has_more,
        }


class AuditSink:
    """
    Append-only writer and reader for AuditLogEntry rows.

    Usage:
        sink = AuditSink(AsyncSessionLocal)
        await sink.record(action="BREAK_GLASS_ACTIVATE", module="Security", actor_user_id=user.id)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        max_field_bytes: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self.max_field_bytes = max_field_bytes or settings.AUDIT_MAX_FIELD_BYTES

    def build_entry(
        self,
        *,
        action: str,
        module: str,
        actor_user_id: Optional[uuid.UUID] = None,
        before: Any = None,
        after: Any = None,
        reason: Optional[str] = None,
        status: AuditStatus = AuditStatus.SUCCESS,
        error_message: Optional[str] = None,
        batch_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditLogEntry:
        """Create a sanitized, unsaved entry."""
        if not action or not module:
            raise AuditWriteFailed("action and module are required")

        return AuditLogEntry(
            id=uuid.uuid4(),
            actor_user_id=actor_user_id,
            action=action[:MAX_ACTION_LENGTH],
            module=module[:MAX_MODULE_LENGTH],
            before=sanitize_snapshot(before, self.max_field_bytes),
            after=sanitize_snapshot(after, self.max_field_bytes),
            reason=reason[:MAX_REASON_LENGTH] if reason else None,
            status=AuditStatus(status).value,
            error_message=error_message,
            batch_id=batch_id,
            event_metadata=sanitize_snapshot(metadata, self.max_field_bytes),
            created_at=datetime.utcnow(),
        )

    async def record(self, session: Optional[AsyncSession] = None, **fields) -> Optional[AuditLogEntry]:
        """
        Append one entry. Never raises.

        Args:
            session: Caller's session to join (written under a SAVEPOINT).
                     If None, the entry is committed in its own session.
            **fields: See build_entry()

        Returns:
            The written entry, or None if the write failed
        """
        try:
            entry = self.build_entry(**fields)
            if session is None:
                await self._write_standalone(entry)
            else:
                await self._write_joined(session, entry)
            return entry
        except AuditWriteFailed as exc:
            self._report_failure(exc, fields)
        except Exception as exc:  # Audit must never break the caller
            self._report_failure(AuditWriteFailed(str(exc)), fields, cause=exc)
        return None

    async def _write_standalone(self, entry: AuditLogEntry) -> None:
        async with self._session_factory() as session:
            try:
                session.add(entry)
                await session.commit()
            except Exception as exc:
                await session.rollback()
                raise AuditWriteFailed(str(exc)) from exc

    async def _write_joined(self, session: AsyncSession, entry: AuditLogEntry) -> None:
        try:
            async with session.begin_nested():
                session.add(entry)
                await session.flush()
        except Exception as exc:
            raise AuditWriteFailed(str(exc)) from exc

    def _report_failure(self, exc: AuditWriteFailed, fields: dict, cause: Optional[BaseException] = None) -> None:
        """Fallback channel: process log + Sentry."""
        actor = fields.get("actor_user_id")
        logger.error(
            f"[Audit] Failed to log action: {exc.message}",
            extra={
                "audit_action": fields.get("action"),
                "audit_module": fields.get("module"),
                "actor_user_id": str(actor) if actor else None,
            },
        )
        sentry_sdk.capture_exception(cause or exc)

    @asynccontextmanager
    async def batch(self) -> AsyncIterator[str]:
        """
        Provide a batch id for a multi-record operation.

        Usage:
            async with sink.batch() as batch_id:
                for row in rows:
                    await sink.record(action="USER_IMPORTED", module="User Management", batch_id=batch_id)
        """
        batch_id = new_batch_id()
        logger.info("Audit batch started", extra={"batch_id": batch_id})
        yield batch_id

    # Read side

    def _apply_filters(self, stmt, filters: AuditFilters):
        if filters.actor_user_ids:
            stmt = stmt.where(AuditLogEntry.actor_user_id.in_(list(filters.actor_user_ids)))
        if filters.actions:
            stmt = stmt.where(AuditLogEntry.action.in_(list(filters.actions)))
        elif filters.action_contains:
            stmt = stmt.where(AuditLogEntry.action.ilike(f"%{filters.action_contains}%"))
        if filters.modules:
            stmt = stmt.where(AuditLogEntry.module.in_(list(filters.modules)))
        elif filters.module_contains:
            stmt = stmt.where(AuditLogEntry.module.ilike(f"%{filters.module_contains}%"))
        if filters.allowed_modules is not None:
            stmt = stmt.where(
                or_(*[AuditLogEntry.module.ilike(f"%{m}%") for m in filters.allowed_modules])
                if filters.allowed_modules
                else AuditLogEntry.id.is_(None)
            )
        if filters.status:
            stmt = stmt.where(AuditLogEntry.status == filters.status)
        if filters.batch_id:
            stmt = stmt.where(AuditLogEntry.batch_id == filters.batch_id)
        if filters.created_from:
            stmt = stmt.where(AuditLogEntry.created_at >= filters.created_from)
        if filters.created_to:
            stmt = stmt.where(AuditLogEntry.created_at <= filters.created_to)
        return stmt

    async def query(
        self,
        filters: Optional[AuditFilters] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> AuditPage:
        """
        Page through entries, newest first.

        page_size defaults to AUDIT_QUERY_PAGE_SIZE and is capped at 1000.
        """
        filters = filters or AuditFilters()
        page = max(page, 1)
        page_size = min(max(page_size or settings.AUDIT_QUERY_PAGE_SIZE, 1), MAX_PAGE_SIZE)

        async with self._session_factory() as session:
            count_stmt = self._apply_filters(select(func.count(AuditLogEntry.id)), filters)
            total = (await session.execute(count_stmt)).scalar_one()

            stmt = self._apply_filters(select(AuditLogEntry), filters)
            stmt = (
                stmt.order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.id.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            entries = list((await session.execute(stmt)).scalars().all())

        return AuditPage(entries=entries, page=page, page_size=page_size, total_count=total)

    async def export_range(self, before: datetime) -> List[AuditLogEntry]:
        """All entries created on or before ``before``, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(AuditLogEntry)
                .where(AuditLogEntry.created_at <= before)
                .order_by(AuditLogEntry.created_at.asc(), AuditLogEntry.id.asc())
            )
            return list(result.scalars().all())
