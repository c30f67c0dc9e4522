"""
AuditLogEntry model - immutable record of privileged actions.

CRITICAL: This table is append-only (immutable). Updates/deletes are blocked by
a PostgreSQL trigger and no code path in the application updates or deletes rows.
"""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import Column, String, DateTime, Text, Index, JSON, Uuid
from sqlalchemy.dialects.postgresql import JSONB

from academic_portal.core.database import Base

# JSONB on PostgreSQL, plain JSON elsewhere (tests run on SQLite)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class AuditStatus(str, Enum):
    """Outcome of the audited action."""
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class AuditLogEntry(Base):
    """
    One privileged action: who did what, with before/after snapshots.

    actor_user_id is nullable: system actions (expiry sweeps) and attempts
    made before the identity was resolved have no actor.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_module_created", "module", "created_at"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    actor_user_id = Column(Uuid(as_uuid=True), nullable=True, index=True)

    action = Column(String(100), nullable=False, index=True)
    module = Column(String(100), nullable=False, index=True)

    before = Column(JSONType, nullable=True)
    after = Column(JSONType, nullable=True)
    reason = Column(Text, nullable=True)

    status = Column(String(20), default=AuditStatus.SUCCESS.value, nullable=False, index=True)
    error_message = Column(Text, nullable=True)

    batch_id = Column(String(64), nullable=True, index=True)
    event_metadata = Column("metadata", JSONType, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLogEntry {self.action} {self.status} at {self.created_at}>"

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "actorUserId": str(self.actor_user_id) if self.actor_user_id else None,
            "action": self.action,
            "module": self.module,
            "before": self.before,
            "after": self.after,
            "reason": self.reason,
            "status": self.status,
            "errorMessage": self.error_message,
            "batchId": self.batch_id,
            "metadata": self.event_metadata,
        }
