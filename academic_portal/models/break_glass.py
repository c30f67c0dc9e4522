"""
BreakGlassSession model - one emergency elevation grant.

CRITICAL: At most one *active* row may exist per subject user. This is enforced
by a partial unique index on subject_user_id (WHERE is_active), which is the
serialization point for concurrent activations. Rows are never deleted; they
are closed by setting is_active = False.
"""

import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey, Text, Index, JSON, Uuid, text
from sqlalchemy.orm import relationship

from academic_portal.core.database import Base


class ActivationFlow(str, Enum):
    """
    How a session was activated.

    - SELF_ELEVATION: ADMIN for anyone, ACADEMIC_HEAD for themselves only
    - DELEGATED_PROMOTION: ADMIN or ACADEMIC_HEAD elevating a FACULTY member
    """
    SELF_ELEVATION = "SELF_ELEVATION"
    DELEGATED_PROMOTION = "DELEGATED_PROMOTION"


class SessionEndReason(str, Enum):
    """Why an active session was closed."""
    DEACTIVATED = "deactivated"
    EXPIRED = "expired"
    PROMOTED = "promoted"


class BreakGlassSession(Base):
    """
    Emergency elevation of a subject user to ADMIN.

    The subject keeps their base roles; the effective role set gains ADMIN
    while the session is active and not past expires_at.
    """

    __tablename__ = "break_glass_sessions"
    __table_args__ = (
        Index(
            "uq_break_glass_sessions_active_subject",
            "subject_user_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subject_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    activated_by_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)

    flow = Column(String, nullable=False)  # ActivationFlow value
    reason = Column(Text, nullable=False)
    original_roles = Column(JSON, nullable=False)  # Subject's base roles at activation

    activated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=True, index=True)  # NULL = no lifetime limit

    # Promotion code (Fernet-encrypted, never plaintext)
    encrypted_promotion_code = Column(Text, nullable=True)

    # Lifecycle
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    ended_at = Column(DateTime, nullable=True)
    ended_by_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)  # NULL = system
    end_reason = Column(String, nullable=True)  # SessionEndReason value

    # Relationships
    subject = relationship("User", foreign_keys=[subject_user_id], back_populates="break_glass_sessions")
    activated_by = relationship("User", foreign_keys=[activated_by_user_id])

    def __repr__(self):
        return f"<BreakGlassSession subject={self.subject_user_id} active={self.is_active}>"

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """True once the lifetime has elapsed (lazy expiry)."""
        if self.expires_at is None:
            return False
        return (now or datetime.utcnow()) >= self.expires_at

    def is_in_effect(self, now: Optional[datetime] = None) -> bool:
        """Active row whose lifetime has not elapsed."""
        return bool(self.is_active) and not self.is_expired(now)

    @staticmethod
    def calculate_expiry(activated_at: datetime, lifetime: Optional[timedelta]) -> Optional[datetime]:
        """Expiry deadline for a session activated at ``activated_at``."""
        if lifetime is None:
            return None
        return activated_at + lifetime

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        return {
            "id": str(self.id),
            "subjectUserId": str(self.subject_user_id),
            "activatedByUserId": str(self.activated_by_user_id),
            "flow": self.flow,
            "reason": self.reason,
            "originalRoles": list(self.original_roles or []),
            "activatedAt": self.activated_at.isoformat() if self.activated_at else None,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "isActive": self.is_in_effect(now),
            "endedAt": self.ended_at.isoformat() if self.ended_at else None,
            "endReason": self.end_reason,
        }
