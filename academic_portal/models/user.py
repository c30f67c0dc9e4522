"""
User model - portal accounts (admins, academic heads, faculty).

Users are provisioned by administrators and are never deleted by the
break-glass subsystem.
"""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import Column, String, DateTime, JSON, Uuid
from sqlalchemy.orm import relationship, validates

from academic_portal.core.database import Base
from academic_portal.modules.roles.permissions import (
    Role,
    parse_roles,
    sorted_role_values,
    validate_role_set,
)


class UserStatus(str, Enum):
    """Account lifecycle status."""
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class User(Base):
    """
    Portal user.

    ``roles`` holds the *base* role set as a list of role strings. The
    validator rejects any assignment containing both ADMIN and ACADEMIC_HEAD,
    so the exclusivity rule holds for every write path that goes through the ORM.
    """

    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False)
    department = Column(String, nullable=True)
    status = Column(String, default=UserStatus.ACTIVE.value, nullable=False, index=True)
    roles = Column(JSON, default=lambda: [Role.FACULTY.value], nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    break_glass_sessions = relationship(
        "BreakGlassSession",
        back_populates="subject",
        foreign_keys="BreakGlassSession.subject_user_id",
    )

    def __repr__(self):
        return f"<User {self.email} {self.roles}>"

    @validates("roles")
    def _validate_roles(self, key, value):
        return sorted_role_values(validate_role_set(value))

    @property
    def role_set(self) -> frozenset:
        """Base roles as Role members."""
        return parse_roles(self.roles)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE.value

    def has_role(self, role: Role) -> bool:
        return role in self.role_set

    def snapshot(self) -> dict:
        """Identity fields recorded in audit before/after snapshots."""
        return {
            "userId": str(self.id),
            "name": self.name,
            "email": self.email,
            "roles": sorted_role_values(self.roles),
        }
