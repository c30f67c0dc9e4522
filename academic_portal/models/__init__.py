"""
Database models package.

Import all models here so Alembic can discover them for migrations.
"""

from academic_portal.models.user import User, UserStatus
from academic_portal.models.break_glass import BreakGlassSession, ActivationFlow, SessionEndReason
from academic_portal.models.audit_log import AuditLogEntry, AuditStatus

__all__ = [
    "User",
    "UserStatus",
    "BreakGlassSession",
    "ActivationFlow",
    "SessionEndReason",
    "AuditLogEntry",
    "AuditStatus",
]
