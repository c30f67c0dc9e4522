"""User management API routes."""

from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from academic_portal.core.database import get_db
from academic_portal.models.user import User
from academic_portal.modules.audit.routes import get_audit_sink
from academic_portal.modules.audit.sink import AuditSink
from academic_portal.modules.portal.dependencies import get_current_user, require_any_role
from academic_portal.modules.roles.permissions import Role
from academic_portal.modules.users.service import create_user, import_users, update_user_roles

router = APIRouter(prefix="/api/users", tags=["users"])


class RolesUpdate(BaseModel):
    roles: List[str] = Field(default_factory=list)


class UserCreate(BaseModel):
    email: str
    name: str
    roles: Optional[List[str]] = None
    department: Optional[str] = None


class UserImport(BaseModel):
    users: List[dict] = Field(default_factory=list, max_length=1000)


@router.put("/{user_id}/roles")
async def set_user_roles(
    user_id: str,
    body: RolesUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    sink: AuditSink = Depends(get_audit_sink),
):
    updated = await update_user_roles(db, user, user_id, body.roles, sink)
    return {"success": True, "user": updated.snapshot()}


@router.post("")
async def add_user(
    body: UserCreate,
    user: User = Depends(require_any_role(Role.ADMIN, Role.ACADEMIC_HEAD)),
    db: AsyncSession = Depends(get_db),
    sink: AuditSink = Depends(get_audit_sink),
):
    created = await create_user(
        db, user, body.email, body.name, roles=body.roles, department=body.department, sink=sink,
    )
    return {"success": True, "user": created.snapshot()}


@router.post("/import")
async def bulk_import_users(
    body: UserImport,
    user: User = Depends(require_any_role(Role.ADMIN, Role.ACADEMIC_HEAD)),
    db: AsyncSession = Depends(get_db),
    sink: AuditSink = Depends(get_audit_sink),
):
    return await import_users(db, user, body.users, sink)
