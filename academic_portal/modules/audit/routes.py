"""Audit log API routes.

ADMIN (permanent or temporary) reads every module. ACADEMIC_HEAD reads only
the academic modules. Everyone else is refused.
"""

import uuid
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from academic_portal.core.errors import Forbidden, ValidationFailed
from academic_portal.models.user import User
from academic_portal.modules.audit.export import entries_to_csv
from academic_portal.modules.audit.sink import AuditFilters, AuditSink
from academic_portal.modules.break_glass.engine import BreakGlassEngine
from academic_portal.modules.break_glass.routes import get_break_glass_engine
from academic_portal.modules.portal.dependencies import get_current_user
from academic_portal.modules.roles.permissions import ACADEMIC_HEAD_LOG_MODULES, Permission

router = APIRouter(prefix="/api/logs", tags=["audit"])


def get_audit_sink(engine: BreakGlassEngine = Depends(get_break_glass_engine)) -> AuditSink:
    return engine.audit


def _split(value: Optional[str]) -> list:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _parse_date(value: Optional[str], end_of_day: bool = False) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise ValidationFailed(f"Invalid date: {value}")
    if end_of_day and len(value) == 10:
        parsed = parsed + timedelta(days=1) - timedelta(microseconds=1)
    return parsed


def _parse_user_ids(value: Optional[str]) -> list:
    try:
        return [uuid.UUID(part) for part in _split(value)]
    except ValueError:
        raise ValidationFailed("userId must be a comma-separated list of ids")


async def _visible_modules(user: User, engine: BreakGlassEngine) -> Optional[tuple]:
    """None means unrestricted."""
    if await engine.user_has_permission(user, Permission.VIEW_ALL_LOGS):
        return None
    if await engine.user_has_permission(user, Permission.VIEW_LIMITED_LOGS):
        return ACADEMIC_HEAD_LOG_MODULES
    raise Forbidden("Access denied. Required role: ADMIN or ACADEMIC_HEAD")


async def _build_filters(
    user: User,
    engine: BreakGlassEngine,
    actions: Optional[str],
    action: Optional[str],
    modules: Optional[str],
    module: Optional[str],
    user_id: Optional[str],
    status: Optional[str],
    batch_id: Optional[str],
    start_date: Optional[str],
    end_date: Optional[str],
) -> AuditFilters:
    return AuditFilters(
        actor_user_ids=_parse_user_ids(user_id),
        actions=_split(actions),
        action_contains=action or None,
        modules=_split(modules),
        module_contains=module or None,
        allowed_modules=await _visible_modules(user, engine),
        status=status.upper() if status else None,
        batch_id=batch_id or None,
        created_from=_parse_date(start_date),
        created_to=_parse_date(end_date, end_of_day=True),
    )


@router.get("")
async def list_audit_logs(
    page: int = Query(default=1, ge=1, alias="p"),
    page_size: Optional[int] = Query(default=None, ge=1, le=1000, alias="pageSize"),
    actions: Optional[str] = Query(default=None),
    action: Optional[str] = Query(default=None),
    modules: Optional[str] = Query(default=None),
    module: Optional[str] = Query(default=None),
    user_id: Optional[str] = Query(default=None, alias="userId"),
    status: Optional[str] = Query(default=None),
    batch_id: Optional[str] = Query(default=None, alias="batchId"),
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    user: User = Depends(get_current_user),
    engine: BreakGlassEngine = Depends(get_break_glass_engine),
    sink: AuditSink = Depends(get_audit_sink),
):
    """
    Page through audit entries, newest first.

    ``actions``/``modules`` are comma-separated exact matches; ``action``/``module``
    are case-insensitive substring matches.
    """
    filters = await _build_filters(
        user, engine, actions, action, modules, module,
        user_id, status, batch_id, start_date, end_date,
    )
    result = await sink.query(filters, page=page, page_size=page_size)
    return result.to_dict()


@router.get("/export")
async def export_audit_logs_csv(
    actions: Optional[str] = Query(default=None),
    modules: Optional[str] = Query(default=None),
    user_id: Optional[str] = Query(default=None, alias="userId"),
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    user: User = Depends(get_current_user),
    engine: BreakGlassEngine = Depends(get_break_glass_engine),
    sink: AuditSink = Depends(get_audit_sink),
):
    """Download the first 1000 matching entries as CSV."""
    filters = await _build_filters(
        user, engine, actions, None, modules, None,
        user_id, None, None, start_date, end_date,
    )
    result = await sink.query(filters, page=1, page_size=1000)

    filename = f"audit-logs-{datetime.utcnow().strftime('%Y%m%d')}.csv"
    return Response(
        content=entries_to_csv(result.entries),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
