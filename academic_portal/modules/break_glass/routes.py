"""Break-glass API routes.

All rejections are raised as BreakGlassError subclasses and rendered by the
application-level handler as {"error", "kind"} with the matching status.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from academic_portal.core.config import BreakGlassConfig, settings
from academic_portal.core.database import AsyncSessionLocal
from academic_portal.models.break_glass import ActivationFlow
from academic_portal.models.user import User
from academic_portal.modules.audit.sink import AuditSink
from academic_portal.modules.break_glass.engine import BreakGlassEngine
from academic_portal.modules.break_glass.notifications import notify_break_glass_activation
from academic_portal.modules.break_glass.schemas import (
    ActivateRequest,
    DeactivateRequest,
    DelegatedPromoteRequest,
    PermanentPromoteRequest,
    SelfPromoteRequest,
)
from academic_portal.modules.portal.dependencies import get_current_user

router = APIRouter(prefix="/api/break-glass", tags=["break-glass"])

_engine: Optional[BreakGlassEngine] = None


def get_break_glass_engine() -> BreakGlassEngine:
    """Process-wide engine wired from settings (override in tests)."""
    global _engine
    if _engine is None:
        _engine = BreakGlassEngine(
            AsyncSessionLocal,
            AuditSink(AsyncSessionLocal),
            BreakGlassConfig.from_settings(settings),
            notifier=notify_break_glass_activation,
        )
    return _engine


@router.post("/activate")
async def activate_break_glass(
    body: ActivateRequest,
    user: User = Depends(get_current_user),
    engine: BreakGlassEngine = Depends(get_break_glass_engine),
):
    """
    Self-elevation flow.

    ADMIN may elevate any user; ACADEMIC_HEAD only themselves.
    A repeat call while a session is in effect returns that session unchanged.
    """
    result = await engine.activate(
        user.id,
        body.user_id,
        body.reason,
        flow=ActivationFlow.SELF_ELEVATION,
    )
    return result.to_dict()


@router.post("/promote")
async def promote_faculty(
    body: DelegatedPromoteRequest,
    user: User = Depends(get_current_user),
    engine: BreakGlassEngine = Depends(get_break_glass_engine),
):
    """Delegated promotion: elevate a designated FACULTY member (never yourself)."""
    result = await engine.activate(
        user.id,
        body.faculty_user_id,
        body.reason,
        flow=ActivationFlow.DELEGATED_PROMOTION,
    )
    return result.to_dict()


@router.get("/status")
async def break_glass_status(
    user_id: Optional[str] = Query(default=None, alias="userId"),
    user: User = Depends(get_current_user),
    engine: BreakGlassEngine = Depends(get_break_glass_engine),
):
    result = await engine.status(user.id, user_id)
    return result.to_dict()


@router.post("/deactivate")
async def deactivate_break_glass(
    body: DeactivateRequest,
    user: User = Depends(get_current_user),
    engine: BreakGlassEngine = Depends(get_break_glass_engine),
):
    """End a session. Defaults to the caller's own session when userId is omitted."""
    result = await engine.deactivate(user.id, body.user_id or str(user.id))
    return result.to_dict()


@router.post("/promote-permanent")
async def promote_to_permanent_admin(
    body: PermanentPromoteRequest,
    user: User = Depends(get_current_user),
    engine: BreakGlassEngine = Depends(get_break_glass_engine),
):
    """Permanent ADMIN converts a temporary admin, given the promotion code."""
    session = await engine.promote_to_permanent(user.id, body.user_id, body.promotion_code)
    return {
        "success": True,
        "message": "User promoted to permanent Admin",
        "session": session.to_dict(),
    }


@router.post("/self-promote")
async def self_promote(
    body: SelfPromoteRequest,
    user: User = Depends(get_current_user),
    engine: BreakGlassEngine = Depends(get_break_glass_engine),
):
    """A temporary admin makes their own elevation permanent with the promotion code."""
    session = await engine.promote_to_permanent(user.id, user.id, body.promotion_code)
    return {
        "success": True,
        "message": "You are now a permanent Admin",
        "session": session.to_dict(),
    }
