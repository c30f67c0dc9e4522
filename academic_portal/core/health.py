"""
Health probes behind ``GET /health``.

Components:
- database: the portal's PostgreSQL (users, audit log, break-glass sessions)
- redis: Celery broker and rate-limit storage
- break_glass: open elevations, and expired rows the sweep has not closed yet
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict

import redis
from sqlalchemy import func, select, text

from academic_portal.core.config import settings
from academic_portal.core.database import AsyncSessionLocal
from academic_portal.models.break_glass import BreakGlassSession

logger = logging.getLogger(__name__)

# Expired rows older than this mean the expiry sweep has stopped running
SWEEP_LAG_WARNING = timedelta(hours=1)


async def _timed(name: str, probe: Callable[[], Awaitable[None]]) -> Dict[str, Any]:
    started = time.perf_counter()
    try:
        await probe()
    except Exception as e:
        logger.error(f"{name} health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}

    return {
        "status": "healthy",
        "latency_ms": round((time.perf_counter() - started) * 1000, 2),
    }


async def check_database() -> Dict[str, Any]:
    async def ping():
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))

    return await _timed("Database", ping)


async def check_redis() -> Dict[str, Any]:
    """Ping the broker. The client is synchronous, so the probe blocks briefly."""
    async def ping():
        client = redis.from_url(settings.CELERY_BROKER_URL, socket_connect_timeout=2)
        try:
            client.ping()
        finally:
            client.close()

    return await _timed("Redis", ping)


async def check_break_glass() -> Dict[str, Any]:
    """
    Report open break-glass sessions.

    Warns when open rows expired long ago, which means the periodic
    sweep is not running. Access is unaffected either way.
    """
    now = datetime.utcnow()

    try:
        async with AsyncSessionLocal() as session:
            in_effect = (await session.execute(
                select(func.count(BreakGlassSession.id)).where(
                    BreakGlassSession.is_active.is_(True),
                    (BreakGlassSession.expires_at.is_(None)) | (BreakGlassSession.expires_at > now),
                )
            )).scalar_one()
            stale = (await session.execute(
                select(func.count(BreakGlassSession.id)).where(
                    BreakGlassSession.is_active.is_(True),
                    BreakGlassSession.expires_at <= now - SWEEP_LAG_WARNING,
                )
            )).scalar_one()
    except Exception as e:
        logger.error(f"Break-glass health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}

    result = {
        "status": "healthy",
        "active_sessions": in_effect,
        "stale_open_sessions": stale,
    }
    if stale:
        result["status"] = "warning"
        result["message"] = f"{stale} expired sessions not yet closed by the sweep"
    return result


async def get_health_metrics() -> Dict[str, Any]:
    """
    Probe every component and roll the results up.

    Any unhealthy component makes the whole service unhealthy; a warning
    (such as a stalled sweep) only degrades it.
    """
    components = {
        "database": await check_database(),
        "redis": await check_redis(),
        "break_glass": await check_break_glass(),
    }

    statuses = {c["status"] for c in components.values()}
    if "unhealthy" in statuses:
        overall = "unhealthy"
    elif "warning" in statuses:
        overall = "degraded"
    else:
        overall = "healthy"

    return {
        "status": overall,
        "timestamp": datetime.utcnow().isoformat(),
        "components": components,
    }
