"""
Celery task closing break-glass sessions whose lifetime has elapsed.

Runs every BREAK_GLASS_SWEEP_MINUTES. Access decisions never wait for this task: expiry is
evaluated on every read. The sweep only makes stored state match and writes
a BREAK_GLASS_EXPIRED audit entry (actor = system) for each closed session.
"""

import logging
from typing import Optional

from academic_portal.core.celery_app import EXPIRE_SESSIONS_TASK, celery_app
from academic_portal.core.celery_utils import run_async_task
from academic_portal.core.errors import TransactionTimeout
from academic_portal.core.sentry import capture_business_error
from academic_portal.modules.break_glass.engine import BreakGlassEngine

logger = logging.getLogger(__name__)


async def sweep_expired_sessions(engine: Optional[BreakGlassEngine] = None) -> int:
    """Close expired sessions with ``engine`` (default: the application engine)."""
    if engine is None:
        from academic_portal.modules.break_glass.routes import get_break_glass_engine
        engine = get_break_glass_engine()
    return await engine.expire_sessions()


@celery_app.task(
    bind=True,
    name=EXPIRE_SESSIONS_TASK,
    max_retries=3,
)
def expire_break_glass_sessions(self):
    """
    Close every open session past its expires_at.

    Retries with backoff when the database times out.

    Returns:
        {"closed": n}
    """
    logger.info("Starting break-glass expiry sweep")

    try:
        closed = run_async_task(sweep_expired_sessions())
    except TransactionTimeout as exc:
        retry_delay = 60 * (2 ** self.request.retries)
        logger.warning(f"Break-glass expiry sweep timed out, retrying in {retry_delay}s")
        raise self.retry(exc=exc, countdown=retry_delay)
    except Exception as exc:
        capture_business_error(exc, {"operation": "expire_break_glass_sessions"})
        raise

    logger.info(f"Break-glass expiry sweep complete: {closed} sessions closed", extra={"closed": closed})
    return {"closed": closed}
