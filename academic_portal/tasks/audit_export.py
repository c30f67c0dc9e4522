"""
Celery task exporting aged audit entries to CSV.

Runs daily at 02:00 UTC. Entries are exported, never purged.
"""

import logging
from typing import Optional

from academic_portal.core.celery_app import EXPORT_AUDIT_TASK, celery_app
from academic_portal.core.celery_utils import run_async_task
from academic_portal.core.config import settings
from academic_portal.core.sentry import capture_business_error
from academic_portal.modules.audit.export import export_audit_logs as write_export
from academic_portal.modules.audit.sink import AuditSink

logger = logging.getLogger(__name__)


async def run_export(sink: Optional[AuditSink] = None) -> Optional[str]:
    """Export with ``sink`` (default: a sink on the application database)."""
    if sink is None:
        from academic_portal.core.database import AsyncSessionLocal
        sink = AuditSink(AsyncSessionLocal)

    path = await write_export(
        sink,
        export_dir=settings.AUDIT_EXPORT_DIR,
        retention_days=settings.AUDIT_EXPORT_RETENTION_DAYS,
    )
    return str(path) if path else None


@celery_app.task(name=EXPORT_AUDIT_TASK)
def export_audit_logs():
    """
    Write entries older than AUDIT_EXPORT_RETENTION_DAYS to AUDIT_EXPORT_DIR.

    Returns:
        {"path": str or None}
    """
    logger.info("Starting audit log export")

    try:
        path = run_async_task(run_export())
    except Exception as exc:
        capture_business_error(exc, {"operation": "export_audit_logs"})
        raise

    return {"path": path}
