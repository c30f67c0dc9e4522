"""
Audit log export.

Entries older than the retention window are written to a CSV file for
offline archival. Rows are never deleted after export.
"""

import csv
import io
import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, Optional

from academic_portal.models.audit_log import AuditLogEntry
from academic_portal.modules.audit.sink import AuditSink

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = [
    "id",
    "created_at",
    "actor_user_id",
    "action",
    "module",
    "before",
    "after",
    "reason",
    "batch_id",
    "error_message",
    "metadata",
    "status",
]


def _json_cell(value) -> str:
    if value is None:
        return ""
    return json.dumps(value, sort_keys=True, default=str)


def _row(entry: AuditLogEntry) -> list:
    return [
        str(entry.id),
        entry.created_at.isoformat() if entry.created_at else "",
        str(entry.actor_user_id) if entry.actor_user_id else "",
        entry.action,
        entry.module,
        _json_cell(entry.before),
        _json_cell(entry.after),
        entry.reason or "",
        entry.batch_id or "",
        entry.error_message or "",
        _json_cell(entry.event_metadata),
        entry.status,
    ]


def entries_to_csv(entries: Iterable[AuditLogEntry]) -> str:
    """Render entries as CSV text with a header row."""
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(EXPORT_COLUMNS)
    for entry in entries:
        writer.writerow(_row(entry))
    return buffer.getvalue()


async def export_audit_logs(
    sink: AuditSink,
    export_dir: str,
    retention_days: int,
    now: Optional[datetime] = None,
) -> Optional[Path]:
    """
    Write every entry older than ``retention_days`` to a timestamped CSV file.

    Returns:
        Path of the written file, or None when nothing is old enough to export
    """
    now = now or datetime.utcnow()
    cutoff = now - timedelta(days=retention_days)

    entries = await sink.export_range(cutoff)
    if not entries:
        logger.info("No audit entries to export", extra={"cutoff": cutoff.isoformat()})
        return None

    directory = Path(export_dir)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"audit-logs-{now.strftime('%Y%m%dT%H%M%S')}.csv"
    path.write_text(entries_to_csv(entries), encoding="utf-8")

    logger.info(
        f"Exported {len(entries)} audit entries",
        extra={"path": str(path), "count": len(entries), "cutoff": cutoff.isoformat()},
    )
    return path
