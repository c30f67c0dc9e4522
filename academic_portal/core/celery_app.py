"""
Celery worker and beat configuration.

Beat runs two portal jobs:
- the break-glass expiry sweep, which only tidies rows; reads already treat
  an elapsed session as inactive
- the nightly CSV export of audit entries past the retention window
"""

from celery import Celery
from celery.schedules import crontab
from kombu import Queue

from academic_portal.core.config import settings

EXPIRE_SESSIONS_TASK = "academic_portal.tasks.break_glass.expire_break_glass_sessions"
EXPORT_AUDIT_TASK = "academic_portal.tasks.audit_export.export_audit_logs"

celery_app = Celery(
    "academic_portal",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["academic_portal.tasks.break_glass", "academic_portal.tasks.audit_export"],
)

celery_app.conf.update(
    # JSON only; pickle would let a broker message execute code
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # A sweep or export interrupted by a worker crash is redelivered
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
    task_time_limit=120,
    task_soft_time_limit=100,
    task_annotations={
        # First export after a long outage can be large
        EXPORT_AUDIT_TASK: {"time_limit": 900, "soft_time_limit": 840},
    },
    result_expires=3600,
    task_queues=(Queue("default"), Queue("maintenance")),
    task_default_queue="default",
    task_routes={EXPORT_AUDIT_TASK: {"queue": "maintenance"}},
    worker_hijack_root_logger=False,
    worker_task_log_format="[%(asctime)s: %(levelname)s] [%(task_name)s(%(task_id)s)] %(message)s",
)

celery_app.conf.beat_schedule = {
    "expire-break-glass-sessions": {
        "task": EXPIRE_SESSIONS_TASK,
        "schedule": crontab(minute=f"*/{settings.BREAK_GLASS_SWEEP_MINUTES}"),
    },
    "export-audit-logs": {
        "task": EXPORT_AUDIT_TASK,
        "schedule": crontab(hour=str(settings.AUDIT_EXPORT_HOUR_UTC), minute="0"),
    },
}
