"""
Celery tasks package.

Periodic housekeeping for break-glass sessions and the audit log.
"""

from academic_portal.core.celery_app import celery_app

__all__ = ["celery_app"]
