"""
Scheduled Task Tests

Tests the Celery beat jobs:
- The expiry sweep closes elapsed sessions and retries on timeouts
- The audit export writes aged entries and never purges
"""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from academic_portal.core.celery_app import celery_app
from academic_portal.core.errors import TransactionTimeout
from academic_portal.tasks import audit_export, break_glass


class TestBeatSchedule:

    def test_jobs_registered(self):
        schedule = celery_app.conf.beat_schedule

        assert schedule["expire-break-glass-sessions"]["task"] == (
            "academic_portal.tasks.break_glass.expire_break_glass_sessions"
        )
        assert schedule["export-audit-logs"]["task"] == "academic_portal.tasks.audit_export.export_audit_logs"


class TestExpirySweep:

    @pytest.mark.asyncio
    async def test_sweep_with_engine(self, bg_engine, users, clock, fetch_sessions):
        await bg_engine.activate(users["A1"].id, users["F1"].id, "outage")
        clock.advance(hours=12)

        closed = await break_glass.sweep_expired_sessions(bg_engine)

        assert closed == 1
        assert (await fetch_sessions(users["F1"].id))[0].is_active is False

    def test_task_returns_count(self):
        with patch.object(break_glass, "sweep_expired_sessions", AsyncMock(return_value=3)):
            result = break_glass.expire_break_glass_sessions.apply().get()

        assert result == {"closed": 3}

    def test_task_retries_on_timeout(self):
        with patch.object(break_glass, "sweep_expired_sessions", AsyncMock(side_effect=TransactionTimeout())), \
                patch.object(break_glass.expire_break_glass_sessions, "retry", side_effect=RuntimeError("retry")) as mock_retry:
            with pytest.raises(RuntimeError):
                break_glass.expire_break_glass_sessions.apply(throw=True).get()

        assert mock_retry.call_args.kwargs["countdown"] == 60

    def test_task_reports_unexpected_errors(self):
        with patch.object(break_glass, "sweep_expired_sessions", AsyncMock(side_effect=ValueError("boom"))), \
                patch.object(break_glass, "capture_business_error") as mock_capture:
            with pytest.raises(ValueError):
                break_glass.expire_break_glass_sessions.apply(throw=True).get()

        mock_capture.assert_called_once()


class TestAuditExportTask:

    @pytest.mark.asyncio
    async def test_run_export_with_sink(self, audit_sink, session_factory, tmp_path, fetch_audit):
        entry = audit_sink.build_entry(action="USER_CREATED", module="User Management")
        entry.created_at = datetime.utcnow() - timedelta(days=30)
        async with session_factory() as session:
            session.add(entry)
            await session.commit()

        with patch.object(audit_export.settings, "AUDIT_EXPORT_DIR", str(tmp_path)), \
                patch.object(audit_export.settings, "AUDIT_EXPORT_RETENTION_DAYS", 7):
            path = await audit_export.run_export(audit_sink)

        assert path is not None
        assert path.startswith(str(tmp_path))
        assert len(await fetch_audit()) == 1

    def test_task_returns_path(self):
        with patch.object(audit_export, "run_export", AsyncMock(return_value="/exports/a.csv")):
            result = audit_export.export_audit_logs.apply().get()

        assert result == {"path": "/exports/a.csv"}


class TestRunAsyncTask:

    def test_loop_survives_between_tasks(self):
        from academic_portal.core.celery_utils import run_async_task

        async def current_loop():
            return asyncio.get_running_loop()

        first = run_async_task(current_loop())
        second = run_async_task(current_loop())

        assert first is second
        assert not first.is_closed()
