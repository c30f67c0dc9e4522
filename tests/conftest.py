"""
Shared fixtures.

Environment variables are set before any academic_portal import so the
module-level Settings instance loads test values.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("BREAK_GLASS_NOTIFY_EMAIL", "false")

import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from academic_portal.core.config import BreakGlassConfig
from academic_portal.core.database import Base
from academic_portal.models import AuditLogEntry, BreakGlassSession, User, UserStatus
from academic_portal.modules.audit.sink import AuditSink
from academic_portal.modules.break_glass.engine import BreakGlassEngine


class FakeClock:
    """Controllable utcnow() replacement."""

    def __init__(self, now: datetime = None):
        self.now = now or datetime(2026, 3, 2, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
async def db_engine(tmp_path):
    """A fresh SQLite database file per test, schema built from the models."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'portal.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
def audit_sink(session_factory):
    return AuditSink(session_factory)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def bg_config():
    return BreakGlassConfig(max_session_lifetime=timedelta(hours=8), notify_email=False)


@pytest.fixture
def bg_engine(session_factory, audit_sink, bg_config, clock):
    return BreakGlassEngine(session_factory, audit_sink, bg_config, clock=clock)


@pytest.fixture
def make_user(session_factory):
    """Factory: await make_user(["FACULTY"], name="F1")."""

    async def _make(roles, name=None, status=UserStatus.ACTIVE):
        name = name or f"user-{uuid.uuid4().hex[:8]}"
        async with session_factory() as session:
            user = User(
                id=uuid.uuid4(),
                email=f"{name.lower()}@college.test",
                name=name,
                roles=list(roles),
                status=status.value,
            )
            session.add(user)
            await session.commit()
            return user

    return _make


@pytest.fixture
async def users(make_user):
    """The cast of the break-glass scenarios."""
    return {
        "A1": await make_user(["ADMIN"], name="A1"),
        "H1": await make_user(["ACADEMIC_HEAD"], name="H1"),
        "H2": await make_user(["ACADEMIC_HEAD"], name="H2"),
        "F1": await make_user(["FACULTY"], name="F1"),
        "F2": await make_user(["FACULTY"], name="F2"),
    }


@pytest.fixture
def fetch_audit(session_factory):
    """Read back audit entries, oldest first, optionally filtered by action."""

    async def _fetch(action=None):
        async with session_factory() as session:
            stmt = select(AuditLogEntry).order_by(AuditLogEntry.created_at, AuditLogEntry.id)
            if action:
                stmt = stmt.where(AuditLogEntry.action == action)
            return list((await session.execute(stmt)).scalars().all())

    return _fetch


@pytest.fixture
def fetch_sessions(session_factory):
    """All break-glass rows for a subject, active or closed."""

    async def _fetch(subject_id):
        async with session_factory() as session:
            result = await session.execute(
                select(BreakGlassSession)
                .where(BreakGlassSession.subject_user_id == subject_id)
                .order_by(BreakGlassSession.activated_at)
            )
            return list(result.scalars().all())

    return _fetch


@pytest.fixture
def fetch_user(session_factory):
    async def _fetch(user_id):
        async with session_factory() as session:
            return await session.get(User, user_id)

    return _fetch
