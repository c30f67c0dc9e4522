"""
Async SQLAlchemy engine and sessions.

PostgreSQL (asyncpg) in deployments, aiosqlite for tests and local runs.
Schema changes ship as Alembic migrations; ``init_db`` only bootstraps
empty development databases.
"""

from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from academic_portal.core.config import settings

Base = declarative_base()


def _engine_options() -> dict:
    options = {"echo": settings.DEBUG, "pool_pre_ping": True}
    if settings.is_postgres:
        options.update(pool_size=10, max_overflow=20)
    return options


async_engine = create_async_engine(settings.DATABASE_URL, **_engine_options())

# expire_on_commit=False: engine results are read after the transaction closes
AsyncSessionLocal = async_sessionmaker(async_engine, expire_on_commit=False, autoflush=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session; commits when the handler returns, rolls back if it raises."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        await session.commit()


async def apply_transaction_timeouts(
    session: AsyncSession,
    lock_timeout_ms: int,
    statement_timeout_ms: int,
) -> None:
    """
    Bound how long the current transaction may wait on locks and run.

    Only PostgreSQL supports per-transaction ceilings; other backends rely on
    the caller's asyncio timeout alone. SET LOCAL resets at COMMIT/ROLLBACK.
    """
    if session.bind is None or session.bind.dialect.name != "postgresql":
        return

    await session.execute(text(f"SET LOCAL lock_timeout = {int(lock_timeout_ms)}"))
    await session.execute(text(f"SET LOCAL statement_timeout = {int(statement_timeout_ms)}"))


async def init_db() -> None:
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await async_engine.dispose()
