"""Async database session management.

- Asyncpg driver in production, aiosqlite for local runs and tests
- Engine created lazily so importing the package never opens a pool
- Pool sizing only applied to server databases (SQLite has no real pool)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from partner_pulse.config import settings

SessionFactory = async_sessionmaker[AsyncSession]

_engine: AsyncEngine | None = None
_session_factory: SessionFactory | None = None


# ═══════════════════════════════════════════════════════════════════════════════
# ENGINE CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════════

def create_engine(database_url: str | None = None) -> AsyncEngine:
    """Build an async engine for the configured database."""
    url = database_url or settings.database_url
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False)

    # Sync invocations are short-lived and sequential; a small pool is plenty.
    return create_async_engine(
        url,
        pool_size=5,
        max_overflow=5,
        pool_timeout=30,
        pool_recycle=3600,
        pool_pre_ping=True,
        echo=False,
    )


def make_session_factory(engine: AsyncEngine) -> SessionFactory:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_engine()
    return _engine


def get_session_factory() -> SessionFactory:
    """Process-wide session factory bound to ``settings.database_url``."""
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(get_engine())
    return _session_factory


# ═══════════════════════════════════════════════════════════════════════════════
# SESSION MANAGEMENT
# ═══════════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def db_session(
    factory: SessionFactory | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Transactional session: commits on success, rolls back on error.

    Usage:
        async with db_session() as db:
            result = await db.execute(...)
    """
    async with (factory or get_session_factory())() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create tables from the ORM metadata.

    In production, use Alembic migrations. This is for dev/test only.
    """
    from partner_pulse.db.models import Base

    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Clean shutdown: dispose of all connections."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
