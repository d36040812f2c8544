"""Async engine and session factory shared by the worker and the API.

Every publish step opens its own short session from ``async_session_factory``
(``async with factory() as session, session.begin()``). Route handlers receive
a request-scoped session through ``get_session``.

Usage:
    from republisher.database import get_session

    @router.get("/quota")
    async def get_quota(db: AsyncSession = Depends(get_session)):
        ...
"""

import os
from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from republisher.config import get_database_url


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Snapshots are read after the claiming transaction commits
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False)


def build_engine(database_url: str) -> AsyncEngine:
    """Create an engine sized for one worker or API process.

    SQLite URLs (tests, local tooling) get a single shared connection so an
    in-memory database is visible to every session.
    """
    if database_url.startswith("sqlite"):
        return create_async_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(
        database_url,
        pool_size=int(os.getenv("DATABASE_POOL_SIZE", "10")),
        max_overflow=5,
        pool_pre_ping=True,
        echo=os.getenv("DATABASE_ECHO", "").lower() == "true",
    )


# Tests and tooling import this module without DATABASE_URL set
engine: AsyncEngine | None = build_engine(get_database_url()) if os.getenv("DATABASE_URL") else None
async_session_factory: async_sessionmaker[AsyncSession] | None = (
    build_session_factory(engine) if engine is not None else None
)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the process-wide session factory.

    Raises:
        RuntimeError: If DATABASE_URL was not set when the process started.
    """
    if async_session_factory is None:
        raise RuntimeError("Database not configured. Set DATABASE_URL environment variable.")
    return async_session_factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request, committed on success."""
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def dispose_engine() -> None:
    if engine is not None:
        await engine.dispose()


def create_test_engine(
    database_url: str = "sqlite+aiosqlite:///:memory:",
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Engine plus session factory for tests (in-memory SQLite by default)."""
    test_engine = build_engine(database_url)
    return test_engine, build_session_factory(test_engine)
