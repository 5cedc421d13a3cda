"""Async database engine and session management.

This module provides the async SQLAlchemy 2.0 engine configuration, the
session factory used by the orchestrator services, and the FastAPI
dependency for request-scoped sessions.

Usage:
    from automation.database import get_session

    async def my_route(db: AsyncSession = Depends(get_session)):
        result = await db.execute(select(AutomationRun))
        ...

Services open their own short transactions instead:

    async with async_session_factory() as session, session.begin():
        run = await session.get(AutomationRun, run_id)
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

from automation.config import get_database_url

# DATABASE_URL may be absent at import time (tests, tooling)
if os.getenv("DATABASE_URL"):
    engine: AsyncEngine | None = create_async_engine(
        get_database_url(),
        pool_size=10,
        max_overflow=5,
        pool_pre_ping=True,
        echo=os.getenv("DATABASE_ECHO", "").lower() == "true",
    )
else:
    engine = None


async_session_factory: async_sessionmaker[AsyncSession] | None = (
    async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,  # CRITICAL: objects are used after their transaction ends
    )
    if engine
    else None
)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the process-wide session factory.

    Raises:
        RuntimeError: If DATABASE_URL was not configured at import time.
    """
    if async_session_factory is None:
        raise RuntimeError("Database not configured. Set DATABASE_URL environment variable.")
    return async_session_factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for database session injection.

    Yields an async database session with automatic commit on success
    and rollback on exception.

    Raises:
        RuntimeError: If database is not configured.
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def create_test_engine(
    database_url: str = "sqlite+aiosqlite:///:memory:",
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create an async engine for testing.

    In-memory SQLite uses a StaticPool so every session shares the one
    connection (and therefore the one database).

    Args:
        database_url: Test database URL (defaults to in-memory SQLite).

    Returns:
        Tuple of (engine, session_factory) for testing.
    """
    test_engine = create_async_engine(
        database_url,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    test_session_factory = async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return test_engine, test_session_factory
