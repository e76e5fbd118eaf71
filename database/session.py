"""
Async SQLAlchemy session factory for PostgreSQL.

Query helpers accept an optional caller-owned ``AsyncSession``; when none
is given they open (and commit) their own through :func:`session_scope`.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config.settings import config

engine = create_async_engine(
    config.database_url,
    echo=False,
    pool_size=10,
    max_overflow=20,
    pool_recycle=3600,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


@asynccontextmanager
async def session_scope(db_session: Optional[AsyncSession] = None) -> AsyncIterator[AsyncSession]:
    """
    Yield ``db_session`` untouched, or a fresh session that is committed on
    success and rolled back on error.

    A caller-provided session is only flushed — committing stays the
    caller's job.
    """
    if db_session is not None:
        yield db_session
        await db_session.flush()
        return

    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Dependency function — use in FastAPI `Depends(get_db_session)`."""
    async with session_scope() as session:
        yield session


async def dispose_engine() -> None:
    """Close pooled connections on shutdown."""
    await engine.dispose()
