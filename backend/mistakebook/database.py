"""
MistakeBook Backend — Database Session Management
==================================================

What:  Async SQLAlchemy engine, session factory, declarative base and the
       FastAPI session dependency for the question store.
How:   One pooled async engine per process; one session per request that
       commits when the handler returns and rolls back when it raises.
Who:   Route handlers (through Depends(get_db_session)), QuestionService,
       the health check and Alembic (via Base.metadata).

The question store is only written when a recognize request asks for
`save=true`; plain recognition never opens a connection.
"""

from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from mistakebook.config import settings


# ── Engine Configuration ──────────────────────────────────────────────────
engine = create_async_engine(
    settings.database_url,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=settings.db_pool_pre_ping,
    pool_recycle=3600,
    echo=settings.log_level == "DEBUG",
)

# expire_on_commit=False: stored rows are serialized after the commit
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Base class for all ORM models; its metadata drives Alembic."""
    pass


# ── Session Dependency ────────────────────────────────────────────────────
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides a database session per request.

    Flow:
        1. Open a session from the factory
        2. Yield it to the handler
        3. Commit on success, roll back on any exception (then re-raise)
        4. Always close, returning the connection to the pool
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# ── Lifecycle Helpers ─────────────────────────────────────────────────────
async def check_connection() -> bool:
    """Run SELECT 1; used by the health endpoint."""
    async with async_session_factory() as session:
        await session.execute(text("SELECT 1"))
    return True


async def dispose_engine() -> None:
    """Close all pooled connections. Called on application shutdown."""
    await engine.dispose()
