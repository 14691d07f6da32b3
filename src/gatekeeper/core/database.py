"""
Gatekeeper - Database Connection
================================

Async SQLAlchemy setup. The orchestrator receives the session factory so
that concurrently running roles each get their own session.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from gatekeeper.core.config import settings


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


# ==========================================================================
# Engine Setup
# ==========================================================================

def create_engine(url: Optional[str] = None) -> AsyncEngine:
    """Create async database engine, pooled unless the backend is SQLite."""
    url = url or settings.DATABASE_URL
    # SQLite doesn't support pool_size/max_overflow
    if "sqlite" in url:
        return create_async_engine(
            url,
            echo=settings.DATABASE_ECHO,
            connect_args={"check_same_thread": False},
        )
    return create_async_engine(
        url,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        echo=settings.DATABASE_ECHO,
        pool_pre_ping=True,
    )


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory shared by every service."""
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = create_engine()
AsyncSessionLocal = create_session_factory(engine)


# ==========================================================================
# Sessions
# ==========================================================================

@asynccontextmanager
async def get_db_session(
    factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Context manager for database sessions.

    Commits on clean exit, rolls back and re-raises on error.

    Usage:
        async with get_db_session() as session:
            ...
    """
    async with (factory or AsyncSessionLocal)() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ==========================================================================
# Lifecycle
# ==========================================================================

async def init_db(bind: Optional[AsyncEngine] = None) -> None:
    """Initialize database (create tables if not exist)."""
    async with (bind or engine).begin() as conn:
        # Import all models to register them
        from gatekeeper.core import models  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)


async def close_db(bind: Optional[AsyncEngine] = None) -> None:
    """Close database connections."""
    await (bind or engine).dispose()
