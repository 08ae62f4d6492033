"""
Nightshift - Database Connection
================================

Async SQLAlchemy setup backing the task store.
"""

from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from nightshift.core.config import settings


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


# ==========================================================================
# Engine Setup
# ==========================================================================

def create_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Create async database engine."""
    url = database_url or settings.DATABASE_URL
    # SQLite doesn't support pool_size/max_overflow
    if "sqlite" in url:
        return create_async_engine(
            url,
            echo=settings.DATABASE_ECHO,
            connect_args={"check_same_thread": False},
        )
    return create_async_engine(
        url,
        echo=settings.DATABASE_ECHO,
        pool_pre_ping=True,
    )


engine = create_engine()


# ==========================================================================
# Session Factory
# ==========================================================================

def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


AsyncSessionLocal = create_session_factory(engine)


# ==========================================================================
# Lifecycle
# ==========================================================================

async def init_db(bind: Optional[AsyncEngine] = None) -> None:
    """Initialize database (create tables if not exist)."""
    async with (bind or engine).begin() as conn:
        # Import all models to register them
        from nightshift.core import models  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database connections."""
    await engine.dispose()
