"""
Database connection management for Reply Flow.

Uses SQLAlchemy 2.0 async API with asyncpg for PostgreSQL.
"""

import logging
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from replyflow.config import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _get_database_url() -> str:
    """Get the effective database URL from settings."""
    return settings.effective_database_url


def _engine_options(url: str) -> dict:
    """Connection pool settings; only PostgreSQL gets a sized pool."""
    options = {"echo": settings.database_echo}
    if url.startswith("postgresql"):
        options.update(
            pool_size=10,
            max_overflow=20,
            pool_recycle=3600,
            pool_pre_ping=True,  # Verify connections before use (prevents stale connection errors after restart)
        )
    return options


# Get database URL
_db_url = _get_database_url()

# Create async engine
engine = create_async_engine(_db_url, **_engine_options(_db_url))

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for getting async database sessions.

    Usage in FastAPI:
        @app.get("/items")
        async def get_items(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db():
    """
    Initialize database tables.

    This creates all tables defined in the ORM models.
    Should be called on application startup.
    """
    # Import models to ensure they are registered with Base
    from replyflow.db import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured")

