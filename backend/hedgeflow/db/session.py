"""
Database Session Management
Hedgeflow Options Engine

Async engine and session factory for the trade ledger.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from hedgeflow.core.config import settings


def create_engine(database_url: Optional[str] = None) -> AsyncEngine:
    return create_async_engine(
        database_url or settings.persistence.database_url,
        future=True,
        pool_pre_ping=True,  # Verify connections before use
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@asynccontextmanager
async def session_scope(factory: async_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    """
    Transactional session context.

    Usage:
        async with session_scope(factory) as db:
            db.add(entry)
    """
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine) -> None:
    """Create ledger tables. Production deployments should manage schema separately."""
    from hedgeflow.db.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
