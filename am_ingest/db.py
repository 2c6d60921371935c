"""SQLAlchemy 2.x async engine and session factory.

The engine is built from settings at startup rather than at import time so the
same code runs against PostgreSQL (asyncpg) in production and SQLite
(aiosqlite) in tests.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import DatabaseSettings
from .models import Base


def build_engine(db: DatabaseSettings) -> AsyncEngine:
    """Create the async engine for the configured URL."""
    return create_async_engine(
        db.url,
        echo=db.echo,
        future=True,
        pool_size=db.pool_size,
        max_overflow=db.max_overflow,
        pool_pre_ping=True,
    )


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


async def create_schema(engine: AsyncEngine, *, drop_existing: bool = False) -> None:
    """Create every table (optionally dropping them first)."""
    async with engine.begin() as conn:
        if drop_existing:
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
