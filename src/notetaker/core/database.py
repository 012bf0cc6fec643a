"""Async SQLAlchemy engine and session factory.

Provides:
- Base: Declarative base for all reconciliation tables
- create_engine(): Engine built from explicit Settings
- make_session_factory(): Async-generator session factory consumed by repositories
- init_db() / close_db(): Schema creation for development and engine disposal
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.notetaker.config import Settings

SessionFactory = Callable[[], AsyncGenerator[AsyncSession, None]]

# ── Declarative Base ────────────────────────────────────────────────────────

metadata = MetaData(
    naming_convention={
        "ix": "ix_%(column_0_label)s",
        "uq": "uq_%(table_name)s_%(column_0_name)s",
        "pk": "pk_%(table_name)s",
    }
)


class Base(DeclarativeBase):
    """Base class for every persisted reconciliation entity."""

    metadata = metadata


# ── Engine & Sessions ───────────────────────────────────────────────────────


def create_engine(settings: Settings) -> AsyncEngine:
    """Create the async engine for the configured database."""
    return create_async_engine(
        settings.DATABASE_URL,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=10,
        pool_pre_ping=True,
        echo=False,
    )


def make_session_factory(engine: AsyncEngine) -> SessionFactory:
    """Return a callable yielding one AsyncSession per use.

    Repositories consume it as ``async for session in factory(): ...``.
    """

    async def _session() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return _session


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db(engine: AsyncEngine) -> None:
    """Create tables that don't exist yet (development only; use alembic elsewhere)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(engine: AsyncEngine) -> None:
    """Dispose of the engine and close all connections."""
    await engine.dispose()
