"""
LookEscolar Database Module
Async SQLAlchemy with SQLite (dev/tests) / PostgreSQL (prod) support.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.core.config import get_settings


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


# Engine and session factory (lazy initialization)
_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine for the given URL."""
    kwargs = {}
    if "sqlite" in database_url:
        # SQLite needs special handling for async
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url:
            # Keep a single connection so every session sees the same in-memory DB
            from sqlalchemy.pool import StaticPool
            kwargs["poolclass"] = StaticPool
    return create_async_engine(database_url, echo=echo, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    """Get or create the async engine."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(settings.database_url, echo=settings.debug)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory."""
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = build_session_factory(get_engine())
    return _async_session_factory


def configure_database(engine: AsyncEngine) -> None:
    """Swap the process-wide engine (used by create_app overrides and tests)."""
    global _engine, _async_session_factory
    _engine = engine
    _async_session_factory = build_session_factory(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for database sessions.

    Usage:
        @router.get("/items")
        async def get_items(db: AsyncSession = Depends(get_db)):
            result = await db.execute(select(Item))
            return result.scalars().all()
    """
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Async context manager for database sessions.
    Use this in services/background tasks (not FastAPI routes).

    Usage:
        async with get_db_session() as db:
            folder = await db.get(Folder, folder_id)
    """
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """
    Create all tables.
    Production schemas are managed by Alembic; this is for local runs and tests.
    """
    # Register models on the metadata
    import app.models.models  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def ping_db() -> bool:
    """Return True when the database answers a trivial query."""
    async with get_engine().connect() as conn:
        await conn.execute(text("SELECT 1"))
    return True


async def close_db() -> None:
    """
    Close database connections.
    Call this on shutdown.
    """
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
