"""
database.py — Async SQLAlchemy engine, session factory, and helpers.

Uses asyncpg for PostgreSQL (production) and aiosqlite for SQLite (development).
Services take a session factory argument so tests can run against an
in-memory SQLite engine.
"""

import logging
from collections.abc import AsyncGenerator

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from config import settings

logger = logging.getLogger(__name__)

# ─────────────────────────────────────────────
# Engine
# ─────────────────────────────────────────────

# Translate sync postgres:// → async asyncpg driver notation
_db_url = settings.database_url
if _db_url.startswith("postgresql://"):
    _db_url = _db_url.replace("postgresql://", "postgresql+asyncpg://", 1)
elif _db_url.startswith("postgres://"):
    _db_url = _db_url.replace("postgres://", "postgresql+asyncpg://", 1)

# SQLite doesn't support pool_size / max_overflow
_is_sqlite = "sqlite" in _db_url

_engine_kwargs: dict = {
    "echo": settings.debug,
    "future": True,
}

if not _is_sqlite:
    _engine_kwargs.update(
        {
            "pool_size": settings.db_pool_size,
            "max_overflow": settings.db_max_overflow,
            "pool_timeout": settings.db_pool_timeout,
            "pool_recycle": settings.db_pool_recycle,
            "pool_pre_ping": True,
        }
    )
    if settings.db_ssl_args:
        _engine_kwargs["connect_args"] = settings.db_ssl_args

engine = create_async_engine(_db_url, **_engine_kwargs)

# ─────────────────────────────────────────────
# Session Factory
# ─────────────────────────────────────────────

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build a session factory with the same options as AsyncSessionLocal."""
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# ─────────────────────────────────────────────
# Base
# ─────────────────────────────────────────────

class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""
    pass


def upsert_insert(db: AsyncSession):
    """The dialect's INSERT construct, which supports ON CONFLICT DO UPDATE."""
    if db.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


# ─────────────────────────────────────────────
# Lifecycle
# ─────────────────────────────────────────────

async def create_tables(bind: AsyncEngine | None = None) -> None:
    """Create all tables defined in models.py.

    Idempotent — existing tables are left intact.
    """
    import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database tables initialised")


async def drop_tables(bind: AsyncEngine | None = None) -> None:
    """Drop ALL tables — for use in tests only, never in production."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    logger.warning("All database tables dropped")


# ─────────────────────────────────────────────
# Dependency Injection
# ─────────────────────────────────────────────

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields a database session per request.

    Commits on success, rolls back on any exception, always closes.
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
