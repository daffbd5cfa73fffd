"""
Hive - Database Connection
==========================

One async engine per process. SQLite (the default) gets foreign keys
switched on per connection; PostgreSQL gets a sized, pre-pinged pool.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from hive.core.config import Settings, settings


class Base(DeclarativeBase):
    pass


def enable_sqlite_foreign_keys(engine: AsyncEngine) -> None:
    """SQLite ignores FOREIGN KEY clauses unless asked per connection."""

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_engine(config: Settings = settings) -> AsyncEngine:
    options: dict[str, Any] = {"echo": config.DATABASE_ECHO}
    if config.is_sqlite:
        options["connect_args"] = {"check_same_thread": False}
    else:
        options.update(
            pool_size=config.DATABASE_POOL_SIZE,
            max_overflow=config.DATABASE_MAX_OVERFLOW,
            pool_pre_ping=True,
        )

    engine = create_async_engine(config.DATABASE_URL, **options)
    if config.is_sqlite:
        enable_sqlite_foreign_keys(engine)
    return engine


engine = create_engine()

# Objects stay readable after commit; the orchestrator returns them to routers
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


# ==========================================================================
# Sessions
# ==========================================================================

@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Session scope for scripts and background code.

    Commits on clean exit, rolls back if the block raises.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session scope per request."""
    async with get_db_session() as session:
        yield session


# ==========================================================================
# Lifecycle
# ==========================================================================

async def init_db() -> None:
    """Create missing tables. Migrations live in alembic/versions."""
    from hive.core import models  # noqa: F401  (registers the tables)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
