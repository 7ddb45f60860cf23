"""Database session management."""

from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from chatmedia.core.config import settings
from chatmedia.db.base import Base


def get_database_url() -> str:
    """Get the database URL, ensuring the SQLite directory exists."""
    if settings.database_url:
        return settings.database_url
    settings.config_path.mkdir(parents=True, exist_ok=True)
    return settings.resolved_database_url


def create_engine(url: str | None = None) -> AsyncEngine:
    """Create an async engine, enabling WAL for SQLite databases."""
    url = url or get_database_url()
    is_sqlite = url.startswith("sqlite")
    engine = create_async_engine(
        url,
        echo=settings.debug,
        future=True,
        connect_args={"timeout": 30} if is_sqlite else {},
        pool_pre_ping=True,
    )

    if is_sqlite and ":memory:" not in url:

        @event.listens_for(engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            """Enable WAL mode for better concurrent access."""
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

    return engine


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to *engine*."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    # Import models so their tables are registered on the metadata
    from chatmedia.db import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
