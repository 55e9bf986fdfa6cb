"""Database configuration and connection management."""

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.config import settings


def to_async_url(url: str) -> str:
    """Map a sync database URL onto its async driver."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


def build_engine(url: str, **kwargs: Any) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    PostgreSQL gets a connection pool; SQLite (local runs and tests) gets
    WAL journaling and a busy timeout so concurrent writers queue instead
    of failing.
    """
    url = to_async_url(url)

    if url.startswith("sqlite"):
        sqlite_engine = create_async_engine(
            url,
            echo=kwargs.pop("echo", settings.debug),
            connect_args={"timeout": 15},
            **kwargs,
        )
        event.listen(sqlite_engine.sync_engine, "connect", set_sqlite_pragma)
        return sqlite_engine

    options: dict[str, Any] = {
        "echo": settings.debug,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
        "connect_args": {
            "server_settings": {
                "application_name": settings.app_name,
            },
        },
    }
    if "poolclass" not in kwargs:
        options.update(pool_size=10, max_overflow=20)
    options.update(kwargs)
    return create_async_engine(url, **options)


def set_sqlite_pragma(dbapi_conn: Any, connection_record: Any) -> None:
    """Set SQLite connection parameters."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=15000")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# Create async engine with connection pooling
engine: AsyncEngine = build_engine(settings.database_url)

# Async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting async database sessions."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Dependency for components that open their own short-lived sessions."""
    return AsyncSessionLocal


async def check_database_connection() -> bool:
    """Check if database connection is healthy."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
