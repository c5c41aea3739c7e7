"""Database configuration and session management."""

import os
import logging
from pathlib import Path
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

# Default to /store/driftwatch.db (mounted as a volume in production)
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:////store/driftwatch.db"

# Base class for models
Base = declarative_base()


def get_database_url() -> str:
    return os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)


def _ensure_sqlite_directory(database_url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    if not database_url.startswith("sqlite") or ":memory:" in database_url:
        return
    db_path = database_url.replace("sqlite+aiosqlite:///", "").replace("sqlite+aiosqlite://", "")
    db_dir = Path(db_path).resolve().parent
    if str(db_dir) != ".":
        db_dir.mkdir(parents=True, exist_ok=True)


def create_engine(database_url: str | None = None) -> AsyncEngine:
    """Create the async engine for the document store.

    SQLite uses a single persistent connection (StaticPool); other backends
    use a regular connection pool.
    """
    database_url = database_url or get_database_url()
    _ensure_sqlite_directory(database_url)

    if "sqlite" in database_url:
        return create_async_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            pool_reset_on_return=None,
        )
    return create_async_engine(
        database_url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=3600,
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create tables and apply SQLite pragmas."""
    # Register models on Base.metadata
    from driftwatch import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

        if engine.dialect.name == "sqlite" and ":memory:" not in str(engine.url):
            # WAL allows the watcher and the trigger engine to write concurrently
            await conn.execute(text("PRAGMA journal_mode=WAL"))
            await conn.execute(text("PRAGMA synchronous=NORMAL"))
            await conn.execute(text("PRAGMA busy_timeout=5000"))
            logger.info("SQLite optimizations applied: WAL mode, 5s busy timeout")
