"""Database configuration and session management.

This module constructs an asynchronous SQLAlchemy engine and session
factory for the API.  ``DATABASE_URL`` selects the database; Postgres
URLs are normalised to the psycopg (v3) async driver.  When no URL is
configured a local SQLite database may be used in development if
``DB_DEV_FALLBACK_SQLITE`` is enabled.

Worker processes run every job inside its own ``asyncio.run`` loop, so
they use a second engine without connection pooling (see
``get_worker_session_factory``); pooled async connections are bound to
the loop that opened them and cannot be shared between jobs.
"""

from __future__ import annotations

from typing import Any, Optional
import logging
import os

from sqlalchemy.ext.asyncio import AsyncSession, AsyncEngine, create_async_engine, async_sessionmaker
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from receipt_scanner.core.config import settings

logger = logging.getLogger(__name__)

SQLITE_FALLBACK_URL = "sqlite+aiosqlite:///./receipts.db"


def resolve_database_url(raw_url: Optional[str] = None) -> str:
    """Return an async-driver SQLAlchemy URL for the configured database.

    Precedence: explicit argument, ``settings.DATABASE_URL``, the
    ``DATABASE_URL`` environment variable, then the SQLite fallback when
    ``DB_DEV_FALLBACK_SQLITE`` is enabled.
    """
    db_url = raw_url or settings.DATABASE_URL or os.getenv("DATABASE_URL")
    if not db_url:
        if not settings.DB_DEV_FALLBACK_SQLITE:
            raise RuntimeError(
                "No database URL provided via DATABASE_URL; with "
                "DB_DEV_FALLBACK_SQLITE=false, a Postgres URL is required."
            )
        return SQLITE_FALLBACK_URL

    url_obj = make_url(db_url)
    driver = url_obj.drivername or ""
    # SQLite: upgrade to aiosqlite
    if driver == "sqlite":
        url_obj = url_obj.set(drivername="sqlite+aiosqlite")
    # PostgreSQL: normalise every sync/async driver spelling to psycopg v3
    elif driver in {"postgres", "postgresql", "postgresql+psycopg2", "postgresql+asyncpg"}:
        url_obj = url_obj.set(drivername="postgresql+psycopg")
    return url_obj.render_as_string(hide_password=False)


db_url = resolve_database_url()

# Log the selected URL for debugging without the password.
logger.info("Creating async engine with URL: %s", make_url(db_url).set(password=None))
engine: AsyncEngine = create_async_engine(db_url, echo=False, pool_pre_ping=True)

# Create session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

# Declarative base
Base = declarative_base()

_worker_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_worker_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return a session factory backed by an unpooled engine for workers."""
    global _worker_session_factory
    if _worker_session_factory is None:
        worker_engine = create_async_engine(resolve_database_url(), echo=False, poolclass=NullPool)
        _worker_session_factory = async_sessionmaker(
            worker_engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _worker_session_factory


async def init_db(bind: Any = None) -> None:
    """Create all tables defined on the declarative ``Base``.

    Called during API startup and by the test suite; ``create_all`` only
    adds missing tables and never alters existing ones.
    """
    target = bind or engine
    async with target.begin() as conn:
        # Import all models to ensure metadata is populated
        from receipt_scanner.models import tables  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)
