"""Database engine and transactional sessions.

The API process and the background workers share one engine. SQLite files
are opened with a busy timeout because the submitter, the poller and API
requests write concurrently.
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from txengine.config import get_settings
from txengine.store.models import Base

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT = 30

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _async_url(db_url: str) -> str:
    if db_url.startswith("sqlite:///"):
        return db_url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return db_url


def _engine_options(db_url: str) -> dict:
    url = make_url(db_url)
    if url.get_backend_name() != "sqlite":
        return {"pool_pre_ping": True}
    if url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    return {"connect_args": {"timeout": SQLITE_BUSY_TIMEOUT}}


def get_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Engine for ``database_url`` (DATABASE_URL by default), created once."""
    global _engine
    if _engine is None:
        settings = get_settings()
        db_url = _async_url(database_url or settings.database_url)
        _engine = create_async_engine(
            db_url,
            echo=settings.debug and not settings.is_production,
            **_engine_options(db_url),
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


@asynccontextmanager
async def session_scope(
    factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Session committed on success and rolled back on error."""
    factory = factory or get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_db():
    """Transactional session on the shared engine."""
    return session_scope()


async def init_db(database_url: Optional[str] = None) -> None:
    """Create the engine and any missing tables."""
    async with get_engine(database_url).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database initialized")


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
