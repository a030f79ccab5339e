"""
Async engine and sessions for the SQL conversation store.

The configured URL may use a plain sync scheme; it is mapped to the async
driver SQLAlchemy needs:

    postgresql:// or postgres://  ->  postgresql+asyncpg://
    mysql:// or mysql+pymysql://  ->  mysql+aiomysql://
    sqlite://                     ->  sqlite+aiosqlite://

The engine is process-wide. ``init_db`` creates the tables on startup and
``close_db`` disposes the pool, after which a different URL may be used.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_SCHEMES = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

_POOL_OPTIONS = {
    "pool_size": 10,
    "max_overflow": 20,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}

_engine: Optional[AsyncEngine] = None
_sessions: Optional[async_sessionmaker[AsyncSession]] = None


def _to_async_url(db_url: str) -> str:
    scheme, sep, rest = db_url.partition("://")
    if not sep:
        return db_url
    return f"{_ASYNC_SCHEMES.get(scheme, scheme)}://{rest}"


def _engine_options(db_url: str) -> dict[str, Any]:
    options: dict[str, Any] = {"echo": get_settings().debug}
    if db_url.startswith("sqlite"):
        # aiosqlite runs the connection on its own thread
        options["connect_args"] = {"check_same_thread": False}
    else:
        options.update(_POOL_OPTIONS)
    return options


def get_engine(db_url: Optional[str] = None) -> AsyncEngine:
    """The shared engine; ``db_url`` is only read when none exists yet."""
    global _engine
    if _engine is None:
        url = _to_async_url(db_url or get_settings().database.url)
        _engine = create_async_engine(url, **_engine_options(url))
        logger.info("database_engine_created", dialect=_engine.dialect.name,
                    url=make_url(url).render_as_string(hide_password=True))
    return _engine


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One unit of work: commit on success, roll back on any error."""
    global _sessions
    if _sessions is None:
        _sessions = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    async with _sessions() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(db_url: Optional[str] = None) -> None:
    engine = get_engine(db_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _sessions
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _sessions = None
    logger.info("database_closed")
