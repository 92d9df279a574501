"""
Async engine and transactional scopes for the SQL session store.

A plain database URL from settings is mapped onto its async driver:

  postgresql:// | postgres://      → postgresql+asyncpg   (extra: postgres)
  mysql:// | mysql+pymysql://      → mysql+aiomysql       (extra: mysql)
  sqlite://                        → sqlite+aiosqlite

One engine per process. ``init_db`` creates the tables, ``close_db``
disposes the pool; both are driven from the API lifespan.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)
from sqlalchemy.pool import StaticPool

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _to_async_url(db_url: str) -> str:
    scheme, sep, rest = db_url.partition("://")
    if not sep or scheme not in ASYNC_DRIVERS:
        return db_url
    return f"{ASYNC_DRIVERS[scheme]}://{rest}"


def _engine_kwargs(db_url: str, echo: bool = False) -> dict:
    url = make_url(db_url)
    if url.get_backend_name() == "sqlite":
        if url.database in (None, "", ":memory:"):
            # In-memory SQLite lives inside one connection
            return {"echo": echo, "poolclass": StaticPool,
                    "connect_args": {"check_same_thread": False}}
        return {"echo": echo}

    return {
        "echo": echo,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def get_engine(db_url: Optional[str] = None) -> AsyncEngine:
    """Return the process engine; the first call decides the URL."""
    global _engine
    if _engine is None:
        settings = get_settings()
        url = _to_async_url(db_url or settings.database.url)
        _engine = create_async_engine(url, **_engine_kwargs(url, echo=settings.debug))
        logger.info("database_engine_created",
                    dialect=_engine.dialect.name,
                    database=_engine.url.database,
                    host=_engine.url.host)
    return _engine


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One transaction: committed on success, rolled back on any error."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)

    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(db_url: Optional[str] = None) -> AsyncEngine:
    engine = get_engine(db_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))
    return engine


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("database_closed")
