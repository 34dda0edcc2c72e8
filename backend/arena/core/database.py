"""
Shared async database engine and session accessors.

Mirrors arena.core.redis: the engine is created once during lifespan startup
(or by a test fixture) and every caller goes through the accessors below.
"""

import logging
from typing import AsyncIterator, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _configure_sqlite(engine: AsyncEngine) -> None:
    """
    Take the write lock at BEGIN so concurrent writers queue on the busy
    timeout instead of failing on lock upgrade.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create the shared engine and session factory. Called once during startup."""
    global _engine, _session_factory

    if url.startswith("sqlite"):
        _engine = create_async_engine(url, echo=echo, poolclass=NullPool)
        _configure_sqlite(_engine)
    else:
        _engine = create_async_engine(url, echo=echo, pool_pre_ping=True)

    _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)
    logger.info(f"Database engine initialised ({_engine.dialect.name})")
    return _engine


async def init_db() -> None:
    """Create tables that do not exist yet."""
    # Table classes must be imported before create_all sees them
    from arena.models import contest, market, replay, wallet  # noqa: F401

    async with get_engine().begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Database engine not initialised")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database engine not initialised")
    return _session_factory


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: one session per request."""
    async with get_session_factory()() as session:
        yield session


async def close_db() -> None:
    """Dispose the shared engine. Called during app lifespan shutdown."""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
