"""Async engine and session management.

SQLite connections open every transaction with ``BEGIN IMMEDIATE`` so that
concurrent writers queue on the database lock (busy timeout) instead of
failing with ``database is locked`` when a read lock would need upgrading.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..config import get_settings

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT = 30


def _is_sqlite(url: str) -> bool:
    return url.startswith(("sqlite://", "sqlite+aiosqlite://"))


def build_engine(url: str, **kwargs) -> AsyncEngine:
    """Create an async engine, installing SQLite transaction hooks when needed."""
    if not _is_sqlite(url):
        kwargs.setdefault("pool_pre_ping", True)
        return create_async_engine(url, **kwargs)

    connect_args = kwargs.pop("connect_args", {})
    connect_args.setdefault("timeout", SQLITE_BUSY_TIMEOUT)
    engine = create_async_engine(url, connect_args=connect_args, **kwargs)

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


class DatabaseManager:
    """Owns the process-wide engine and session factory."""

    def __init__(self) -> None:
        self.engine: Optional[AsyncEngine] = None
        self.session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    def initialize(self, url: Optional[str] = None) -> None:
        if self.engine is not None:
            return
        url = url or get_settings().database_url
        self.engine = build_engine(url)
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        logger.info("Database engine initialized (%s)", self.engine.url.get_backend_name())

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
        self.engine = None
        self.session_factory = None


db_manager = DatabaseManager()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """FastAPI dependency returning the shared session factory."""
    if db_manager.session_factory is None:
        db_manager.initialize()
    return db_manager.session_factory


@asynccontextmanager
async def get_db_context() -> AsyncIterator[AsyncSession]:
    """Open a session outside of request dependency injection."""
    session_factory = get_session_factory()
    async with session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
