"""Async database handle and FastAPI dependency.

Supports both PostgreSQL (production) and SQLite (local dev).
"""

import logging
from collections.abc import AsyncGenerator
from pathlib import Path

from fastapi import Request
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from tokenledger.constants import SQLITE_BUSY_TIMEOUT

logger = logging.getLogger(__name__)


def _prepare_url(db_url: str) -> str:
    # SQLite: swap driver to aiosqlite and ensure the data directory exists
    if db_url.startswith("sqlite:///"):
        db_url = db_url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    if db_url.startswith("sqlite+aiosqlite:///"):
        db_path = db_url.split("///")[-1]
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    return db_url


def _use_immediate_transactions(engine: AsyncEngine) -> None:
    """Make SQLite take the write lock at BEGIN.

    pysqlite's deferred transactions let two writers both hold SHARED locks
    and deadlock on upgrade; BEGIN IMMEDIATE serialises writers instead.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    """Owns the engine and session factory for the lifetime of the process.

    Constructed once (app lifespan, seed script or test fixture) and
    passed by reference; nothing else opens connections.
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = _prepare_url(url)
        self.is_sqlite = self.url.startswith("sqlite")

        if self.is_sqlite:
            self.engine = create_async_engine(
                self.url,
                echo=echo,
                connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
            )
            _use_immediate_transactions(self.engine)
        else:
            self.engine = create_async_engine(self.url, echo=echo, pool_pre_ping=True)

        self.session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    def session(self) -> AsyncSession:
        return self.session_factory()

    async def create_all(self) -> None:
        """Create tables directly (SQLite dev/tests); PostgreSQL uses Alembic."""
        from tokenledger.models import Base

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async database session."""
    database: Database = request.app.state.db
    async with database.session() as session:
        try:
            yield session
        finally:
            await session.close()
