"""Async database engine and session factory for the SQLite graph store."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from graphmem.graph.models import Base

if TYPE_CHECKING:
    from graphmem.config.settings import DatabaseSettings

logger = structlog.get_logger()


async def create_db_engine(settings: DatabaseSettings) -> AsyncEngine:
    """Create an async SQLAlchemy engine from DatabaseSettings.

    Every connection runs in WAL mode with foreign keys enforced, so readers
    never block the single writer.
    """
    settings.path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{settings.path}",
        echo=settings.echo,
        connect_args={"timeout": settings.busy_timeout_s},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, _connection_record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    logger.info("db_engine_created", path=str(settings.path))
    return engine


async def ensure_schema(engine: AsyncEngine) -> None:
    """Create the nodes, edges and embeddings tables if missing."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("db_schema_ensured", tables=sorted(Base.metadata.tables))


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create an async session factory bound to the engine."""
    return async_sessionmaker(engine, expire_on_commit=False)
