"""Async SQLAlchemy engine and session factory.

When DATABASE_URL is configured the SQL-backed stores share one engine:
- PostgreSQL via asyncpg in deployments
- SQLite via aiosqlite in tests (the schema sticks to portable types)

When DATABASE_URL is None the service runs on in-memory stores and
nothing in this module is instantiated.
"""

from __future__ import annotations

import logging

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all table models."""


def build_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    if database_url.startswith("sqlite"):
        # SQLite has no server-side pool to size.
        engine = create_async_engine(database_url, echo=echo)
        _begin_immediate(engine)
        return engine
    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
    )


def _begin_immediate(engine: AsyncEngine) -> None:
    """Take SQLite's write lock at BEGIN.

    A deferred transaction holds a shared lock while it waits to upgrade,
    so two racing writers deadlock instead of queueing on the busy timeout.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _no_implicit_begin(dbapi_connection, _record):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables.  Dev/test only; deployments run Alembic."""
    import oauth_engine.db.tables  # noqa: F401  (registers tables on Base)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ensured on %s", engine.url.render_as_string(hide_password=True))
