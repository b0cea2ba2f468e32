"""Backend selection.

Which implementation backs each store is decided once, at startup, from
Settings:

  codes    Redis if REDIS_URL, else SQL if DATABASE_URL, else in-memory
  tokens   SQL if DATABASE_URL, else in-memory
  clients  SQL if DATABASE_URL, else in-memory

Clients are seeded from CLIENTS_FILE when one is configured.  With no
file and no database the built-in development clients are used, and
never in prod.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from oauth_engine.core.config import Settings
from oauth_engine.db.engine import build_engine, build_session_factory, create_schema
from oauth_engine.repos.base import Clock, utc_now
from oauth_engine.repos.client_registry import (
    DEV_CLIENTS,
    ClientRegistry,
    InMemoryClientRegistry,
    load_clients_file,
)
from oauth_engine.repos.code_store import CodeStore, InMemoryCodeStore
from oauth_engine.repos.pg_client_registry import PgClientRegistry
from oauth_engine.repos.pg_code_store import PgCodeStore
from oauth_engine.repos.pg_token_store import PgTokenStore
from oauth_engine.repos.redis_code_store import RedisCodeStore
from oauth_engine.repos.token_store import (
    InMemoryTokenStore,
    TokenLifetimes,
    TokenStore,
)

logger = logging.getLogger(__name__)


@dataclass
class Stores:
    """The three stores plus the connections they share."""

    clients: ClientRegistry
    codes: CodeStore
    tokens: TokenStore
    engine: AsyncEngine | None = None
    redis: aioredis.Redis | None = None

    async def check(self) -> dict[str, str]:
        """Ping each configured backend.  Values: ok | down | not_configured."""
        checks = {"database": "not_configured", "redis": "not_configured"}
        if self.engine is not None:
            try:
                async with self.engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
                checks["database"] = "ok"
            except (SQLAlchemyError, OSError):
                logger.warning("Database ping failed", exc_info=True)
                checks["database"] = "down"
        if self.redis is not None:
            try:
                await self.redis.ping()  # type: ignore[misc]
                checks["redis"] = "ok"
            except (RedisError, OSError):
                logger.warning("Redis ping failed", exc_info=True)
                checks["redis"] = "down"
        return checks

    async def aclose(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
            logger.info("Redis connection pool closed")
        if self.engine is not None:
            await self.engine.dispose()
            logger.info("Database engine disposed")


def build_stores(settings: Settings, *, clock: Clock = utc_now) -> Stores:
    """Construct stores for ``settings``.  Opens no connections yet."""
    engine = None
    session_factory = None
    if settings.database_url:
        engine = build_engine(settings.database_url)
        session_factory = build_session_factory(engine)

    redis_client = None
    if settings.redis_url:
        redis_client = aioredis.from_url(
            settings.redis_url,
            decode_responses=True,
            max_connections=20,
        )

    lifetimes = TokenLifetimes(
        access_ttl_sec=settings.access_token_ttl_sec,
        refresh_ttl_sec=settings.refresh_token_ttl_sec,
    )

    codes: CodeStore
    if redis_client is not None:
        codes = RedisCodeStore(
            redis_client, ttl_sec=settings.auth_code_ttl_sec, clock=clock
        )
    elif session_factory is not None:
        codes = PgCodeStore(
            session_factory, ttl_sec=settings.auth_code_ttl_sec, clock=clock
        )
    else:
        codes = InMemoryCodeStore(ttl_sec=settings.auth_code_ttl_sec, clock=clock)

    tokens: TokenStore
    clients: ClientRegistry
    if session_factory is not None:
        tokens = PgTokenStore(
            session_factory,
            lifetimes=lifetimes,
            revoke_family_on_reuse=settings.revoke_family_on_reuse,
            clock=clock,
        )
        clients = PgClientRegistry(session_factory)
    else:
        tokens = InMemoryTokenStore(
            lifetimes=lifetimes,
            revoke_family_on_reuse=settings.revoke_family_on_reuse,
            clock=clock,
        )
        clients = InMemoryClientRegistry()

    logger.info(
        "Stores selected  clients=%s codes=%s tokens=%s",
        type(clients).__name__,
        type(codes).__name__,
        type(tokens).__name__,
    )
    return Stores(
        clients=clients,
        codes=codes,
        tokens=tokens,
        engine=engine,
        redis=redis_client,
    )


async def prepare_stores(stores: Stores, settings: Settings) -> None:
    """Startup work: schema (outside prod) and client seeding."""
    if stores.engine is not None and not settings.is_prod:
        await create_schema(stores.engine)

    if settings.clients_file:
        seed = load_clients_file(settings.clients_file)
    elif stores.engine is None and not settings.is_prod:
        seed = list(DEV_CLIENTS)
        logger.info("No CLIENTS_FILE configured, registering development clients")
    else:
        seed = []

    for client in seed:
        await stores.clients.register(client)
