"""SQL implementation of ClientRegistry."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from oauth_engine.db.tables import OAuthClientRow
from oauth_engine.models.client import Client
from oauth_engine.repos.base import StoreError


class PgClientRegistry:
    """Satisfies the ClientRegistry Protocol using the oauth_clients table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def lookup(self, client_id: str) -> Client | None:
        stmt = select(OAuthClientRow).where(OAuthClientRow.client_id == client_id)
        try:
            async with self._session_factory() as session:
                row = (await session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StoreError("client lookup failed") from e
        if row is None:
            return None
        return _row_to_client(row)

    async def register(self, client: Client) -> None:
        row = OAuthClientRow(
            client_id=client.client_id,
            name=client.name,
            redirect_uris=sorted(client.redirect_uris),
            allowed_scopes=sorted(client.allowed_scopes),
            secret_hash=client.secret_hash,
        )
        try:
            async with self._session_factory() as session, session.begin():
                await session.merge(row)
        except SQLAlchemyError as e:
            raise StoreError("client registration failed") from e


def _row_to_client(row: OAuthClientRow) -> Client:
    return Client(
        client_id=row.client_id,
        name=row.name,
        redirect_uris=frozenset(row.redirect_uris or ()),
        allowed_scopes=frozenset(row.allowed_scopes or ()),
        secret_hash=row.secret_hash,
    )
