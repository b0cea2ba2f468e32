"""SQL implementation of TokenStore.

Refresh redemption mirrors PgCodeStore: a single conditional
``UPDATE refresh_tokens SET revoked = true WHERE ... AND revoked = false
RETURNING *`` decides the winner, and the new pair is inserted in the same
transaction.  If anything after the winning UPDATE fails (scope widening,
insert error) the transaction rolls back and the old token stays usable.
"""

from __future__ import annotations

import logging

from sqlalchemy import delete, select, update
from sqlalchemy.engine import RowMapping
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from oauth_engine.db.tables import AccessTokenRow, RefreshTokenRow
from oauth_engine.models.tokens import (
    AccessToken,
    AccessTokenInfo,
    RefreshToken,
    TokenPair,
)
from oauth_engine.repos.base import Clock, StoreError, hash_secret, utc_now
from oauth_engine.repos.token_store import (
    RefreshRevoked,
    ScopeWidened,
    TokenLifetimes,
    TokenRejected,
    check_refresh,
    mint_pair,
)
from oauth_engine.services.scopes import format_scope, parse_scope

logger = logging.getLogger(__name__)

_access = AccessTokenRow.__table__
_refresh = RefreshTokenRow.__table__


class PgTokenStore:
    """Satisfies the TokenStore Protocol using access_tokens / refresh_tokens."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        lifetimes: TokenLifetimes | None = None,
        revoke_family_on_reuse: bool = True,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._lifetimes = lifetimes or TokenLifetimes()
        self._revoke_family_on_reuse = revoke_family_on_reuse
        self._clock = clock

    async def issue(
        self, client_id: str, subject: str, scope: tuple[str, ...]
    ) -> TokenPair:
        pair = mint_pair(
            client_id=client_id,
            subject=subject,
            scope=scope,
            now=self._clock(),
            lifetimes=self._lifetimes,
        )
        try:
            async with self._session_factory() as session, session.begin():
                await _insert_pair(session, pair)
        except SQLAlchemyError as e:
            raise StoreError("token insert failed") from e
        return pair

    async def redeem_refresh(
        self,
        refresh_token: str,
        *,
        client_id: str | None = None,
        scope: tuple[str, ...] | None = None,
    ) -> TokenPair:
        token_hash = hash_secret(refresh_token)
        now = self._clock()
        claim = (
            update(_refresh)
            .where(_refresh.c.token_hash == token_hash)
            .where(_refresh.c.revoked.is_(False))
            .where(_refresh.c.expires_at > now)
            .values(revoked=True)
            .returning(*_refresh.c)
        )
        if client_id is not None:
            claim = claim.where(_refresh.c.client_id == client_id)

        rejection: TokenRejected
        try:
            async with self._session_factory() as session, session.begin():
                won = (await session.execute(claim)).mappings().one_or_none()
                if won is not None:
                    record = _mapping_to_refresh(won)
                    if scope:
                        extra = [s for s in scope if s not in record.scope]
                        if extra:
                            # Raising inside the transaction rolls the claim back.
                            raise ScopeWidened(extra)
                    pair = mint_pair(
                        client_id=record.client_id,
                        subject=record.subject,
                        scope=scope or record.scope,
                        now=now,
                        lifetimes=self._lifetimes,
                        family_id=record.family_id,
                        rotated_from=token_hash,
                    )
                    await _insert_pair(session, pair)
                    return pair

                current = (
                    await session.execute(
                        select(_refresh).where(_refresh.c.token_hash == token_hash)
                    )
                ).mappings().one_or_none()
                existing = _mapping_to_refresh(current) if current is not None else None
                rejection = await self._why_claim_lost(
                    session, existing, now, client_id, scope
                )
        except SQLAlchemyError as e:
            raise StoreError("refresh token redemption failed") from e
        raise rejection

    async def _why_claim_lost(
        self,
        session: AsyncSession,
        existing: RefreshToken | None,
        now: int,
        client_id: str | None,
        scope: tuple[str, ...] | None,
    ) -> TokenRejected:
        try:
            record = check_refresh(existing, now, client_id, scope)
        except RefreshRevoked as e:
            revoked = 0
            if self._revoke_family_on_reuse:
                revoked = await _revoke_family(session, e.family_id)
            return RefreshRevoked(e.family_id, revoked)
        except TokenRejected as e:
            return e
        # Looked valid on re-read: a concurrent redeemer won.
        return RefreshRevoked(record.family_id)

    async def validate_access(self, token: str) -> AccessTokenInfo | None:
        stmt = select(_access).where(_access.c.token_hash == hash_secret(token))
        try:
            async with self._session_factory() as session:
                row = (await session.execute(stmt)).mappings().one_or_none()
        except SQLAlchemyError as e:
            raise StoreError("access token lookup failed") from e
        if row is None:
            return None
        record = _mapping_to_access(row)
        if record.revoked or record.is_expired(self._clock()):
            return None
        return AccessTokenInfo(
            subject=record.subject,
            client_id=record.client_id,
            scope=record.scope,
            issued_at=record.issued_at,
            expires_at=record.expires_at,
        )

    async def revoke(self, token: str, *, client_id: str | None = None) -> bool:
        token_hash = hash_secret(token)
        try:
            async with self._session_factory() as session, session.begin():
                refresh = (
                    await session.execute(
                        select(_refresh.c.client_id, _refresh.c.family_id).where(
                            _refresh.c.token_hash == token_hash
                        )
                    )
                ).one_or_none()
                if refresh is not None:
                    if client_id is not None and refresh.client_id != client_id:
                        return False
                    return await _revoke_family(session, refresh.family_id) > 0

                stmt = (
                    update(_access)
                    .where(_access.c.token_hash == token_hash)
                    .where(_access.c.revoked.is_(False))
                    .values(revoked=True)
                )
                if client_id is not None:
                    stmt = stmt.where(_access.c.client_id == client_id)
                result = await session.execute(stmt)
                return (result.rowcount or 0) > 0
        except SQLAlchemyError as e:
            raise StoreError("token revocation failed") from e

    async def revoke_family(self, family_id: str) -> int:
        try:
            async with self._session_factory() as session, session.begin():
                return await _revoke_family(session, family_id)
        except SQLAlchemyError as e:
            raise StoreError("token family revocation failed") from e

    async def sweep_expired(self) -> int:
        now = self._clock()
        try:
            async with self._session_factory() as session, session.begin():
                a = await session.execute(delete(_access).where(_access.c.expires_at <= now))
                r = await session.execute(delete(_refresh).where(_refresh.c.expires_at <= now))
        except SQLAlchemyError as e:
            raise StoreError("token sweep failed") from e
        return (a.rowcount or 0) + (r.rowcount or 0)


async def _insert_pair(session: AsyncSession, pair: TokenPair) -> None:
    a, r = pair.access, pair.refresh
    await session.execute(
        _access.insert().values(
            token_hash=a.token_hash,
            client_id=a.client_id,
            subject=a.subject,
            scope=format_scope(a.scope),
            issued_at=a.issued_at,
            expires_at=a.expires_at,
            family_id=a.family_id,
            revoked=False,
        )
    )
    await session.execute(
        _refresh.insert().values(
            token_hash=r.token_hash,
            client_id=r.client_id,
            subject=r.subject,
            scope=format_scope(r.scope),
            issued_at=r.issued_at,
            expires_at=r.expires_at,
            family_id=r.family_id,
            rotated_from=r.rotated_from,
            revoked=False,
        )
    )


async def _revoke_family(session: AsyncSession, family_id: str) -> int:
    total = 0
    for table in (_refresh, _access):
        result = await session.execute(
            update(table)
            .where(table.c.family_id == family_id)
            .where(table.c.revoked.is_(False))
            .values(revoked=True)
        )
        total += result.rowcount or 0
    return total


def _mapping_to_refresh(row: RowMapping) -> RefreshToken:
    return RefreshToken(
        token_hash=row["token_hash"],
        client_id=row["client_id"],
        subject=row["subject"],
        scope=parse_scope(row["scope"]),
        issued_at=row["issued_at"],
        expires_at=row["expires_at"],
        family_id=row["family_id"],
        rotated_from=row["rotated_from"],
        revoked=bool(row["revoked"]),
    )


def _mapping_to_access(row: RowMapping) -> AccessToken:
    return AccessToken(
        token_hash=row["token_hash"],
        client_id=row["client_id"],
        subject=row["subject"],
        scope=parse_scope(row["scope"]),
        issued_at=row["issued_at"],
        expires_at=row["expires_at"],
        family_id=row["family_id"],
        revoked=bool(row["revoked"]),
    )
