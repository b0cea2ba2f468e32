"""SQL implementation of CodeStore.

A ``SELECT`` followed by a separate ``DELETE``/``UPDATE`` leaves a gap
two token requests can both slip through.  Here the whole decision is
the ``WHERE`` clause of one ``UPDATE ... RETURNING``:

    UPDATE authorization_codes
       SET consumed_at = :now
     WHERE code_hash = :h
       AND consumed_at IS NULL
       AND expires_at > :now
       AND client_id = :client_id
       AND redirect_uri = :redirect_uri
    RETURNING *

Under READ COMMITTED, a second transaction racing on the same row blocks
on the row lock, then re-evaluates the predicate against the committed
row, sees ``consumed_at`` set and updates nothing.  Exactly one winner.

A miss is followed by a plain ``SELECT`` only to classify the failure
for logs; it never mutates anything.
"""

from __future__ import annotations

from sqlalchemy import delete, select, update
from sqlalchemy.engine import RowMapping
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from oauth_engine.db.tables import AuthorizationCodeRow
from oauth_engine.models.authorization_code import AuthorizationCode, IssuedCode
from oauth_engine.repos.base import (
    Clock,
    StoreError,
    generate_secret,
    hash_secret,
    utc_now,
)
from oauth_engine.repos.code_store import CodeAlreadyConsumed, check_code
from oauth_engine.services.scopes import format_scope, parse_scope

_codes = AuthorizationCodeRow.__table__


class PgCodeStore:
    """Satisfies the CodeStore Protocol using the authorization_codes table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ttl_sec: int = 600,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._ttl_sec = ttl_sec
        self._clock = clock

    async def create(
        self,
        client_id: str,
        redirect_uri: str,
        scope: tuple[str, ...],
        state: str | None,
        subject: str,
    ) -> IssuedCode:
        raw_code = generate_secret()
        now = self._clock()
        record = AuthorizationCode(
            code_hash=hash_secret(raw_code),
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=tuple(scope),
            state=state,
            subject=subject,
            issued_at=now,
            expires_at=now + self._ttl_sec,
        )
        try:
            async with self._session_factory() as session, session.begin():
                await session.execute(
                    _codes.insert().values(
                        code_hash=record.code_hash,
                        client_id=record.client_id,
                        redirect_uri=record.redirect_uri,
                        scope=format_scope(record.scope),
                        state=record.state,
                        subject=record.subject,
                        issued_at=record.issued_at,
                        expires_at=record.expires_at,
                        consumed_at=None,
                    )
                )
        except SQLAlchemyError as e:
            raise StoreError("authorization code insert failed") from e
        return IssuedCode(code=raw_code, record=record)

    async def consume_if_valid(
        self, code: str, client_id: str, redirect_uri: str
    ) -> AuthorizationCode:
        code_hash = hash_secret(code)
        now = self._clock()
        stmt = (
            update(_codes)
            .where(_codes.c.code_hash == code_hash)
            .where(_codes.c.consumed_at.is_(None))
            .where(_codes.c.expires_at > now)
            .where(_codes.c.client_id == client_id)
            .where(_codes.c.redirect_uri == redirect_uri)
            .values(consumed_at=now)
            .returning(*_codes.c)
        )
        try:
            async with self._session_factory() as session, session.begin():
                won = (await session.execute(stmt)).mappings().one_or_none()
                if won is not None:
                    return _mapping_to_code(won)
                current = (
                    await session.execute(
                        select(_codes).where(_codes.c.code_hash == code_hash)
                    )
                ).mappings().one_or_none()
        except SQLAlchemyError as e:
            raise StoreError("authorization code consume failed") from e

        record = _mapping_to_code(current) if current is not None else None
        check_code(record, client_id, redirect_uri, now)
        # Predicate failed but the row now looks valid: another racer's view
        # changed between statements.  Never a success.
        raise CodeAlreadyConsumed()

    async def sweep_expired(self) -> int:
        stmt = delete(_codes).where(_codes.c.expires_at <= self._clock())
        try:
            async with self._session_factory() as session, session.begin():
                result = await session.execute(stmt)
        except SQLAlchemyError as e:
            raise StoreError("authorization code sweep failed") from e
        return result.rowcount or 0


def _mapping_to_code(row: RowMapping) -> AuthorizationCode:
    return AuthorizationCode(
        code_hash=row["code_hash"],
        client_id=row["client_id"],
        redirect_uri=row["redirect_uri"],
        scope=parse_scope(row["scope"]),
        state=row["state"],
        subject=row["subject"],
        issued_at=row["issued_at"],
        expires_at=row["expires_at"],
        consumed_at=row["consumed_at"],
    )
