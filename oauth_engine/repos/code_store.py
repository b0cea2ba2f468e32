"""Authorization code storage.

THE ONE INVARIANT THAT MATTERS
-------------------------------
An authorization code may be redeemed at most once.  The naive version::

    record = store.get(code)          # round trip 1
    if record and not record.used:
        store.mark_used(code)         # round trip 2
        issue_tokens(record)

has a window between the two round trips.  Two token requests carrying
the same (intercepted) code can both pass the ``get`` before either
``mark_used`` lands, and both walk away with tokens.

``consume_if_valid`` closes the window by making read, check and mark a
single step.  How each backend achieves that:

  InMemoryCodeStore  — a lock around the dict read + replace
  PgCodeStore        — one ``UPDATE ... WHERE consumed_at IS NULL AND ...
                       RETURNING``; the row lock serializes racers
  RedisCodeStore     — one Lua script; Redis runs scripts atomically

Whichever racer reaches the atomic step first wins.  Every other racer
sees ``CodeAlreadyConsumed``.
"""

from __future__ import annotations

import dataclasses
import threading
from typing import Protocol

from oauth_engine.models.authorization_code import AuthorizationCode, IssuedCode
from oauth_engine.repos.base import Clock, generate_secret, hash_secret, utc_now


class CodeRejected(Exception):
    """consume_if_valid refused the code.  Subclasses say why (for logs only)."""

    reason = "rejected"


class CodeNotFound(CodeRejected):
    reason = "not found"


class CodeAlreadyConsumed(CodeRejected):
    reason = "already consumed"


class CodeExpired(CodeRejected):
    reason = "expired"


class CodeMismatch(CodeRejected):
    reason = "client_id/redirect_uri mismatch"


class CodeStore(Protocol):
    async def create(
        self,
        client_id: str,
        redirect_uri: str,
        scope: tuple[str, ...],
        state: str | None,
        subject: str,
    ) -> IssuedCode: ...

    async def consume_if_valid(
        self, code: str, client_id: str, redirect_uri: str
    ) -> AuthorizationCode: ...

    async def sweep_expired(self) -> int: ...


def check_code(
    record: AuthorizationCode | None, client_id: str, redirect_uri: str, now: int
) -> AuthorizationCode:
    """Return ``record`` if usable, else raise the matching CodeRejected.

    Pure; shared by the backends so all of them classify failures alike.
    Consumed is checked before expiry so a replay is always reported as one.
    """
    if record is None:
        raise CodeNotFound()
    if record.consumed:
        raise CodeAlreadyConsumed()
    if record.is_expired(now):
        raise CodeExpired()
    if record.client_id != client_id or record.redirect_uri != redirect_uri:
        raise CodeMismatch()
    return record


class InMemoryCodeStore:
    """Per-process store.  Correct under threads and asyncio alike.

    FastAPI runs sync dependencies in a threadpool and async handlers on
    the loop; a ``threading.Lock`` (never held across an ``await``) covers
    both.  Consumed codes are kept until the sweep so replays are
    reported as ``CodeAlreadyConsumed`` rather than ``CodeNotFound``.
    """

    def __init__(self, *, ttl_sec: int = 600, clock: Clock = utc_now) -> None:
        self._ttl_sec = ttl_sec
        self._clock = clock
        self._lock = threading.Lock()
        self._by_code_hash: dict[str, AuthorizationCode] = {}

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
        with self._lock:
            self._by_code_hash[record.code_hash] = record
        return IssuedCode(code=raw_code, record=record)

    async def consume_if_valid(
        self, code: str, client_id: str, redirect_uri: str
    ) -> AuthorizationCode:
        code_hash = hash_secret(code)
        with self._lock:
            record = self._by_code_hash.get(code_hash)
            now = self._clock()
            usable = check_code(record, client_id, redirect_uri, now)
            consumed = dataclasses.replace(usable, consumed_at=now)
            self._by_code_hash[code_hash] = consumed
        return consumed

    async def sweep_expired(self) -> int:
        now = self._clock()
        with self._lock:
            dead = [h for h, r in self._by_code_hash.items() if r.is_expired(now)]
            for h in dead:
                del self._by_code_hash[h]
        return len(dead)
