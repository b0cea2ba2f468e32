"""Access and refresh token storage with rotation.

Tokens are opaque random strings.  The store keeps only their SHA-256
hashes, so a leaked table cannot be replayed.

REFRESH TOKEN ROTATION
-----------------------
Every successful refresh revokes the presented refresh token and issues
a new one::

    R1 --redeem--> (A2, R2)      R1 revoked
    R2 --redeem--> (A3, R3)      R2 revoked
    R1 --redeem--> RefreshRevoked

All tokens descended from one authorization share a ``family_id`` (the
hash of the first refresh token).  Presenting a revoked refresh token
means two parties held the same token: the legitimate client and
someone else.  We cannot tell which one is presenting it now, so with
``revoke_family_on_reuse`` the whole family (every refresh and access
token in the chain) is revoked and the user has to authorize again.
"""

from __future__ import annotations

import dataclasses
import threading
from typing import Protocol

from oauth_engine.models.tokens import (
    AccessToken,
    AccessTokenInfo,
    RefreshToken,
    TokenPair,
)
from oauth_engine.repos.base import Clock, generate_secret, hash_secret, utc_now


class TokenRejected(Exception):
    """redeem_refresh refused the token.  Subclasses say why (for logs only)."""

    reason = "rejected"


class RefreshNotFound(TokenRejected):
    reason = "not found"


class RefreshExpired(TokenRejected):
    reason = "expired"


class RefreshRevoked(TokenRejected):
    reason = "revoked (reuse)"

    def __init__(self, family_id: str, family_revoked: int = 0) -> None:
        super().__init__(family_id)
        self.family_id = family_id
        self.family_revoked = family_revoked


class RefreshMismatch(TokenRejected):
    reason = "issued to another client"


class ScopeWidened(TokenRejected):
    reason = "requested scope exceeds original grant"

    def __init__(self, extra: list[str]) -> None:
        super().__init__(" ".join(extra))
        self.extra = extra


class TokenStore(Protocol):
    async def issue(
        self, client_id: str, subject: str, scope: tuple[str, ...]
    ) -> TokenPair: ...

    async def redeem_refresh(
        self,
        refresh_token: str,
        *,
        client_id: str | None = None,
        scope: tuple[str, ...] | None = None,
    ) -> TokenPair: ...

    async def validate_access(self, token: str) -> AccessTokenInfo | None: ...
    async def revoke(self, token: str, *, client_id: str | None = None) -> bool: ...
    async def revoke_family(self, family_id: str) -> int: ...
    async def sweep_expired(self) -> int: ...


@dataclasses.dataclass(frozen=True, slots=True)
class TokenLifetimes:
    access_ttl_sec: int = 3600
    refresh_ttl_sec: int = 30 * 24 * 3600


def mint_pair(
    *,
    client_id: str,
    subject: str,
    scope: tuple[str, ...],
    now: int,
    lifetimes: TokenLifetimes,
    family_id: str | None = None,
    rotated_from: str | None = None,
) -> TokenPair:
    """Generate a fresh access/refresh pair.  Pure: persisting is the caller's job."""
    raw_access = generate_secret()
    raw_refresh = generate_secret()
    refresh_hash = hash_secret(raw_refresh)
    family = family_id or refresh_hash
    access = AccessToken(
        token_hash=hash_secret(raw_access),
        client_id=client_id,
        subject=subject,
        scope=tuple(scope),
        issued_at=now,
        expires_at=now + lifetimes.access_ttl_sec,
        family_id=family,
    )
    refresh = RefreshToken(
        token_hash=refresh_hash,
        client_id=client_id,
        subject=subject,
        scope=tuple(scope),
        issued_at=now,
        expires_at=now + lifetimes.refresh_ttl_sec,
        family_id=family,
        rotated_from=rotated_from,
    )
    return TokenPair(
        access_token=raw_access, refresh_token=raw_refresh, access=access, refresh=refresh
    )


def check_refresh(
    record: RefreshToken | None,
    now: int,
    client_id: str | None,
    scope: tuple[str, ...] | None,
) -> RefreshToken:
    """Return ``record`` if redeemable, else raise the matching TokenRejected.

    RefreshRevoked is raised without family details; the store decides
    whether to revoke the family and re-raises with the count.
    """
    if record is None:
        raise RefreshNotFound()
    if record.revoked:
        raise RefreshRevoked(record.family_id)
    if record.is_expired(now):
        raise RefreshExpired()
    if client_id is not None and record.client_id != client_id:
        raise RefreshMismatch()
    if scope:
        extra = [s for s in scope if s not in record.scope]
        if extra:
            raise ScopeWidened(extra)
    return record


class InMemoryTokenStore:
    """Per-process token store guarded by one ``threading.Lock``.

    The lock is never held across an ``await``, so it is safe to share
    between the event loop and FastAPI's threadpool.
    """

    def __init__(
        self,
        *,
        lifetimes: TokenLifetimes | None = None,
        revoke_family_on_reuse: bool = True,
        clock: Clock = utc_now,
    ) -> None:
        self._lifetimes = lifetimes or TokenLifetimes()
        self._revoke_family_on_reuse = revoke_family_on_reuse
        self._clock = clock
        self._lock = threading.Lock()
        self._access: dict[str, AccessToken] = {}
        self._refresh: dict[str, RefreshToken] = {}

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
        with self._lock:
            self._store(pair)
        return pair

    async def redeem_refresh(
        self,
        refresh_token: str,
        *,
        client_id: str | None = None,
        scope: tuple[str, ...] | None = None,
    ) -> TokenPair:
        token_hash = hash_secret(refresh_token)
        with self._lock:
            found = self._refresh.get(token_hash)
            now = self._clock()
            try:
                record = check_refresh(found, now, client_id, scope)
            except RefreshRevoked as e:
                revoked = 0
                if self._revoke_family_on_reuse:
                    revoked = self._revoke_family_locked(e.family_id)
                raise RefreshRevoked(e.family_id, revoked) from None

            self._refresh[token_hash] = dataclasses.replace(record, revoked=True)
            pair = mint_pair(
                client_id=record.client_id,
                subject=record.subject,
                scope=scope or record.scope,
                now=now,
                lifetimes=self._lifetimes,
                family_id=record.family_id,
                rotated_from=token_hash,
            )
            self._store(pair)
        return pair

    async def validate_access(self, token: str) -> AccessTokenInfo | None:
        record = self._access.get(hash_secret(token))
        if record is None or record.revoked or record.is_expired(self._clock()):
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
        with self._lock:
            refresh = self._refresh.get(token_hash)
            if refresh is not None:
                if client_id is not None and refresh.client_id != client_id:
                    return False
                # RFC 7009 §2.1: revoking a refresh token drops the whole grant.
                return self._revoke_family_locked(refresh.family_id) > 0

            access = self._access.get(token_hash)
            if access is None or access.revoked:
                return False
            if client_id is not None and access.client_id != client_id:
                return False
            self._access[token_hash] = dataclasses.replace(access, revoked=True)
            return True

    async def revoke_family(self, family_id: str) -> int:
        with self._lock:
            return self._revoke_family_locked(family_id)

    async def sweep_expired(self) -> int:
        now = self._clock()
        with self._lock:
            dead_access = [h for h, t in self._access.items() if t.is_expired(now)]
            dead_refresh = [h for h, t in self._refresh.items() if t.is_expired(now)]
            for h in dead_access:
                del self._access[h]
            for h in dead_refresh:
                del self._refresh[h]
        return len(dead_access) + len(dead_refresh)

    # -- helpers (caller holds the lock) ------------------------------------

    def _store(self, pair: TokenPair) -> None:
        self._access[pair.access.token_hash] = pair.access
        self._refresh[pair.refresh.token_hash] = pair.refresh

    def _revoke_family_locked(self, family_id: str) -> int:
        count = 0
        for h, t in list(self._refresh.items()):
            if t.family_id == family_id and not t.revoked:
                self._refresh[h] = dataclasses.replace(t, revoked=True)
                count += 1
        for h, a in list(self._access.items()):
            if a.family_id == family_id and not a.revoked:
                self._access[h] = dataclasses.replace(a, revoked=True)
                count += 1
        return count
