"""Redis implementation of CodeStore.

WHY REDIS FITS AUTHORIZATION CODES
------------------------------------
Codes live ten minutes, are read once, and are worthless afterwards.
That is exactly the data Redis is good at:
  - Built-in TTL: each code key expires on its own, no sweep job
  - Atomic scripts: a Lua script runs start-to-finish with no other
    command interleaved, which gives consume_if_valid its single step

Each code is a hash at ``oauth:code:<sha256(code)>``.  It is written with
HSET + EXPIRE inside one MULTI/EXEC so a crash can never leave a code
without a TTL.  Consumed codes keep their key (with ``consumed_at`` set)
until the TTL fires, so a replay reports "already consumed".
"""

from __future__ import annotations

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from oauth_engine.models.authorization_code import AuthorizationCode, IssuedCode
from oauth_engine.repos.base import (
    Clock,
    StoreError,
    generate_secret,
    hash_secret,
    utc_now,
)
from oauth_engine.repos.code_store import (
    CodeAlreadyConsumed,
    CodeExpired,
    CodeMismatch,
    CodeNotFound,
    CodeRejected,
)
from oauth_engine.services.scopes import format_scope, parse_scope

# KEYS[1] = code key
# ARGV    = now, client_id, redirect_uri
# Returns {status, field1, value1, ...}; fields only on "ok".
_CONSUME_LUA = """
local rec = redis.call('HGETALL', KEYS[1])
if #rec == 0 then return {'not_found'} end
local h = {}
for i = 1, #rec, 2 do h[rec[i]] = rec[i + 1] end
if h['consumed_at'] then return {'consumed'} end
if tonumber(h['expires_at']) <= tonumber(ARGV[1]) then return {'expired'} end
if h['client_id'] ~= ARGV[2] or h['redirect_uri'] ~= ARGV[3] then
  return {'mismatch'}
end
redis.call('HSET', KEYS[1], 'consumed_at', ARGV[1])
local out = {'ok'}
for i = 1, #rec do out[#out + 1] = rec[i] end
return out
"""

_REJECTIONS: dict[str, type[CodeRejected]] = {
    "not_found": CodeNotFound,
    "consumed": CodeAlreadyConsumed,
    "expired": CodeExpired,
    "mismatch": CodeMismatch,
}


class RedisCodeStore:
    """Satisfies the CodeStore Protocol on a shared Redis instance."""

    _PREFIX = "oauth:code:"

    def __init__(
        self,
        redis_client: aioredis.Redis,
        *,
        ttl_sec: int = 600,
        clock: Clock = utc_now,
    ) -> None:
        self._redis = redis_client
        self._ttl_sec = ttl_sec
        self._clock = clock
        self._consume = redis_client.register_script(_CONSUME_LUA)

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
        fields = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scope": format_scope(record.scope),
            "subject": subject,
            "issued_at": str(record.issued_at),
            "expires_at": str(record.expires_at),
        }
        if state is not None:
            fields["state"] = state

        key = f"{self._PREFIX}{record.code_hash}"
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping=fields)
                pipe.expire(key, self._ttl_sec)
                await pipe.execute()
        except RedisError as e:
            raise StoreError("authorization code insert failed") from e
        return IssuedCode(code=raw_code, record=record)

    async def consume_if_valid(
        self, code: str, client_id: str, redirect_uri: str
    ) -> AuthorizationCode:
        code_hash = hash_secret(code)
        now = self._clock()
        try:
            reply = await self._consume(
                keys=[f"{self._PREFIX}{code_hash}"],
                args=[now, client_id, redirect_uri],
            )
        except RedisError as e:
            raise StoreError("authorization code consume failed") from e

        status, *flat = [_text(v) for v in reply]
        if status != "ok":
            raise _REJECTIONS.get(status, CodeNotFound)()

        h = dict(zip(flat[0::2], flat[1::2], strict=True))
        return AuthorizationCode(
            code_hash=code_hash,
            client_id=h["client_id"],
            redirect_uri=h["redirect_uri"],
            scope=parse_scope(h.get("scope")),
            state=h.get("state"),
            subject=h["subject"],
            issued_at=int(h["issued_at"]),
            expires_at=int(h["expires_at"]),
            consumed_at=now,
        )

    async def sweep_expired(self) -> int:
        # Key TTLs reclaim codes on their own.
        return 0


def _text(value: bytes | str) -> str:
    return value.decode() if isinstance(value, bytes) else value
