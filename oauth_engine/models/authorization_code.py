from __future__ import annotations

from dataclasses import dataclass

# •	code_hash: str           sha256 of the raw code; the raw code is never stored
# •	client_id: str
# •	redirect_uri: str
# •	scope: tuple[str, ...]   ordered, de-duplicated
# •	state: str | None        opaque passthrough
# •	subject: str             authenticated end user
# •	issued_at / expires_at:  unix seconds
# •	consumed_at: int | None  set exactly once, on successful redemption


@dataclass(frozen=True, slots=True)
class AuthorizationCode:
    code_hash: str
    client_id: str
    redirect_uri: str
    scope: tuple[str, ...]
    state: str | None
    subject: str
    issued_at: int
    expires_at: int
    consumed_at: int | None = None

    @property
    def consumed(self) -> bool:
        return self.consumed_at is not None

    def is_expired(self, now: int) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True, slots=True)
class IssuedCode:
    """What CodeStore.create hands back: the raw code plus its record.

    The raw ``code`` exists only here, on its way to the redirect URL.
    """

    code: str
    record: AuthorizationCode
