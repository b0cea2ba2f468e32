from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class AccessToken:
    token_hash: str
    client_id: str
    subject: str
    scope: tuple[str, ...]
    issued_at: int
    expires_at: int
    family_id: str
    revoked: bool = False

    def is_expired(self, now: int) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True, slots=True)
class RefreshToken:
    token_hash: str
    client_id: str
    subject: str
    scope: tuple[str, ...]
    issued_at: int
    expires_at: int
    # First token hash in the rotation chain; shared by every descendant.
    family_id: str
    rotated_from: str | None = None
    revoked: bool = False

    def is_expired(self, now: int) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True, slots=True)
class TokenPair:
    """Raw token strings plus their persisted records.

    Raw values leave the process exactly once, in the /token response.
    """

    access_token: str
    refresh_token: str
    access: AccessToken
    refresh: RefreshToken

    @property
    def expires_in(self) -> int:
        return self.access.expires_at - self.access.issued_at

    @property
    def scope(self) -> str:
        return " ".join(self.access.scope)


@dataclass(frozen=True, slots=True)
class AccessTokenInfo:
    """Read-only view handed to resource servers by validate_access."""

    subject: str
    client_id: str
    scope: tuple[str, ...]
    issued_at: int
    expires_at: int
