from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Client:
    """A registered third-party application.

    Provisioned out-of-band and read-only to the engine.  ``secret_hash``
    is an argon2 hash for confidential clients and ``None`` for public ones.
    """

    client_id: str
    name: str
    redirect_uris: frozenset[str]
    allowed_scopes: frozenset[str]
    secret_hash: str | None = None

    @property
    def is_confidential(self) -> bool:
        return self.secret_hash is not None

    @staticmethod
    def new(
        *,
        client_id: str,
        name: str,
        redirect_uris: tuple[str, ...] | list[str] | frozenset[str],
        allowed_scopes: tuple[str, ...] | list[str] | frozenset[str],
        secret_hash: str | None = None,
    ) -> Client:
        if not client_id:
            raise ValueError("client_id must be non-empty")
        if not redirect_uris:
            raise ValueError(f"client {client_id!r} needs at least one redirect_uri")
        return Client(
            client_id=client_id,
            name=name or client_id,
            redirect_uris=frozenset(redirect_uris),
            allowed_scopes=frozenset(allowed_scopes),
            secret_hash=secret_hash,
        )
