from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Protocol

from oauth_engine.models.client import Client

logger = logging.getLogger(__name__)

# Development clients, registered when no CLIENTS_FILE / database is configured.
DEV_CLIENTS = (
    Client.new(
        client_id="external-web-app",
        name="External Web App",
        redirect_uris=("https://external-app.com/auth/callback",),
        allowed_scopes=("openid", "email", "profile"),
    ),
)


class ClientRegistry(Protocol):
    async def lookup(self, client_id: str) -> Client | None: ...
    async def register(self, client: Client) -> None: ...


class InMemoryClientRegistry:
    """Read-mostly registry backed by a dict.

    ``register`` exists for startup seeding and tests; nothing on the
    request path mutates the registry.
    """

    def __init__(self, clients: tuple[Client, ...] | list[Client] = ()) -> None:
        self._by_client_id: dict[str, Client] = {c.client_id: c for c in clients}

    async def lookup(self, client_id: str) -> Client | None:
        return self._by_client_id.get(client_id)

    async def register(self, client: Client) -> None:
        self._by_client_id[client.client_id] = client


def load_clients_file(path: str | Path) -> list[Client]:
    """Parse a JSON list of client definitions.

    Each entry: ``{"client_id", "name", "redirect_uris", "allowed_scopes",
    "secret_hash"?}``.  Raises ValueError with the offending entry index
    on malformed input so a bad deploy fails at startup, not at /authorize.
    """
    raw = json.loads(Path(path).read_text())
    if not isinstance(raw, list):
        raise ValueError(f"{path}: expected a JSON list of clients")

    clients: list[Client] = []
    for i, entry in enumerate(raw):
        try:
            clients.append(
                Client.new(
                    client_id=entry["client_id"],
                    name=entry.get("name", ""),
                    redirect_uris=tuple(entry["redirect_uris"]),
                    allowed_scopes=tuple(entry.get("allowed_scopes", ())),
                    secret_hash=entry.get("secret_hash"),
                )
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"{path}: invalid client entry #{i}: {e}") from None

    logger.info("Loaded %d OAuth clients from %s", len(clients), path)
    return clients
