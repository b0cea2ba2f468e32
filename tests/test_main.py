"""App wiring: create_app with its own stores, run through the lifespan."""

from __future__ import annotations

import json
from pathlib import Path
from urllib.parse import parse_qs, urlparse

from fastapi.testclient import TestClient

from oauth_engine.main import create_app
from oauth_engine.repos.client_registry import InMemoryClientRegistry
from oauth_engine.repos.code_store import InMemoryCodeStore
from oauth_engine.repos.token_store import InMemoryTokenStore
from tests.conftest import (
    CONSENT_URL,
    EXTERNAL_CLIENT_ID,
    EXTERNAL_REDIRECT_URI,
    make_settings,
    mint_session,
)


def _authorize_params() -> dict[str, str]:
    return {
        "client_id": EXTERNAL_CLIENT_ID,
        "redirect_uri": EXTERNAL_REDIRECT_URI,
        "response_type": "code",
        "scope": "openid email",
        "state": "xyz",
    }


def test_default_app_builds_in_memory_stores() -> None:
    app = create_app(make_settings())
    stores = app.state.stores
    assert isinstance(stores.clients, InMemoryClientRegistry)
    assert isinstance(stores.codes, InMemoryCodeStore)
    assert isinstance(stores.tokens, InMemoryTokenStore)


def test_lifespan_registers_dev_clients_and_serves_code_flow() -> None:
    app = create_app(make_settings())
    with TestClient(app, follow_redirects=False) as client:
        client.cookies.set("session", mint_session("carol"))
        resp = client.get("/authorize", params=_authorize_params())
        assert resp.status_code == 302
        location = resp.headers["location"]
        assert location.startswith(CONSENT_URL)
        code = parse_qs(urlparse(location).query)["code"][0]

        resp = client.post(
            "/token",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": EXTERNAL_REDIRECT_URI,
                "client_id": EXTERNAL_CLIENT_ID,
            },
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["expires_in"] == 3600
        assert body["scope"] == "openid email"

        me = client.get(
            "/resource/me", headers={"Authorization": f"Bearer {body['access_token']}"}
        )
        assert me.json()["subject"] == "carol"


def test_lifespan_loads_clients_file(tmp_path: Path) -> None:
    clients_file = tmp_path / "clients.json"
    clients_file.write_text(
        json.dumps(
            [
                {
                    "client_id": "file-app",
                    "name": "From File",
                    "redirect_uris": ["https://file.example/cb"],
                    "allowed_scopes": ["openid"],
                }
            ]
        )
    )
    app = create_app(make_settings(clients_file=str(clients_file)))
    with TestClient(app, follow_redirects=False) as client:
        client.cookies.set("session", mint_session())
        ok = client.get(
            "/authorize",
            params={
                "client_id": "file-app",
                "redirect_uri": "https://file.example/cb",
                "response_type": "code",
            },
        )
        assert ok.status_code == 302

        # Development clients are not registered when a file is configured.
        dev = client.get("/authorize", params=_authorize_params())
        assert dev.json()["error"] == "invalid_client"


def test_docs_disabled_outside_dev() -> None:
    client = TestClient(create_app(make_settings()))
    assert client.get("/docs").status_code == 404
