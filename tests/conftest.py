from __future__ import annotations

import dataclasses
import sys
from pathlib import Path

# Ensure repo root is on sys.path so `import oauth_engine` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest  # noqa: E402
from fastapi import FastAPI  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from oauth_engine.core.config import SETTINGS, Settings  # noqa: E402
from oauth_engine.main import create_app  # noqa: E402
from oauth_engine.models.client import Client  # noqa: E402
from oauth_engine.repos.client_registry import (  # noqa: E402
    DEV_CLIENTS,
    InMemoryClientRegistry,
)
from oauth_engine.repos.code_store import InMemoryCodeStore  # noqa: E402
from oauth_engine.repos.factory import Stores  # noqa: E402
from oauth_engine.repos.token_store import InMemoryTokenStore  # noqa: E402
from oauth_engine.services.client_auth import hash_client_secret  # noqa: E402
from oauth_engine.services.identity import create_session_token  # noqa: E402

EXTERNAL_CLIENT_ID = "external-web-app"
EXTERNAL_REDIRECT_URI = "https://external-app.com/auth/callback"

OTHER_CLIENT_ID = "other-app"
OTHER_REDIRECT_URI = "https://other.example/cb"

CONFIDENTIAL_CLIENT_ID = "confidential-app"
CONFIDENTIAL_REDIRECT_URI = "https://confidential.example/cb"
CONFIDENTIAL_SECRET = "s3cret-confidential-value"

LOGIN_URL = "https://idp.example/login"
CONSENT_URL = "https://idp.example/consent"

START_TIME = 1_700_000_000


class FakeClock:
    """Injectable clock: unix seconds, moved forward by hand."""

    def __init__(self, now: int = START_TIME) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


def make_clients() -> list[Client]:
    return [
        *DEV_CLIENTS,
        Client.new(
            client_id=OTHER_CLIENT_ID,
            name="Other App",
            redirect_uris=(OTHER_REDIRECT_URI,),
            allowed_scopes=("openid",),
        ),
        Client.new(
            client_id=CONFIDENTIAL_CLIENT_ID,
            name="Confidential App",
            redirect_uris=(CONFIDENTIAL_REDIRECT_URI,),
            allowed_scopes=("openid", "email"),
            secret_hash=hash_client_secret(CONFIDENTIAL_SECRET),
        ),
    ]


def make_settings(**overrides: object) -> Settings:
    base = dataclasses.replace(
        SETTINGS,
        app_env="test",
        database_url=None,
        redis_url=None,
        idp_login_url=LOGIN_URL,
        idp_consent_url=CONSENT_URL,
        idp_public_key_pem=None,
        clients_file=None,
        default_scope="openid",
        revoke_family_on_reuse=True,
    )
    return dataclasses.replace(base, **overrides)  # type: ignore[arg-type]


def mint_session(subject: str = "alice") -> str:
    """Create a valid IdP session assertion for testing."""
    return create_session_token(sub=subject)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry() -> InMemoryClientRegistry:
    return InMemoryClientRegistry(make_clients())


@pytest.fixture
def code_store(clock: FakeClock) -> InMemoryCodeStore:
    return InMemoryCodeStore(ttl_sec=600, clock=clock)


@pytest.fixture
def token_store(clock: FakeClock) -> InMemoryTokenStore:
    return InMemoryTokenStore(clock=clock)


@pytest.fixture
def stores(
    registry: InMemoryClientRegistry,
    code_store: InMemoryCodeStore,
    token_store: InMemoryTokenStore,
) -> Stores:
    return Stores(clients=registry, codes=code_store, tokens=token_store)


@pytest.fixture
def app(stores: Stores) -> FastAPI:
    return create_app(make_settings(), stores=stores)


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    return TestClient(app, follow_redirects=False)


@pytest.fixture
def logged_in(client: TestClient) -> TestClient:
    """Client whose browser holds an IdP session for subject "alice"."""
    client.cookies.set("session", mint_session("alice"))
    return client
