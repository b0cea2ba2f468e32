"""GET /authorize: ordered validation, code issuance, IdP hand-off.

Each failure case checks two things: the RFC 6749 error code, and that
the code store was left untouched.  A request that fails validation must
never create a code.
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from oauth_engine.repos.base import hash_secret
from oauth_engine.repos.code_store import InMemoryCodeStore
from tests.conftest import (
    CONSENT_URL,
    EXTERNAL_CLIENT_ID,
    EXTERNAL_REDIRECT_URI,
    LOGIN_URL,
    OTHER_REDIRECT_URI,
)


def _params(**overrides: str | None) -> dict[str, str]:
    params: dict[str, str | None] = {
        "client_id": EXTERNAL_CLIENT_ID,
        "redirect_uri": EXTERNAL_REDIRECT_URI,
        "response_type": "code",
        "scope": "openid email",
        "state": "xyz",
    }
    params.update(overrides)
    return {k: v for k, v in params.items() if v is not None}


def _query(location: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(location).query).items()}


def test_authorize_issues_code_and_redirects_to_consent(
    logged_in: TestClient, code_store: InMemoryCodeStore
) -> None:
    resp = logged_in.get("/authorize", params=_params())
    assert resp.status_code == 302
    location = resp.headers["location"]
    assert location.startswith(CONSENT_URL)

    q = _query(location)
    assert q["state"] == "xyz"
    assert q["redirect_uri"] == EXTERNAL_REDIRECT_URI
    record = code_store._by_code_hash[hash_secret(q["code"])]
    assert record.client_id == EXTERNAL_CLIENT_ID
    assert record.subject == "alice"
    assert record.scope == ("openid", "email")
    assert record.state == "xyz"
    assert record.consumed is False


def test_authorize_response_is_not_cached(logged_in: TestClient) -> None:
    resp = logged_in.get("/authorize", params=_params())
    assert resp.headers["cache-control"] == "no-store"


def test_authorize_without_state_omits_it(logged_in: TestClient) -> None:
    resp = logged_in.get("/authorize", params=_params(state=None))
    assert resp.status_code == 302
    assert "state" not in _query(resp.headers["location"])


def test_authorize_defaults_scope(
    logged_in: TestClient, code_store: InMemoryCodeStore
) -> None:
    resp = logged_in.get("/authorize", params=_params(scope=None))
    assert resp.status_code == 302
    code = _query(resp.headers["location"])["code"]
    assert code_store._by_code_hash[hash_secret(code)].scope == ("openid",)


def test_authorize_without_session_redirects_to_login(
    client: TestClient, code_store: InMemoryCodeStore
) -> None:
    resp = client.get("/authorize", params=_params())
    assert resp.status_code == 302
    location = resp.headers["location"]
    assert location.startswith(LOGIN_URL)
    # The login page sends the browser back to the same /authorize URL.
    nxt = _query(location)["next"]
    assert urlparse(nxt).path == "/authorize"
    assert _query(nxt)["client_id"] == EXTERNAL_CLIENT_ID
    assert code_store._by_code_hash == {}


def test_authorize_with_forged_session_redirects_to_login(client: TestClient) -> None:
    client.cookies.set("session", "not-a-jwt")
    resp = client.get("/authorize", params=_params())
    assert resp.status_code == 302
    assert resp.headers["location"].startswith(LOGIN_URL)


def test_unauthenticated_request_is_still_validated(client: TestClient) -> None:
    """Bad requests are rejected before the login hop, not after it."""
    resp = client.get("/authorize", params=_params(client_id="nope"))
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_client"


@pytest.mark.parametrize(
    ("overrides", "error"),
    [
        ({"client_id": None}, "invalid_request"),
        ({"redirect_uri": None}, "invalid_request"),
        ({"client_id": "unknown-app"}, "invalid_client"),
        ({"redirect_uri": "https://evil.example/cb"}, "invalid_request"),
        ({"redirect_uri": EXTERNAL_REDIRECT_URI + "/"}, "invalid_request"),
        ({"redirect_uri": OTHER_REDIRECT_URI}, "invalid_request"),
        ({"response_type": "token"}, "unsupported_response_type"),
        ({"response_type": None}, "unsupported_response_type"),
        ({"scope": "openid admin"}, "invalid_scope"),
    ],
)
def test_authorize_rejections(
    logged_in: TestClient,
    code_store: InMemoryCodeStore,
    overrides: dict[str, str | None],
    error: str,
) -> None:
    resp = logged_in.get("/authorize", params=_params(**overrides))
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == error
    assert body["error_description"]
    assert "location" not in resp.headers
    assert code_store._by_code_hash == {}


@pytest.mark.parametrize(
    ("overrides", "error"),
    [
        # Missing client_id beats everything else.
        ({"client_id": None, "response_type": "token"}, "invalid_request"),
        # Unknown client beats a bad redirect_uri.
        (
            {"client_id": "unknown-app", "redirect_uri": "https://evil.example/cb"},
            "invalid_client",
        ),
        # Unregistered redirect_uri beats a bad response_type.
        (
            {"redirect_uri": "https://evil.example/cb", "response_type": "token"},
            "invalid_request",
        ),
        # Bad response_type beats a bad scope.
        ({"response_type": "token", "scope": "admin"}, "unsupported_response_type"),
    ],
)
def test_first_failing_check_wins(
    logged_in: TestClient, overrides: dict[str, str | None], error: str
) -> None:
    resp = logged_in.get("/authorize", params=_params(**overrides))
    assert resp.json()["error"] == error


def test_invalid_scope_lists_offending_scopes(logged_in: TestClient) -> None:
    resp = logged_in.get("/authorize", params=_params(scope="openid admin billing"))
    description = resp.json()["error_description"]
    assert "admin" in description
    assert "billing" in description
    assert "openid" not in description.split(":")[-1]


def test_scope_subset_is_accepted(logged_in: TestClient) -> None:
    resp = logged_in.get("/authorize", params=_params(scope="openid"))
    assert resp.status_code == 302


def test_never_redirects_to_unregistered_uri(logged_in: TestClient) -> None:
    resp = logged_in.get(
        "/authorize",
        params=_params(redirect_uri="https://evil.example/cb", scope="admin"),
    )
    assert resp.status_code == 400
    assert "evil.example" not in resp.headers.get("location", "")
