"""POST /token: authorization_code and refresh_token grants over HTTP.

Drives the engine the way a client application would:

  1. GET  /authorize  (browser holds an IdP session) → code on the consent URL
  2. POST /token      grant_type=authorization_code → token pair
  3. POST /token      grant_type=refresh_token      → rotated pair
"""

from __future__ import annotations

import base64
from concurrent.futures import ThreadPoolExecutor
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient
from httpx import Response

from oauth_engine.repos.token_store import InMemoryTokenStore
from tests.conftest import (
    CONFIDENTIAL_CLIENT_ID,
    CONFIDENTIAL_REDIRECT_URI,
    CONFIDENTIAL_SECRET,
    EXTERNAL_CLIENT_ID,
    EXTERNAL_REDIRECT_URI,
    OTHER_CLIENT_ID,
    FakeClock,
)


def _get_code(
    client: TestClient,
    *,
    client_id: str = EXTERNAL_CLIENT_ID,
    redirect_uri: str = EXTERNAL_REDIRECT_URI,
    scope: str = "openid email",
) -> str:
    resp = client.get(
        "/authorize",
        params={
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": scope,
            "state": "xyz",
        },
    )
    assert resp.status_code == 302, resp.text
    return parse_qs(urlparse(resp.headers["location"]).query)["code"][0]


def _redeem(client: TestClient, code: str, **overrides: str) -> Response:
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": EXTERNAL_REDIRECT_URI,
        "client_id": EXTERNAL_CLIENT_ID,
    }
    data.update(overrides)
    return client.post("/token", data=data)


def _refresh(client: TestClient, refresh_token: str, **overrides: str) -> Response:
    data = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": EXTERNAL_CLIENT_ID,
    }
    data.update(overrides)
    return client.post("/token", data=data)


def _basic(client_id: str, secret: str) -> str:
    return "Basic " + base64.b64encode(f"{client_id}:{secret}".encode()).decode()


# ---------------------------------------------------------------------------
# authorization_code grant
# ---------------------------------------------------------------------------


def test_end_to_end_code_exchange(logged_in: TestClient) -> None:
    code = _get_code(logged_in)
    resp = _redeem(logged_in, code)
    assert resp.status_code == 200
    body = resp.json()
    assert body["token_type"] == "Bearer"
    assert body["expires_in"] == 3600
    assert body["scope"] == "openid email"
    assert body["access_token"]
    assert body["refresh_token"]
    assert body["access_token"] != body["refresh_token"]
    assert resp.headers["cache-control"] == "no-store"
    assert resp.headers["pragma"] == "no-cache"


def test_issued_access_token_unlocks_resource(logged_in: TestClient) -> None:
    tokens = _redeem(logged_in, _get_code(logged_in)).json()
    resp = logged_in.get(
        "/resource/me", headers={"Authorization": f"Bearer {tokens['access_token']}"}
    )
    assert resp.status_code == 200
    assert resp.json()["subject"] == "alice"
    assert resp.json()["scope"] == "openid email"


def test_code_is_single_use(logged_in: TestClient) -> None:
    code = _get_code(logged_in)
    assert _redeem(logged_in, code).status_code == 200

    replay = _redeem(logged_in, code)
    assert replay.status_code == 400
    assert replay.json()["error"] == "invalid_grant"


def test_concurrent_redemptions_have_one_winner(logged_in: TestClient) -> None:
    code = _get_code(logged_in)

    with ThreadPoolExecutor(max_workers=10) as pool:
        responses = list(pool.map(lambda _: _redeem(logged_in, code), range(10)))

    statuses = sorted(r.status_code for r in responses)
    assert statuses == [200] + [400] * 9
    errors = [r.json()["error"] for r in responses if r.status_code == 400]
    assert errors == ["invalid_grant"] * 9


def test_expired_code_is_rejected(logged_in: TestClient, clock: FakeClock) -> None:
    code = _get_code(logged_in)
    clock.advance(11 * 60)
    resp = _redeem(logged_in, code)
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_grant"


def test_redirect_uri_must_match_issuance(logged_in: TestClient) -> None:
    code = _get_code(logged_in)
    resp = _redeem(logged_in, code, redirect_uri="https://external-app.com/other")
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_grant"


def test_code_bound_to_issuing_client(logged_in: TestClient) -> None:
    code = _get_code(logged_in)
    resp = _redeem(logged_in, code, client_id=OTHER_CLIENT_ID)
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_grant"
    # The mismatched attempt did not burn the code.
    assert _redeem(logged_in, code).status_code == 200


def test_invalid_grant_descriptions_are_identical(logged_in: TestClient) -> None:
    used = _get_code(logged_in)
    _redeem(logged_in, used)
    mismatched = _get_code(logged_in)

    descriptions = {
        _redeem(logged_in, "never-issued").json()["error_description"],
        _redeem(logged_in, used).json()["error_description"],
        _redeem(logged_in, mismatched, redirect_uri="https://x.example/").json()[
            "error_description"
        ],
    }
    assert len(descriptions) == 1


@pytest.mark.parametrize("missing", ["code", "redirect_uri", "client_id"])
def test_missing_parameter_is_invalid_request(
    logged_in: TestClient, missing: str
) -> None:
    code = _get_code(logged_in)
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": EXTERNAL_REDIRECT_URI,
        "client_id": EXTERNAL_CLIENT_ID,
    }
    del data[missing]
    resp = logged_in.post("/token", data=data)
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_request"
    assert missing in resp.json()["error_description"]
    # Validation failure left the code redeemable.
    assert _redeem(logged_in, code).status_code == 200


@pytest.mark.parametrize(
    ("grant_type", "present"),
    [
        ("authorization_code", {"redirect_uri": EXTERNAL_REDIRECT_URI}),
        ("refresh_token", {}),
    ],
)
def test_missing_body_parameter_wins_over_bad_basic_header(
    client: TestClient, grant_type: str, present: dict[str, str]
) -> None:
    resp = client.post(
        "/token",
        data={"grant_type": grant_type, **present},
        headers={"Authorization": "Basic !!!notbase64"},
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_request"


def test_malformed_basic_header_is_invalid_client(logged_in: TestClient) -> None:
    code = _get_code(logged_in)
    resp = logged_in.post(
        "/token",
        data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": EXTERNAL_REDIRECT_URI,
        },
        headers={"Authorization": "Basic !!!notbase64"},
    )
    assert resp.status_code == 401
    assert resp.json()["error"] == "invalid_client"
    assert resp.headers["www-authenticate"].startswith("Basic")


def test_unknown_client_is_invalid_client(
    logged_in: TestClient, token_store: InMemoryTokenStore
) -> None:
    code = _get_code(logged_in)
    resp = _redeem(logged_in, code, client_id="unknown-app")
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_client"
    assert token_store._access == {}
    assert token_store._refresh == {}


@pytest.mark.parametrize("grant_type", ["password", "client_credentials", "implicit"])
def test_unsupported_grant_type(client: TestClient, grant_type: str) -> None:
    resp = client.post("/token", data={"grant_type": grant_type})
    assert resp.status_code == 400
    assert resp.json()["error"] == "unsupported_grant_type"


def test_missing_grant_type_is_invalid_request(client: TestClient) -> None:
    resp = client.post("/token", data={"client_id": EXTERNAL_CLIENT_ID})
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_request"


# ---------------------------------------------------------------------------
# refresh_token grant
# ---------------------------------------------------------------------------


def test_refresh_rotates_tokens(logged_in: TestClient) -> None:
    first = _redeem(logged_in, _get_code(logged_in)).json()

    resp = _refresh(logged_in, first["refresh_token"])
    assert resp.status_code == 200
    second = resp.json()
    assert second["refresh_token"] != first["refresh_token"]
    assert second["access_token"] != first["access_token"]
    assert second["expires_in"] == 3600
    assert second["scope"] == "openid email"


def test_rotated_refresh_token_is_dead(logged_in: TestClient) -> None:
    r1 = _redeem(logged_in, _get_code(logged_in)).json()["refresh_token"]
    _refresh(logged_in, r1)

    replay = _refresh(logged_in, r1)
    assert replay.status_code == 400
    assert replay.json()["error"] == "invalid_grant"


def test_rotation_chain_continues(logged_in: TestClient) -> None:
    r1 = _redeem(logged_in, _get_code(logged_in)).json()["refresh_token"]
    r2 = _refresh(logged_in, r1).json()["refresh_token"]
    resp = _refresh(logged_in, r2)
    assert resp.status_code == 200


def test_refresh_reuse_revokes_family(logged_in: TestClient) -> None:
    r1 = _redeem(logged_in, _get_code(logged_in)).json()["refresh_token"]
    second = _refresh(logged_in, r1).json()

    _refresh(logged_in, r1)  # reuse of a revoked token

    assert _refresh(logged_in, second["refresh_token"]).json()["error"] == "invalid_grant"
    resp = logged_in.get(
        "/resource/me", headers={"Authorization": f"Bearer {second['access_token']}"}
    )
    assert resp.status_code == 401


def test_refresh_bound_to_client(logged_in: TestClient) -> None:
    r1 = _redeem(logged_in, _get_code(logged_in)).json()["refresh_token"]
    resp = _refresh(logged_in, r1, client_id=OTHER_CLIENT_ID)
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_grant"
    # Still usable by its owner.
    assert _refresh(logged_in, r1).status_code == 200


def test_refresh_may_narrow_scope(logged_in: TestClient) -> None:
    r1 = _redeem(logged_in, _get_code(logged_in)).json()["refresh_token"]
    resp = _refresh(logged_in, r1, scope="openid")
    assert resp.status_code == 200
    assert resp.json()["scope"] == "openid"


def test_refresh_may_not_widen_scope(logged_in: TestClient) -> None:
    r1 = _redeem(logged_in, _get_code(logged_in, scope="openid")).json()["refresh_token"]
    resp = _refresh(logged_in, r1, scope="openid email")
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_scope"
    assert _refresh(logged_in, r1).status_code == 200


def test_expired_refresh_token(logged_in: TestClient, clock: FakeClock) -> None:
    r1 = _redeem(logged_in, _get_code(logged_in)).json()["refresh_token"]
    clock.advance(30 * 24 * 3600)
    resp = _refresh(logged_in, r1)
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_grant"


def test_unknown_refresh_token(client: TestClient) -> None:
    resp = _refresh(client, "not-a-refresh-token")
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_grant"


@pytest.mark.parametrize("missing", ["refresh_token", "client_id"])
def test_refresh_missing_parameter(client: TestClient, missing: str) -> None:
    data = {
        "grant_type": "refresh_token",
        "refresh_token": "whatever",
        "client_id": EXTERNAL_CLIENT_ID,
    }
    del data[missing]
    resp = client.post("/token", data=data)
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_request"


def test_refresh_unknown_client(logged_in: TestClient) -> None:
    r1 = _redeem(logged_in, _get_code(logged_in)).json()["refresh_token"]
    resp = _refresh(logged_in, r1, client_id="unknown-app")
    assert resp.json()["error"] == "invalid_client"
    assert _refresh(logged_in, r1).status_code == 200


def test_concurrent_refresh_has_one_winner(logged_in: TestClient) -> None:
    r1 = _redeem(logged_in, _get_code(logged_in)).json()["refresh_token"]

    with ThreadPoolExecutor(max_workers=10) as pool:
        responses = list(pool.map(lambda _: _refresh(logged_in, r1), range(10)))

    assert sorted(r.status_code for r in responses) == [200] + [400] * 9


# ---------------------------------------------------------------------------
# confidential clients
# ---------------------------------------------------------------------------


def test_confidential_client_with_basic_auth(logged_in: TestClient) -> None:
    code = _get_code(
        logged_in, client_id=CONFIDENTIAL_CLIENT_ID, redirect_uri=CONFIDENTIAL_REDIRECT_URI
    )
    resp = logged_in.post(
        "/token",
        data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": CONFIDENTIAL_REDIRECT_URI,
        },
        headers={"Authorization": _basic(CONFIDENTIAL_CLIENT_ID, CONFIDENTIAL_SECRET)},
    )
    assert resp.status_code == 200


def test_confidential_client_with_form_secret(logged_in: TestClient) -> None:
    code = _get_code(
        logged_in, client_id=CONFIDENTIAL_CLIENT_ID, redirect_uri=CONFIDENTIAL_REDIRECT_URI
    )
    resp = _redeem(
        logged_in,
        code,
        client_id=CONFIDENTIAL_CLIENT_ID,
        redirect_uri=CONFIDENTIAL_REDIRECT_URI,
        client_secret=CONFIDENTIAL_SECRET,
    )
    assert resp.status_code == 200


def test_confidential_client_wrong_secret_is_401(logged_in: TestClient) -> None:
    code = _get_code(
        logged_in, client_id=CONFIDENTIAL_CLIENT_ID, redirect_uri=CONFIDENTIAL_REDIRECT_URI
    )
    resp = logged_in.post(
        "/token",
        data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": CONFIDENTIAL_REDIRECT_URI,
        },
        headers={"Authorization": _basic(CONFIDENTIAL_CLIENT_ID, "wrong")},
    )
    assert resp.status_code == 401
    assert resp.json()["error"] == "invalid_client"
    assert resp.headers["www-authenticate"].startswith("Basic")


def test_confidential_client_without_secret(logged_in: TestClient) -> None:
    code = _get_code(
        logged_in, client_id=CONFIDENTIAL_CLIENT_ID, redirect_uri=CONFIDENTIAL_REDIRECT_URI
    )
    resp = _redeem(
        logged_in,
        code,
        client_id=CONFIDENTIAL_CLIENT_ID,
        redirect_uri=CONFIDENTIAL_REDIRECT_URI,
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_client"
