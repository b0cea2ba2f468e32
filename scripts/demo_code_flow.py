"""Demo: walk the authorization code flow using FastAPI TestClient.

Run with:
    python scripts/demo_code_flow.py

Uses in-memory stores and a dev session assertion in place of a real
IdP login.
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

from fastapi.testclient import TestClient

from oauth_engine.core.config import SETTINGS
from oauth_engine.main import create_app
from oauth_engine.repos.client_registry import DEV_CLIENTS, InMemoryClientRegistry
from oauth_engine.repos.code_store import InMemoryCodeStore
from oauth_engine.repos.factory import Stores
from oauth_engine.repos.token_store import InMemoryTokenStore
from oauth_engine.services.identity import create_session_token

CLIENT_ID = "external-web-app"
REDIRECT_URI = "https://external-app.com/auth/callback"


def main() -> None:
    stores = Stores(
        clients=InMemoryClientRegistry(DEV_CLIENTS),
        codes=InMemoryCodeStore(),
        tokens=InMemoryTokenStore(),
    )
    client = TestClient(create_app(SETTINGS, stores=stores), follow_redirects=False)
    params = {
        "client_id": CLIENT_ID,
        "redirect_uri": REDIRECT_URI,
        "response_type": "code",
        "scope": "openid email",
        "state": "demo-state",
    }

    # ── Step 1: GET /authorize without a session ────────────────────
    r = client.get("/authorize", params=params)
    print(f"1. GET  /authorize (no session)   → {r.status_code}  {r.headers['location']}")

    # ── Step 2: GET /authorize with an IdP session ──────────────────
    client.cookies.set("session", create_session_token(sub="demo-user"))
    r = client.get("/authorize", params=params)
    consent = urlparse(r.headers["location"])
    code = parse_qs(consent.query)["code"][0]
    print(f"2. GET  /authorize (session)      → {r.status_code}  consent={consent.path}")

    # ── Step 3: POST /token ─────────────────────────────────────────
    form = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": REDIRECT_URI,
        "client_id": CLIENT_ID,
    }
    r = client.post("/token", data=form)
    tokens = r.json()
    print(f"3. POST /token                    → {r.status_code}  scope={tokens['scope']!r}")

    # ── Step 4: replay the same code ────────────────────────────────
    r = client.post("/token", data=form)
    print(f"4. POST /token (replay)           → {r.status_code}  {r.json()['error']}")

    # ── Step 5: call the protected resource ─────────────────────────
    r = client.get(
        "/resource/me", headers={"Authorization": f"Bearer {tokens['access_token']}"}
    )
    print(f"5. GET  /resource/me              → {r.status_code}  {r.json()['message']}")

    # ── Step 6: rotate the refresh token ────────────────────────────
    refresh_form = {
        "grant_type": "refresh_token",
        "refresh_token": tokens["refresh_token"],
        "client_id": CLIENT_ID,
    }
    r = client.post("/token", data=refresh_form)
    print(f"6. POST /token (refresh)          → {r.status_code}")

    # ── Step 7: reuse the rotated-out refresh token ─────────────────
    r = client.post("/token", data=refresh_form)
    print(f"7. POST /token (refresh reuse)    → {r.status_code}  {r.json()['error']}")


if __name__ == "__main__":
    main()
