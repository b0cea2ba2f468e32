"""Who is the end user?  Answered by the identity provider, not by us.

The engine never sees passwords.  The IdP authenticates the user and
hands the browser a short-lived session assertion: an ES256-signed JWT
in the ``session`` cookie.  /authorize only verifies it.

WHY A SEPARATE AUDIENCE
------------------------
The session JWT proves "this browser belongs to user X".  It is not an
API credential.  Pinning ``aud`` to SESSION_AUDIENCE means an assertion
minted for some other relying party cannot be replayed here, even if
the same IdP key signed it.

KEY MATERIAL
-------------
Production: IDP_PUBLIC_KEY_PEM carries the IdP's public key; we can
verify but never mint.
Dev/test: an ephemeral EC key pair is generated on import so the demo
script and tests can mint assertions with ``create_session_token()``.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Protocol

import jwt
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import load_pem_public_key
from starlette.requests import Request

from oauth_engine.core.config import Settings

logger = logging.getLogger(__name__)

ALGORITHM = "ES256"
ISSUER = "identity-provider"
SESSION_AUDIENCE = "oauth-engine-session"
SESSION_COOKIE = "session"
SESSION_TTL_MIN = 30

_dev_private_key = ec.generate_private_key(ec.SECP256R1())


class IdentityProvider(Protocol):
    def current_subject(self, request: Request) -> str | None: ...


class SessionAssertionIdentity:
    """Reads the subject from a verified session JWT cookie."""

    def __init__(
        self,
        public_key: ec.EllipticCurvePublicKey,
        *,
        cookie_name: str = SESSION_COOKIE,
    ) -> None:
        self._public_key = public_key
        self._cookie_name = cookie_name

    def current_subject(self, request: Request) -> str | None:
        """Return the authenticated subject, or None if not logged in.

        An expired or forged cookie is the same as no cookie: the caller
        sends the browser to the IdP login page.
        """
        cookie = request.cookies.get(self._cookie_name)
        if not cookie:
            return None
        try:
            claims = decode_session_token(cookie, self._public_key)
        except jwt.ExpiredSignatureError:
            logger.debug("Session cookie expired")
            return None
        except jwt.InvalidTokenError:
            logger.warning("Invalid session cookie rejected")
            return None
        return claims["sub"]


def decode_session_token(token: str, public_key: ec.EllipticCurvePublicKey) -> dict:
    """Verify a session JWT.  Pins algorithm, issuer and audience.

    Raises jwt.ExpiredSignatureError, jwt.InvalidTokenError on failure.
    """
    return jwt.decode(
        token,
        public_key,
        algorithms=[ALGORITHM],
        issuer=ISSUER,
        audience=SESSION_AUDIENCE,
        options={"require": ["sub", "exp", "iat", "jti"]},
    )


def create_session_token(
    *,
    sub: str,
    private_key: ec.EllipticCurvePrivateKey | None = None,
    ttl: timedelta = timedelta(minutes=SESSION_TTL_MIN),
) -> str:
    """Mint a session JWT.  Dev/test stand-in for the IdP's own login."""
    now = datetime.now(UTC)
    payload = {
        "sub": sub,
        "iss": ISSUER,
        "aud": SESSION_AUDIENCE,
        "exp": now + ttl,
        "iat": now,
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, private_key or _dev_private_key, algorithm=ALGORITHM)


def build_identity_provider(settings: Settings) -> SessionAssertionIdentity:
    if settings.idp_public_key_pem:
        key = load_pem_public_key(settings.idp_public_key_pem.encode())
        if not isinstance(key, ec.EllipticCurvePublicKey):
            raise ValueError("IDP_PUBLIC_KEY_PEM must be an EC (P-256) public key")
        return SessionAssertionIdentity(key)
    if settings.is_prod:
        raise ValueError("IDP_PUBLIC_KEY_PEM is required when APP_ENV=prod")
    logger.info("No IDP_PUBLIC_KEY_PEM configured, using ephemeral dev key")
    return SessionAssertionIdentity(_dev_private_key.public_key())
