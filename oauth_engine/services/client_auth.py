from __future__ import annotations

import base64
import binascii
import logging
from urllib.parse import unquote_plus

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from oauth_engine.core.errors import InvalidClient, InvalidRequest
from oauth_engine.models.client import Client

logger = logging.getLogger(__name__)

# Argon2 hash strings encode parameters + salt
_ph = PasswordHasher()


def hash_client_secret(plain_secret: str) -> str:
    if not plain_secret:
        raise ValueError("client secret must be non-empty")
    return _ph.hash(plain_secret)


# verify_client_secret() must catch Argon2 exceptions and return False
def verify_client_secret(plain_secret: str, secret_hash: str) -> bool:
    if not plain_secret or not secret_hash:
        return False
    try:
        return _ph.verify(secret_hash, plain_secret)
    except (VerifyMismatchError, VerificationError, InvalidHash):
        return False


def parse_basic_auth(header: str | None) -> tuple[str, str] | None:
    """Decode ``Authorization: Basic`` into (client_id, secret).

    Returns None when the header is absent or uses another scheme.
    RFC 6749 §2.3.1: both parts are form-urlencoded before base64.
    """
    if not header:
        return None
    scheme, _, param = header.partition(" ")
    if scheme.lower() != "basic":
        return None
    try:
        decoded = base64.b64decode(param.strip(), validate=True).decode()
    except (binascii.Error, UnicodeDecodeError):
        raise InvalidClient(
            "malformed Basic credentials", credentials_presented=True
        ) from None
    client_id, sep, secret = decoded.partition(":")
    if not sep or not client_id:
        raise InvalidClient("malformed Basic credentials", credentials_presented=True)
    return unquote_plus(client_id), unquote_plus(secret)


def resolve_client_credentials(
    authorization: str | None,
    form_client_id: str | None,
    form_client_secret: str | None,
) -> tuple[str | None, str | None, bool]:
    """Work out (client_id, secret, via_header) from header and form.

    Using both mechanisms at once is forbidden (RFC 6749 §2.3).
    """
    basic = parse_basic_auth(authorization)
    if basic is None:
        return form_client_id or None, form_client_secret or None, False

    client_id, secret = basic
    if form_client_secret:
        raise InvalidRequest("client credentials sent both in header and body")
    if form_client_id and form_client_id != client_id:
        raise InvalidRequest("client_id in body does not match Authorization header")
    return client_id, secret, True


def authenticate_client(
    client: Client, secret: str | None, *, via_header: bool = False
) -> None:
    """Raise InvalidClient unless ``secret`` is right for ``client``.

    Public clients must not present a secret; confidential clients must.
    """
    if client.secret_hash is None:
        if secret:
            logger.warning("Secret presented for public client=%s", client.client_id)
            raise InvalidClient(
                "client authentication failed", credentials_presented=True
            )
        return

    if not secret:
        logger.warning("Missing secret for confidential client=%s", client.client_id)
        raise InvalidClient(
            "client authentication required", credentials_presented=via_header
        )

    if not verify_client_secret(secret, client.secret_hash):
        logger.warning("Bad secret for client=%s", client.client_id)
        raise InvalidClient("client authentication failed", credentials_presented=True)
