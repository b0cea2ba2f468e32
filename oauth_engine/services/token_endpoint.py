"""POST /token: turn a code or a refresh token into a token pair.

Also hosts the two token-management endpoints that share its client
authentication: POST /revoke (RFC 7009) and POST /introspect (RFC 7662).

WHAT THE CLIENT LEARNS ON FAILURE
-----------------------------------
Every reason a code cannot be redeemed (unknown, replayed, expired,
issued to someone else, different redirect_uri) collapses into one
``invalid_grant`` with one description.  Telling an attacker *which*
check failed helps them tune the next attempt.  The real reason goes to
the log, tagged with the request id, where operators can see it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from oauth_engine.core.errors import (
    InvalidClient,
    InvalidGrant,
    InvalidRequest,
    InvalidScope,
    OAuthError,
    ServerError,
    UnsupportedGrantType,
)
from oauth_engine.core.logging import hash_prefix
from oauth_engine.core.metrics import REFRESH_REUSE, TOKEN_GRANTS
from oauth_engine.models.client import Client
from oauth_engine.models.tokens import TokenPair
from oauth_engine.repos.base import StoreError
from oauth_engine.repos.client_registry import ClientRegistry
from oauth_engine.repos.code_store import CodeRejected, CodeStore
from oauth_engine.repos.token_store import (
    RefreshRevoked,
    ScopeWidened,
    TokenRejected,
    TokenStore,
)
from oauth_engine.services.client_auth import (
    authenticate_client,
    resolve_client_credentials,
)
from oauth_engine.services.scopes import format_scope, parse_scope

logger = logging.getLogger(__name__)

AUTHORIZATION_CODE = "authorization_code"
REFRESH_TOKEN = "refresh_token"
SUPPORTED_GRANT_TYPES = (AUTHORIZATION_CODE, REFRESH_TOKEN)

_INVALID_CODE = "authorization code is invalid, expired, or already used"
_INVALID_REFRESH = "refresh token is invalid, expired, or revoked"


@dataclass(frozen=True, slots=True)
class TokenRequest:
    grant_type: str | None = None
    code: str | None = None
    redirect_uri: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    refresh_token: str | None = None
    scope: str | None = None


@dataclass(frozen=True, slots=True)
class ClientCredentials:
    client_id: str | None = None
    client_secret: str | None = None
    authorization: str | None = None


class TokenEndpoint:
    def __init__(
        self, clients: ClientRegistry, codes: CodeStore, tokens: TokenStore
    ) -> None:
        self._clients = clients
        self._codes = codes
        self._tokens = tokens

    # -- /token --------------------------------------------------------------

    async def exchange(
        self, req: TokenRequest, authorization: str | None = None
    ) -> TokenPair:
        grant_label = (
            req.grant_type if req.grant_type in SUPPORTED_GRANT_TYPES else "unsupported"
        )
        try:
            pair = await self._exchange(req, authorization)
        except OAuthError as e:
            TOKEN_GRANTS.labels(grant_type=grant_label, result=e.error).inc()
            raise
        TOKEN_GRANTS.labels(grant_type=grant_label, result="ok").inc()
        return pair

    async def _exchange(self, req: TokenRequest, authorization: str | None) -> TokenPair:
        logger.info(
            "CODE FLOW [token] step 1: received token request  "
            "client_id=%s grant_type=%s",
            req.client_id,
            req.grant_type,
            extra={"client_id": req.client_id, "grant_type": req.grant_type},
        )
        # Never log code, refresh_token or client_secret values.

        if not req.grant_type:
            raise InvalidRequest("missing required parameter: grant_type")
        if req.grant_type not in SUPPORTED_GRANT_TYPES:
            logger.warning("CODE FLOW [token] FAIL: grant_type=%s", req.grant_type)
            raise UnsupportedGrantType(
                f"grant_type must be one of: {', '.join(SUPPORTED_GRANT_TYPES)}"
            )

        creds = ClientCredentials(
            client_id=req.client_id,
            client_secret=req.client_secret,
            authorization=authorization,
        )
        # Body parameters are checked before the Authorization header is parsed.
        if req.grant_type == AUTHORIZATION_CODE:
            code = _require("code", req.code)
            redirect_uri = _require("redirect_uri", req.redirect_uri)
            client = await self._authenticate(creds)
            return await self._authorization_code_grant(client, code, redirect_uri)

        refresh_token = _require("refresh_token", req.refresh_token)
        client = await self._authenticate(creds)
        return await self._refresh_token_grant(client, refresh_token, req.scope)

    async def _authorization_code_grant(
        self, client: Client, code: str, redirect_uri: str
    ) -> TokenPair:
        try:
            record = await self._codes.consume_if_valid(
                code, client.client_id, redirect_uri
            )
        except CodeRejected as e:
            logger.warning(
                "CODE FLOW [token] FAIL: code rejected  reason=%s code=%s…",
                e.reason,
                hash_prefix(code),
                extra={"client_id": client.client_id, "error": "invalid_grant"},
            )
            raise InvalidGrant(_INVALID_CODE) from None
        except StoreError:
            logger.exception("CODE FLOW [token] FAIL: code store errored")
            raise ServerError() from None
        logger.info(
            "CODE FLOW [token] step 4: code consumed (single-use enforced)  code=%s…  ✓",
            record.code_hash[:12],
        )

        try:
            pair = await self._tokens.issue(record.client_id, record.subject, record.scope)
        except StoreError:
            logger.exception("CODE FLOW [token] FAIL: token store errored")
            raise ServerError() from None
        logger.info(
            "CODE FLOW [token] step 5: tokens issued  sub=%s scope=%s expires_in=%d  ✓",
            record.subject,
            pair.scope,
            pair.expires_in,
        )
        return pair

    async def _refresh_token_grant(
        self, client: Client, refresh_token: str, raw_scope: str | None
    ) -> TokenPair:
        scope = parse_scope(raw_scope) or None
        try:
            pair = await self._tokens.redeem_refresh(
                refresh_token, client_id=client.client_id, scope=scope
            )
        except ScopeWidened as e:
            logger.warning(
                "CODE FLOW [refresh] FAIL: scope widening  extra=%s", e.extra
            )
            raise InvalidScope(
                f"requested scope exceeds original grant: {format_scope(e.extra)}"
            ) from None
        except RefreshRevoked as e:
            REFRESH_REUSE.inc()
            logger.warning(
                "CODE FLOW [refresh] FAIL: revoked refresh token reused  "
                "family=%s… revoked=%d",
                e.family_id[:12],
                e.family_revoked,
                extra={"client_id": client.client_id, "error": "invalid_grant"},
            )
            raise InvalidGrant(_INVALID_REFRESH) from None
        except TokenRejected as e:
            logger.warning(
                "CODE FLOW [refresh] FAIL: refresh token rejected  reason=%s token=%s…",
                e.reason,
                hash_prefix(refresh_token),
                extra={"client_id": client.client_id, "error": "invalid_grant"},
            )
            raise InvalidGrant(_INVALID_REFRESH) from None
        except StoreError:
            logger.exception("CODE FLOW [refresh] FAIL: token store errored")
            raise ServerError() from None
        logger.info(
            "CODE FLOW [refresh] tokens rotated  sub=%s scope=%s  ✓",
            pair.refresh.subject,
            pair.scope,
        )
        return pair

    # -- /revoke and /introspect ---------------------------------------------

    async def revoke(self, token: str | None, creds: ClientCredentials) -> None:
        """Revoke ``token`` if the caller owns it.

        RFC 7009 §2.2: an unknown token or one owned by another client is
        not an error.  The response is 200 either way so the endpoint
        cannot be used to probe which tokens exist.
        """
        token = _require("token", token)
        client = await self._authenticate(creds)
        try:
            revoked = await self._tokens.revoke(token, client_id=client.client_id)
        except StoreError:
            logger.exception("Token revocation errored")
            raise ServerError() from None
        logger.info(
            "Revocation request  client_id=%s token=%s… revoked=%s",
            client.client_id,
            hash_prefix(token),
            revoked,
        )

    async def introspect(
        self, token: str | None, creds: ClientCredentials
    ) -> dict[str, object]:
        """RFC 7662 response for ``token``.

        Only the client the token was issued to sees it as active.
        """
        token = _require("token", token)
        client = await self._authenticate(creds)
        try:
            info = await self._tokens.validate_access(token)
        except StoreError:
            logger.exception("Token introspection errored")
            raise ServerError() from None
        if info is None or info.client_id != client.client_id:
            return {"active": False}
        return {
            "active": True,
            "scope": format_scope(info.scope),
            "client_id": info.client_id,
            "sub": info.subject,
            "token_type": "Bearer",
            "iat": info.issued_at,
            "exp": info.expires_at,
        }

    # -- helpers -------------------------------------------------------------

    async def _authenticate(self, creds: ClientCredentials) -> Client:
        client_id, secret, via_header = resolve_client_credentials(
            creds.authorization, creds.client_id, creds.client_secret
        )
        client_id = _require("client_id", client_id)
        try:
            client = await self._clients.lookup(client_id)
        except StoreError:
            logger.exception("Client lookup errored")
            raise ServerError() from None
        if client is None:
            logger.warning("Unknown client_id=%s", client_id)
            raise InvalidClient("unknown client", credentials_presented=via_header)
        authenticate_client(client, secret, via_header=via_header)
        logger.info("CODE FLOW [client] authenticated  client_id=%s  ✓", client.client_id)
        return client


def _require(name: str, value: str | None) -> str:
    """Return ``value``, or raise invalid_request naming the missing parameter."""
    if not value:
        logger.warning("Missing required parameter: %s", name)
        raise InvalidRequest(f"missing required parameter: {name}")
    return value
