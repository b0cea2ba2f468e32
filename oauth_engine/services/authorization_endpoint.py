"""GET /authorize: validate the request, mint a code, hand off to consent.

The checks run in a fixed order and the first failure wins:

  1. client_id present                    invalid_request
  2. redirect_uri present                 invalid_request
  3. client registered                    invalid_client
  4. redirect_uri registered (exact)      invalid_request
  5. response_type == "code"              unsupported_response_type
  6. scope within allowed_scopes          invalid_scope

Failures are answered with a JSON error, never a redirect.  Until step 4
passes the redirect_uri is attacker-controlled; redirecting to it would
make us an open redirector.

Nothing is written before all six checks pass.  An unknown client can
hammer this endpoint forever and the code store never sees it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from urllib.parse import urlencode

from oauth_engine.core.errors import (
    InvalidClient,
    InvalidRequest,
    InvalidScope,
    OAuthError,
    ServerError,
    UnsupportedResponseType,
)
from oauth_engine.core.metrics import AUTHORIZE_REJECTIONS, CODES_ISSUED
from oauth_engine.repos.base import StoreError
from oauth_engine.repos.client_registry import ClientRegistry
from oauth_engine.repos.code_store import CodeStore
from oauth_engine.services.scopes import disallowed_scopes, parse_scope

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AuthorizeRequest:
    client_id: str | None = None
    redirect_uri: str | None = None
    response_type: str | None = None
    scope: str | None = None
    state: str | None = None


def with_query(url: str, params: dict[str, str]) -> str:
    """Append ``params`` to ``url``, keeping any query it already has."""
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}{urlencode(params)}"


class AuthorizationEndpoint:
    def __init__(
        self,
        clients: ClientRegistry,
        codes: CodeStore,
        *,
        default_scope: str = "openid",
        login_url: str = "/login",
        consent_url: str = "/consent",
    ) -> None:
        self._clients = clients
        self._codes = codes
        self._default_scope = parse_scope(default_scope)
        self._login_url = login_url
        self._consent_url = consent_url

    async def authorize(
        self, req: AuthorizeRequest, subject: str | None, request_url: str
    ) -> str:
        """Return the URL the browser should be redirected to.

        ``subject`` is the end user as reported by the identity provider,
        or None when the browser has no valid session.  ``request_url`` is
        this request's own URL, passed to the login page as ``next``.
        """
        try:
            return await self._authorize(req, subject, request_url)
        except OAuthError as e:
            AUTHORIZE_REJECTIONS.labels(error=e.error).inc()
            raise

    async def _authorize(
        self, req: AuthorizeRequest, subject: str | None, request_url: str
    ) -> str:
        logger.info(
            "CODE FLOW [authorize] step 1: received authorization request  "
            "client_id=%s redirect_uri=%s scope=%s",
            req.client_id,
            req.redirect_uri,
            req.scope,
            extra={"client_id": req.client_id},
        )

        if not req.client_id:
            logger.warning("CODE FLOW [authorize] FAIL: client_id missing")
            raise InvalidRequest("missing required parameter: client_id")
        if not req.redirect_uri:
            logger.warning("CODE FLOW [authorize] FAIL: redirect_uri missing")
            raise InvalidRequest("missing required parameter: redirect_uri")
        logger.info("CODE FLOW [authorize] step 2: required parameters present  ✓")

        try:
            client = await self._clients.lookup(req.client_id)
        except StoreError:
            logger.exception("CODE FLOW [authorize] FAIL: client lookup errored")
            raise ServerError() from None
        if client is None:
            logger.warning(
                "CODE FLOW [authorize] FAIL: unknown client_id=%s", req.client_id
            )
            raise InvalidClient("unknown client")
        logger.info("CODE FLOW [authorize] step 3: client_id recognized  ✓")

        # Exact string match.  No prefix, wildcard, or normalization.
        if req.redirect_uri not in client.redirect_uris:
            logger.warning(
                "CODE FLOW [authorize] FAIL: redirect_uri not registered  uri=%s",
                req.redirect_uri,
            )
            raise InvalidRequest("redirect_uri is not registered for this client")
        logger.info("CODE FLOW [authorize] step 4: redirect_uri matches registration  ✓")

        if req.response_type != "code":
            logger.warning(
                "CODE FLOW [authorize] FAIL: response_type=%s", req.response_type
            )
            raise UnsupportedResponseType("response_type must be 'code'")
        logger.info("CODE FLOW [authorize] step 5: response_type=code  ✓")

        scope = parse_scope(req.scope) or self._default_scope
        rejected = disallowed_scopes(scope, client.allowed_scopes)
        if rejected:
            logger.warning(
                "CODE FLOW [authorize] FAIL: scope not allowed  rejected=%s", rejected
            )
            raise InvalidScope(f"scope not allowed for this client: {' '.join(rejected)}")
        logger.info("CODE FLOW [authorize] step 6: scope allowed  scope=%s  ✓", scope)

        if subject is None:
            logger.info("CODE FLOW [authorize] no session, redirecting to IdP login")
            return with_query(self._login_url, {"next": request_url})
        logger.info("CODE FLOW [authorize] step 7: subject authenticated  sub=%s", subject)

        try:
            issued = await self._codes.create(
                client.client_id, req.redirect_uri, scope, req.state, subject
            )
        except StoreError:
            logger.exception("CODE FLOW [authorize] FAIL: code store errored")
            raise ServerError() from None
        CODES_ISSUED.labels(client_id=client.client_id).inc()
        logger.info(
            "CODE FLOW [authorize] step 8: authorization code stored  "
            "(hash=%s…) expires_at=%d",
            issued.record.code_hash[:12],
            issued.record.expires_at,
        )

        params = {"code": issued.code, "redirect_uri": req.redirect_uri}
        if req.state is not None:
            params["state"] = req.state
        logger.info(
            "CODE FLOW [authorize] step 9: handing off to consent  url=%s",
            self._consent_url,
        )
        return with_query(self._consent_url, params)
