from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Form, Header, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse, Response
from pydantic import BaseModel

from oauth_engine.api.dependencies import (
    get_authorization_endpoint,
    get_identity,
    get_token_endpoint,
)
from oauth_engine.core.errors import NO_STORE_HEADERS
from oauth_engine.services.authorization_endpoint import (
    AuthorizationEndpoint,
    AuthorizeRequest,
)
from oauth_engine.services.identity import IdentityProvider
from oauth_engine.services.token_endpoint import (
    ClientCredentials,
    TokenEndpoint,
    TokenRequest,
)

# ---------------------------------------------------------------------------
# Authorization Server (RFC 6749 §4.1 Authorization Code Grant)
#
# Endpoints:
#   GET  /authorize   validate, issue a code, hand off to the IdP consent step
#   POST /token       exchange a code or refresh token for a token pair
#   POST /revoke      RFC 7009 token revocation
#   POST /introspect  RFC 7662 token introspection
#
# Every parameter is declared optional so a missing one reaches the
# endpoint's own ordered checks and surfaces as invalid_request, instead
# of FastAPI's 422.
# ---------------------------------------------------------------------------

logger = logging.getLogger(__name__)

router = APIRouter(tags=["oauth"])


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: str
    scope: str


@router.get("/authorize")
async def authorize(
    request: Request,
    endpoint: Annotated[AuthorizationEndpoint, Depends(get_authorization_endpoint)],
    identity: Annotated[IdentityProvider, Depends(get_identity)],
    client_id: str | None = Query(None),
    redirect_uri: str | None = Query(None),
    response_type: str | None = Query(None),
    scope: str | None = Query(None),
    state: str | None = Query(None),
) -> RedirectResponse:
    target = await endpoint.authorize(
        AuthorizeRequest(
            client_id=client_id,
            redirect_uri=redirect_uri,
            response_type=response_type,
            scope=scope,
            state=state,
        ),
        subject=identity.current_subject(request),
        request_url=str(request.url),
    )
    return RedirectResponse(
        url=target, status_code=status.HTTP_302_FOUND, headers=NO_STORE_HEADERS
    )


@router.post("/token", response_model=TokenResponse)
async def token(
    endpoint: Annotated[TokenEndpoint, Depends(get_token_endpoint)],
    grant_type: str | None = Form(None),
    code: str | None = Form(None),
    redirect_uri: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
    refresh_token: str | None = Form(None),
    scope: str | None = Form(None),
    authorization: str | None = Header(None),
) -> JSONResponse:
    pair = await endpoint.exchange(
        TokenRequest(
            grant_type=grant_type,
            code=code,
            redirect_uri=redirect_uri,
            client_id=client_id,
            client_secret=client_secret,
            refresh_token=refresh_token,
            scope=scope,
        ),
        authorization=authorization,
    )
    body = TokenResponse(
        access_token=pair.access_token,
        expires_in=pair.expires_in,
        refresh_token=pair.refresh_token,
        scope=pair.scope,
    )
    # RFC 6749 §5.1: token responses must not be cached.
    return JSONResponse(content=body.model_dump(), headers=NO_STORE_HEADERS)


@router.post("/revoke")
async def revoke(
    endpoint: Annotated[TokenEndpoint, Depends(get_token_endpoint)],
    token: str | None = Form(None),
    token_type_hint: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
    authorization: str | None = Header(None),
) -> Response:
    # token_type_hint is advisory (RFC 7009 §2.1); both token kinds are searched.
    await endpoint.revoke(
        token,
        ClientCredentials(
            client_id=client_id,
            client_secret=client_secret,
            authorization=authorization,
        ),
    )
    return Response(status_code=status.HTTP_200_OK, headers=NO_STORE_HEADERS)


@router.post("/introspect")
async def introspect(
    endpoint: Annotated[TokenEndpoint, Depends(get_token_endpoint)],
    token: str | None = Form(None),
    token_type_hint: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
    authorization: str | None = Header(None),
) -> JSONResponse:
    body = await endpoint.introspect(
        token,
        ClientCredentials(
            client_id=client_id,
            client_secret=client_secret,
            authorization=authorization,
        ),
    )
    return JSONResponse(content=body, headers=NO_STORE_HEADERS)
