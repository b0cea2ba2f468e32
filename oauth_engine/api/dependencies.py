from __future__ import annotations

import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from oauth_engine.core.errors import ServerError
from oauth_engine.models.tokens import AccessTokenInfo
from oauth_engine.repos.base import StoreError
from oauth_engine.repos.factory import Stores
from oauth_engine.services.authorization_endpoint import AuthorizationEndpoint
from oauth_engine.services.identity import IdentityProvider
from oauth_engine.services.token_endpoint import TokenEndpoint

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/token")


# Everything below reads from app.state, populated by create_app().


def get_stores(request: Request) -> Stores:
    return request.app.state.stores


def get_identity(request: Request) -> IdentityProvider:
    return request.app.state.identity


def get_authorization_endpoint(request: Request) -> AuthorizationEndpoint:
    return request.app.state.authorization_endpoint


def get_token_endpoint(request: Request) -> TokenEndpoint:
    return request.app.state.token_endpoint


async def require_access_token(
    raw_token: Annotated[str, Depends(oauth2_scheme)],
    stores: Annotated[Stores, Depends(get_stores)],
) -> AccessTokenInfo:
    """Validate the bearer token against the token store.

    Used as a FastAPI dependency on any protected endpoint.
    """
    try:
        info = await stores.tokens.validate_access(raw_token)
    except StoreError:
        logger.exception("Access token validation errored")
        raise ServerError() from None
    if info is None:
        logger.warning("Invalid or expired access token rejected")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": 'Bearer error="invalid_token"'},
        )
    logger.debug("Token validated for sub=%s client_id=%s", info.subject, info.client_id)
    return info
