"""OAuth error taxonomy and the single place that turns it into HTTP.

RFC 6749 §5.2 ERROR RESPONSES
------------------------------
Every failure of /authorize or /token is reported as::

    HTTP/1.1 400 Bad Request
    Content-Type: application/json
    Cache-Control: no-store

    {"error": "invalid_grant", "error_description": "..."}

The ``error`` value is machine-readable and drawn from a closed set.
Clients branch on it; humans read ``error_description``.

WHY ONE MAPPER
---------------
Endpoints only *raise*.  They never build a response body, never pick a
status code.  ``error_response()`` is the only function that knows that
``invalid_client`` with presented credentials is a 401 that needs a
``WWW-Authenticate`` header, or that ``server_error`` is a 500 whose
description must be generic.  One mapping, tested once.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

logger = logging.getLogger(__name__)

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


class ErrorResponse(BaseModel):
    error: str
    error_description: str


class OAuthError(Exception):
    """Base class for every error that maps onto an RFC 6749 error code."""

    error: str = "invalid_request"
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, description: str) -> None:
        super().__init__(description)
        self.description = description


class InvalidRequest(OAuthError):
    error = "invalid_request"


class InvalidClient(OAuthError):
    error = "invalid_client"

    def __init__(self, description: str, *, credentials_presented: bool = False) -> None:
        super().__init__(description)
        self.credentials_presented = credentials_presented
        if credentials_presented:
            self.status_code = status.HTTP_401_UNAUTHORIZED


class InvalidGrant(OAuthError):
    error = "invalid_grant"


class UnsupportedGrantType(OAuthError):
    error = "unsupported_grant_type"


class UnsupportedResponseType(OAuthError):
    error = "unsupported_response_type"


class InvalidScope(OAuthError):
    error = "invalid_scope"


class ServerError(OAuthError):
    error = "server_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, description: str = "The server encountered an internal error") -> None:
        super().__init__(description)


def error_response(exc: OAuthError) -> JSONResponse:
    """Render an OAuthError as an RFC 6749 §5.2 JSON response."""
    headers = dict(NO_STORE_HEADERS)
    if isinstance(exc, InvalidClient) and exc.credentials_presented:
        headers["WWW-Authenticate"] = 'Basic realm="oauth"'
    body = ErrorResponse(error=exc.error, error_description=exc.description)
    return JSONResponse(
        status_code=exc.status_code,
        content=body.model_dump(),
        headers=headers,
    )


async def _oauth_error_handler(_request: Request, exc: OAuthError) -> JSONResponse:
    return error_response(exc)


async def _validation_error_handler(
    _request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Malformed bodies (wrong content type, unparseable form) never reach the
    # endpoint's own validation; report them in the OAuth shape all the same.
    fields = sorted(
        {str(err["loc"][-1]) for err in exc.errors() if err.get("loc")}
    )
    detail = "malformed request"
    if fields:
        detail = f"malformed request parameters: {', '.join(fields)}"
    return error_response(InvalidRequest(detail))


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled error on %s %s",
        request.method,
        request.url.path,
        exc_info=(type(exc), exc, exc.__traceback__),
    )
    return error_response(ServerError())


def register_error_handlers(app: FastAPI) -> None:
    """Install the OAuth error mapping on a FastAPI app."""
    app.add_exception_handler(OAuthError, _oauth_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
