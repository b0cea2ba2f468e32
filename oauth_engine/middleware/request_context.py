"""Request context middleware: one id per request, on every log line.

A rejected token request is logged as "invalid_grant, code expired" on
the server while the client only sees ``invalid_grant``.  When a client
developer reports "my token call failed", the X-Request-ID they got back
is the only thing tying their request to that log line.

The id lives in ``request_id_var`` (a ContextVar, not a thread-local:
concurrent requests share the event loop thread).  The logging filter
installed by ``setup_logging()`` copies it onto each record.
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from oauth_engine.core.logging import request_id_var

logger = logging.getLogger(__name__)

# Client-supplied ids are echoed into logs and headers; keep them bounded.
_MAX_REQUEST_ID_LEN = 128


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assign a request ID, time the request, log a summary line.

    1. Reuse X-Request-ID from the client if sane, else generate a UUID
    2. Store it in request_id_var for the duration of the request
    3. Log method, path, status and duration on completion
    4. Echo it back as X-Request-ID
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        req_id = request.headers.get("x-request-id", "")
        if not req_id or len(req_id) > _MAX_REQUEST_ID_LEN or not req_id.isprintable():
            req_id = str(uuid.uuid4())
        token = request_id_var.set(req_id)

        start = time.monotonic()
        try:
            response = await call_next(request)
            duration_ms = round((time.monotonic() - start) * 1000, 1)

            # Query strings are left out: /authorize carries state and
            # redirect_uri, and clients sometimes misplace secrets there.
            logger.info(
                "%s %s → %d (%.1fms)",
                request.method,
                request.url.path,
                response.status_code,
                duration_ms,
                extra={
                    "request_id": req_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": duration_ms,
                },
            )
        finally:
            request_id_var.reset(token)

        response.headers["X-Request-ID"] = req_id
        return response
