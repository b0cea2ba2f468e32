"""Prometheus metrics endpoint.

Scraped by Prometheus every N seconds.  Plain-text exposition format,
not JSON:

  # HELP oauth_token_grants_total Token endpoint outcomes by grant type and result
  # TYPE oauth_token_grants_total counter
  oauth_token_grants_total{grant_type="authorization_code",result="ok"} 812.0
  oauth_token_grants_total{grant_type="authorization_code",result="invalid_grant"} 3.0

Restrict access in production (scraper IP allow-list or an internal
port): grant outcome rates per client are operational intelligence.
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["observability"])


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Expose all Prometheus metrics in text exposition format."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
