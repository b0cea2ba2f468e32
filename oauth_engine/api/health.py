"""Health and readiness endpoints.

LIVENESS vs READINESS
----------------------
  /health (liveness):
    "Is this process alive?"  Always 200 while the process can answer.
    The body reports each backend so dashboards can show degradation,
    but a flapping database must not get the container restarted.

  /ready (readiness):
    "Can this instance serve /authorize and /token right now?"
    503 when a configured store is unreachable.  A SQL- or Redis-backed
    instance cannot issue a single code without its backend, so it is
    taken out of rotation until the backend comes back.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Response, status

from oauth_engine.api.dependencies import get_stores
from oauth_engine.repos.factory import Stores

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(stores: Annotated[Stores, Depends(get_stores)]) -> dict:
    """Liveness probe plus per-backend status.

    Returns 200 even when degraded; the ``status`` field tells the truth.
    """
    checks = await stores.check()
    overall = "degraded" if "down" in checks.values() else "ok"
    return {"status": overall, "checks": checks}


@router.get("/ready")
async def ready(stores: Annotated[Stores, Depends(get_stores)]) -> Response:
    """Readiness probe: 503 if any configured backend is down."""
    checks = await stores.check()
    if "down" in checks.values():
        return Response(status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
    return Response(status_code=status.HTTP_200_OK)
