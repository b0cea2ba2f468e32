from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from oauth_engine.api.dependencies import require_access_token
from oauth_engine.models.tokens import AccessTokenInfo

logger = logging.getLogger(__name__)

router = APIRouter(tags=["resource"])


class ProfileOut(BaseModel):
    subject: str
    client_id: str
    scope: str
    message: str


@router.get("/resource/me", response_model=ProfileOut)
async def get_my_profile(
    info: Annotated[AccessTokenInfo, Depends(require_access_token)],
) -> ProfileOut:
    """Protected endpoint: requires a valid access token.

    The last leg of the flow, showing how a resource server consumes
    ``validate_access``.
    """
    logger.info("Resource accessed by sub=%s via client=%s", info.subject, info.client_id)
    return ProfileOut(
        subject=info.subject,
        client_id=info.client_id,
        scope=" ".join(info.scope),
        message=f"Hello {info.subject}, you have a valid token.",
    )
