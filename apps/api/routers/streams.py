"""
Streams Router

Raw activity telemetry for the mobile client, served through the layered
cache.
"""

import logging

from fastapi import APIRouter, Depends, Path
from fastapi.responses import JSONResponse

from core.auth import get_current_principal
from core.context import AppContext, get_app_context
from core.security import Principal

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/streams", tags=["streams"])


@router.get("/{activity_id}")
def get_activity_streams(
    activity_id: int = Path(..., gt=0, description="Strava activity ID"),
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_app_context),
):
    """
    Activity streams (power, HR, cadence, etc.).

    Cached for up to 24 hours at the edge and in the blob tier.
    """
    response = context.streams.get_streams(
        principal.user_id,
        principal.athlete_id,
        principal.tier,
        activity_id,
    )
    return JSONResponse(content=response.body, headers=response.headers)
