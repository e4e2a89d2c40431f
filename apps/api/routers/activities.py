"""
Activities Router

Recent activity summaries for the mobile client, cached per athlete.
"""

import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from core.auth import get_current_principal
from core.context import AppContext, get_app_context
from core.security import Principal

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/activities", tags=["activities"])


@router.get("")
def list_recent_activities(
    days_back: int = Query(30, ge=1, le=365, description="Days of history to include"),
    limit: int = Query(50, ge=1, le=500, description="Maximum activities returned"),
    principal: Principal = Depends(get_current_principal),
    context: AppContext = Depends(get_app_context),
):
    """
    Activities started in the last ``days_back`` days.

    Also returns stream URLs for the three most recent activities so the app
    can prefetch them.
    """
    response = context.activities.get_activities(
        principal.user_id,
        principal.athlete_id,
        principal.tier,
        days_back=days_back,
        limit=limit,
    )
    return JSONResponse(content=response.body, headers=response.headers)
