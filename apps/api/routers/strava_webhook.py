"""
Strava Webhook Router

Subscription handshake and event delivery for Strava push notifications.
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse

from core.context import AppContext, get_app_context
from services.strava_webhook import WebhookVerificationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/strava/webhook", tags=["strava-webhook"])


@router.get("")
def verify_webhook(
    hub_challenge: str = Query(..., alias="hub.challenge", description="Challenge string from Strava"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token", description="Verification token"),
    hub_mode: Optional[str] = Query(None, alias="hub.mode", description="Hub mode (should be 'subscribe')"),
    context: AppContext = Depends(get_app_context),
):
    """
    Verify webhook subscription with Strava.

    Strava calls this endpoint during webhook subscription to verify ownership.
    """
    try:
        return context.webhooks.verify_challenge(hub_challenge, hub_verify_token)
    except WebhookVerificationError:
        logger.warning(f"Webhook verification failed: mode={hub_mode}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Verification failed"
        )


@router.post("", response_class=PlainTextResponse)
async def handle_webhook_event(
    request: Request,
    context: AppContext = Depends(get_app_context),
):
    """
    Handle Strava webhook events.

    Always answers 200 "ok"; Strava retries anything else.
    """
    try:
        event_data = json.loads(await request.body() or b"{}")
        outcome = context.webhooks.handle_event(event_data)
        logger.info(f"Webhook handled: {outcome}")
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
    except Exception:
        logger.exception("Error processing webhook")
    return PlainTextResponse("ok")
