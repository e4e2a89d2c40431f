"""
Ops Router

Operator endpoints for the ingestion pipeline. All routes require the
``X-Ops-Key`` header.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from core.auth import require_ops_key
from core.context import AppContext, get_app_context
from core.exceptions import ServiceUnavailableError
from core.store import StoreError
from services.job_queue import BackfillAthlete, Lane, ReconcileSince

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/ops", tags=["ops"], dependencies=[Depends(require_ops_key)])


class DrainRequest(BaseModel):
    live_max: Optional[int] = Field(default=None, ge=0, le=100)
    backfill_max: Optional[int] = Field(default=None, ge=0, le=100)


class EnqueueRequest(BaseModel):
    kind: Literal["backfill-athlete", "reconcile-since"]
    athlete_id: int = Field(..., gt=0)
    window_days: Optional[int] = Field(default=None, gt=0, le=3650)
    since_iso: Optional[str] = None


@router.post("/drain")
def drain_queues(
    request: Optional[DrainRequest] = None,
    context: AppContext = Depends(get_app_context),
):
    """Run the drainer now and return per-job results."""
    request = request or DrainRequest()
    live_max = request.live_max if request.live_max is not None else context.settings.DRAIN_LIVE_MAX
    backfill_max = request.backfill_max if request.backfill_max is not None else context.settings.DRAIN_BACKFILL_MAX
    report = context.drainer.drain(live_max=live_max, backfill_max=backfill_max)
    return report.to_dict()


@router.get("/queues")
def queue_depths(context: AppContext = Depends(get_app_context)):
    try:
        return context.queue.depth()
    except StoreError as e:
        logger.error(f"Queue depth unavailable: {e}")
        raise ServiceUnavailableError("store_unavailable")


@router.get("/dead-letters")
def dead_letters(
    limit: int = Query(50, ge=1, le=500),
    context: AppContext = Depends(get_app_context),
):
    """Peek at dead-lettered jobs without removing them."""
    try:
        return {"jobs": context.queue.peek_dead_letters(limit)}
    except StoreError as e:
        logger.error(f"Dead-letter lane unavailable: {e}")
        raise ServiceUnavailableError("store_unavailable")


@router.post("/enqueue", status_code=status.HTTP_202_ACCEPTED)
def enqueue_job(
    request: EnqueueRequest,
    context: AppContext = Depends(get_app_context),
):
    """Queue a backfill or reconcile job on the backfill lane."""
    if request.kind == "backfill-athlete":
        job = BackfillAthlete(
            athlete_id=request.athlete_id,
            window_days=request.window_days or context.settings.BACKFILL_WINDOW_DAYS,
        )
    else:
        since_iso = request.since_iso or (
            datetime.now(timezone.utc) - timedelta(hours=context.settings.RECONCILE_LOOKBACK_HOURS)
        ).isoformat()
        try:
            datetime.fromisoformat(since_iso.replace("Z", "+00:00"))
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"since_iso is not an ISO-8601 timestamp: {since_iso}"
            )
        job = ReconcileSince(athlete_id=request.athlete_id, since_iso=since_iso)

    try:
        depth = context.queue.enqueue(Lane.BACKFILL, job)
    except StoreError as e:
        logger.error(f"Enqueue failed: {e}")
        raise ServiceUnavailableError("store_unavailable")
    logger.info(f"Ops enqueued {job.kind.value} for athlete {request.athlete_id}")
    return {"queued": job.kind.value, "lane": Lane.BACKFILL.value, "depth": depth}


@router.get("/rate/{provider}")
def rate_status(
    provider: str,
    athlete_id: Optional[int] = Query(None, gt=0),
    context: AppContext = Depends(get_app_context),
):
    """Aggregate provider usage, plus one athlete's windows when asked."""
    try:
        body = {
            "provider": provider,
            "limits": context.rate_limiter.provider_windows(provider),
            "aggregate": context.rate_limiter.aggregate_usage(provider),
        }
        if athlete_id is not None:
            body["athlete"] = context.rate_limiter.provider_status(provider, str(athlete_id))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except StoreError as e:
        logger.error(f"Rate status unavailable: {e}")
        raise ServiceUnavailableError("store_unavailable")
    return body
