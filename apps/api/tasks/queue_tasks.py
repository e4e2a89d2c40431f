"""
Celery tasks for the ingestion pipeline.

Each task is one short-lived invocation: pop what the budget allows, execute,
report. Task bodies stay thin; the work happens in services.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from core.config import settings
from core.context import get_worker_context
from core.store import StoreError
from services.audit_log import AUDIT_CLEANUP
from services.job_queue import Lane, ReconcileSince
from tasks import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="tasks.drain_queues")
def drain_queues_task(live_max: Optional[int] = None, backfill_max: Optional[int] = None) -> Dict:
    """Drain the live lane, then the backfill lane. Scheduled every minute."""
    context = get_worker_context()
    report = context.drainer.drain(
        live_max=context.settings.DRAIN_LIVE_MAX if live_max is None else live_max,
        backfill_max=context.settings.DRAIN_BACKFILL_MAX if backfill_max is None else backfill_max,
    )
    return report.to_dict()


@celery_app.task(
    name="tasks.batch_process_queue",
    soft_time_limit=settings.BATCH_MAX_DURATION_S + 5 * 60,
    time_limit=settings.BATCH_MAX_DURATION_S + 6 * 60,
)
def batch_process_queue_task() -> Dict:
    """Drain the batch lane with spacing between jobs. Scheduled every 6 hours."""
    context = get_worker_context()
    report = context.drainer.drain_batch(
        max_jobs=context.settings.BATCH_MAX_JOBS,
        delay_s=context.settings.BATCH_JOB_DELAY_S,
        max_duration_s=context.settings.BATCH_MAX_DURATION_S,
    )
    return report.to_dict()


@celery_app.task(name="tasks.cleanup_audit_logs")
def cleanup_audit_logs_task() -> Dict:
    """Delete audit entries past the retention window."""
    context = get_worker_context()
    try:
        deleted = context.audit.prune()
    except Exception as e:
        logger.error(f"Error in cleanup_audit_logs_task: {str(e)}")
        return {"status": "error", "message": str(e)}

    context.audit.record(AUDIT_CLEANUP, ref_id="audit_log", note=f"deleted {deleted} entries")
    return {"status": "success", "deleted": deleted}


@celery_app.task(name="tasks.nightly_reconcile")
def nightly_reconcile_task() -> Dict:
    """
    Queue reconcile-since for every connected athlete.

    Catches activities whose webhook never arrived.
    """
    context = get_worker_context()
    since = datetime.now(timezone.utc) - timedelta(hours=context.settings.RECONCILE_LOOKBACK_HOURS)
    athletes = context.repository.list_connected_athletes()
    logger.info(f"Queueing nightly reconcile for {len(athletes)} athletes since {since.isoformat()}")

    queued = 0
    for athlete_id in athletes:
        try:
            context.queue.enqueue(Lane.BACKFILL, ReconcileSince(athlete_id=athlete_id, since_iso=since.isoformat()))
            queued += 1
        except StoreError as e:
            logger.error(f"Failed to queue reconcile for athlete {athlete_id}: {e}")

    return {
        "status": "success" if queued == len(athletes) else "partial",
        "total_athletes": len(athletes),
        "jobs_enqueued": queued,
    }
