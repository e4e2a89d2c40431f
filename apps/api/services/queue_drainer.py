"""
Queue Drainer

Pops jobs from the work queue lanes and executes them against the provider.
Each invocation is short-lived and independent (a scheduled Celery task or
an operator request); concurrency is whatever the scheduler allows.

Per invocation:
1. up to ``live_max`` jobs from the live lane, then
2. up to ``backfill_max`` jobs from the backfill lane.
Live is always serviced first.

Failure handling:
- Malformed payloads: counted and dropped.
- Quota exhausted (ours or the provider's): the job goes back to the tail of
  its lane without consuming an attempt and the lane stops for this run.
- Revoked credentials: the athlete is deauthorized; the job is dropped.
- Missing credentials / object gone upstream: counted and dropped.
- Anything else: ``attempts`` is incremented and the job goes back to the
  tail of its lane once the run ends, until it reaches ``max_attempts``;
  then it is moved to the dead-letter lane.

The batch lane is drained separately on a long period with a fixed sleep
between jobs to spread provider calls across the 15-minute window.
"""
import logging
import time
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from core.store import StoreError
from services.activity_cache import ACTIVITIES, STREAMS, LayeredCache, cache_key
from services.audit_log import AUDIT_API, AUDIT_JOB_ERROR, AuditLog
from services.deauthorization import deauthorize_athlete
from services.job_queue import (
    BackfillAthlete,
    Deauth,
    DeleteActivity,
    JobEnvelope,
    Lane,
    MalformedJobError,
    ReconcileSince,
    SyncActivity,
    WorkQueue,
)
from services.persistence import ActivityRepository
from services.rate_limiter import QuotaExceededError
from services.strava_client import ProviderNotFoundError, StravaClient
from services.token_manager import CredentialsNotFoundError, CredentialsRevokedError

logger = logging.getLogger(__name__)

PAGE_SIZE = 200


@dataclass
class JobResult:
    lane: str
    kind: str
    status: str  # success | skipped | requeued | dead_lettered | dropped
    detail: Optional[str] = None
    job: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DrainReport:
    processed: int = 0
    errors: int = 0
    dropped: int = 0
    requeued: int = 0
    dead_lettered: int = 0
    results: List[JobResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["results"] = [asdict(r) for r in self.results]
        return data


class QueueDrainer:
    def __init__(
        self,
        queue: WorkQueue,
        strava: StravaClient,
        repository: ActivityRepository,
        cache: LayeredCache,
        audit: AuditLog,
        max_attempts: int = 3,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.queue = queue
        self.strava = strava
        self.repository = repository
        self.cache = cache
        self.audit = audit
        self.max_attempts = max(1, int(max_attempts))
        self.clock = clock
        self.sleep = sleep

    # ------------------------------------------------------------------
    # entry points
    # ------------------------------------------------------------------

    def drain(self, live_max: int = 10, backfill_max: int = 3) -> DrainReport:
        report = DrainReport()
        self.drain_lane(Lane.LIVE, live_max, report)
        self.drain_lane(Lane.BACKFILL, backfill_max, report)
        logger.info(
            f"Drained queues: processed={report.processed} errors={report.errors} "
            f"requeued={report.requeued} dead_lettered={report.dead_lettered}"
        )
        return report

    def drain_batch(
        self,
        max_jobs: int = 200,
        delay_s: float = 10.0,
        max_duration_s: Optional[float] = None,
    ) -> DrainReport:
        """
        Drain the batch lane with ``delay_s`` between jobs.

        No job is started once another sleep would take the run past
        ``max_duration_s``; the rest waits for the next cycle.
        """
        report = DrainReport()
        started = self.clock()
        deadline = started + max_duration_s if max_duration_s else None
        self.drain_lane(Lane.BATCH, max_jobs, report, delay_s=delay_s, deadline=deadline)
        logger.info(
            f"Batch processor completed: {report.processed} processed, {report.errors} errors, "
            f"{int((self.clock() - started) * 1000)}ms"
        )
        return report

    def drain_lane(
        self,
        lane: Lane,
        max_jobs: int,
        report: DrainReport,
        delay_s: float = 0,
        deadline: Optional[float] = None,
    ) -> None:
        """
        Run up to ``max_jobs`` jobs from one lane.

        Jobs that fail and still have attempts left are held back and pushed
        to the tail of the lane only when this run is over, so a job is tried
        at most once per invocation.
        """
        retries: List[JobEnvelope] = []
        try:
            self._drain_lane(lane, max_jobs, report, delay_s, deadline, retries)
        finally:
            for envelope in retries:
                if not self._requeue(lane, envelope):
                    report.dropped += 1

    def _drain_lane(
        self,
        lane: Lane,
        max_jobs: int,
        report: DrainReport,
        delay_s: float,
        deadline: Optional[float],
        retries: List[JobEnvelope],
    ) -> None:
        for i in range(max(0, int(max_jobs))):
            if delay_s and i > 0 and deadline is not None and self.clock() + delay_s > deadline:
                logger.info(f"Stopping {lane.value} at the time budget after {i} jobs")
                return

            try:
                envelope = self.queue.pop(lane)
            except MalformedJobError as e:
                logger.error(f"Dropping malformed job from {lane.value}: {e}")
                report.errors += 1
                report.dropped += 1
                report.results.append(JobResult(lane.value, "unknown", "dropped", f"malformed: {e}"))
                continue
            except StoreError as e:
                logger.error(f"Cannot pop from {lane.value}, stopping lane: {e}")
                report.errors += 1
                return

            if envelope is None:
                logger.debug(f"{lane.value} is empty")
                return

            if delay_s and i > 0:
                # Coarse spacing of provider calls within the 15-minute window
                try:
                    self.sleep(delay_s)
                except BaseException:
                    # Time limit or shutdown while waiting: the job has not run yet
                    self._requeue(lane, envelope)
                    raise

            if not self._run(lane, envelope, report, retries):
                return

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------

    def _run(
        self,
        lane: Lane,
        envelope: JobEnvelope,
        report: DrainReport,
        retries: List[JobEnvelope],
    ) -> bool:
        """Execute one job. Returns False when the lane should stop for this run."""
        kind = envelope.kind.value
        job_dict = envelope.to_dict()
        try:
            status, detail = self.process(envelope)
        except QuotaExceededError as e:
            logger.warning(f"Quota exhausted while running {kind}, requeueing: {e.reason}")
            self._requeue(lane, getattr(e, "resume_envelope", None) or envelope)
            report.requeued += 1
            report.results.append(JobResult(lane.value, kind, "requeued", e.reason, job_dict))
            return False
        except CredentialsRevokedError as e:
            report.errors += 1
            report.dropped += 1
            athlete_id = e.athlete_id or getattr(envelope.job, "athlete_id", None)
            logger.warning(f"Credentials revoked for athlete {athlete_id}, deauthorizing")
            if athlete_id is not None:
                deauthorize_athlete(athlete_id, self.repository, self.cache, self.audit, note="refresh_rejected")
            report.results.append(JobResult(lane.value, kind, "dropped", "credentials_revoked", job_dict))
            return True
        except (CredentialsNotFoundError, ProviderNotFoundError, MalformedJobError) as e:
            logger.error(f"Dropping {kind}: {e}")
            report.errors += 1
            report.dropped += 1
            report.results.append(JobResult(lane.value, kind, "dropped", str(e), job_dict))
            return True
        except Exception as e:
            logger.exception(f"Job {kind} failed (attempt {envelope.attempts + 1}/{self.max_attempts})")
            report.errors += 1
            self._retry_or_dead_letter(lane, envelope, str(e), report, job_dict, retries)
            return True

        report.processed += 1
        report.results.append(JobResult(lane.value, kind, status, detail, job_dict))
        return True

    def _requeue(self, lane: Lane, envelope: JobEnvelope) -> bool:
        try:
            self.queue.enqueue_envelope(lane, envelope)
            return True
        except StoreError as e:
            logger.error(f"Lost {envelope.kind.value} job while requeueing: {e}")
            return False

    def _retry_or_dead_letter(
        self,
        lane: Lane,
        envelope: JobEnvelope,
        error: str,
        report: DrainReport,
        job_dict: Dict[str, Any],
        retries: List[JobEnvelope],
    ) -> None:
        envelope.attempts += 1
        envelope.last_error = error
        if envelope.attempts < self.max_attempts:
            retries.append(envelope)
            report.requeued += 1
            report.results.append(JobResult(lane.value, envelope.kind.value, "requeued", error, job_dict))
            return
        try:
            self.queue.dead_letter(envelope, error)
        except StoreError as e:
            logger.error(f"Lost {envelope.kind.value} job after failure: {e}")
            report.dropped += 1
            report.results.append(JobResult(lane.value, envelope.kind.value, "dropped", error, job_dict))
            return

        report.dead_lettered += 1
        report.results.append(JobResult(lane.value, envelope.kind.value, "dead_lettered", error, job_dict))
        self.audit.record(
            AUDIT_JOB_ERROR,
            ref_id=envelope.kind.value,
            note=error[:500],
            athlete_id=getattr(envelope.job, "athlete_id", None),
        )

    def process(self, envelope: JobEnvelope):
        """Dispatch on job type. Returns (status, detail)."""
        job = envelope.job
        if isinstance(job, SyncActivity):
            return self._sync_activity(job)
        if isinstance(job, DeleteActivity):
            return self._delete_activity(job)
        if isinstance(job, Deauth):
            logger.info(f"Deauth job for athlete {job.athlete_id} already handled at ingestion")
            return "skipped", "deauth_handled_by_webhook"
        if isinstance(job, BackfillAthlete):
            return self._backfill(envelope, job)
        if isinstance(job, ReconcileSince):
            return self._reconcile(job)
        raise MalformedJobError(f"no handler for {type(job).__name__}")

    # ------------------------------------------------------------------
    # handlers
    # ------------------------------------------------------------------

    def _store_summary(self, athlete_id: int, activity: Dict[str, Any]) -> None:
        activity.setdefault("athlete_id", athlete_id)
        self.repository.upsert_activity_summary(activity)
        self.cache.set(
            cache_key(ACTIVITIES, athlete_id, activity["id"]),
            activity,
            self.cache.ttl_for(ACTIVITIES),
            athlete_id=athlete_id,
        )

    def _sync_activity(self, job: SyncActivity):
        activity = self.strava.get_activity(job.athlete_id, job.activity_id)
        self._store_summary(job.athlete_id, activity)
        self.audit.record(AUDIT_API, ref_id=str(job.athlete_id), note="activities:sync", athlete_id=job.athlete_id)
        logger.info(f"Synced activity {job.activity_id} for athlete {job.athlete_id}")
        return "success", activity.get("name")

    def _delete_activity(self, job: DeleteActivity):
        deleted = self.repository.delete_activity(job.activity_id)
        if job.athlete_id is not None:
            for namespace in (ACTIVITIES, STREAMS):
                self.cache.delete(cache_key(namespace, job.athlete_id, job.activity_id))
        logger.info(f"Deleted activity {job.activity_id} (found={deleted})")
        return "success", "deleted" if deleted else "not_found"

    def _upsert_page(self, athlete_id: int, items: List[Dict[str, Any]]) -> None:
        for activity in items:
            self._store_summary(athlete_id, activity)

    def _backfill(self, envelope: JobEnvelope, job: BackfillAthlete):
        after = job.after_epoch or int(self.clock() - job.window_days * 86400)
        page = job.resume_page or 1
        synced = 0
        while True:
            try:
                items = self.strava.list_activities_since(job.athlete_id, after, page, PAGE_SIZE)
            except QuotaExceededError as e:
                # Resume from this page on the next run
                e.resume_envelope = replace(
                    envelope, job=replace(job, after_epoch=after, resume_page=page)
                )
                logger.info(f"Backfill for athlete {job.athlete_id} paused at page {page}")
                raise
            if not items:
                break
            self._upsert_page(job.athlete_id, items)
            synced += len(items)
            page += 1
        logger.info(f"Backfill complete for athlete {job.athlete_id}: {synced} activities")
        return "success", f"synced {synced}"

    def _reconcile(self, job: ReconcileSince):
        try:
            since = datetime.fromisoformat(job.since_iso.replace("Z", "+00:00"))
        except ValueError as e:
            raise MalformedJobError(f"reconcile-since: bad since_iso {job.since_iso!r}") from e
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        items = self.strava.list_activities_since(job.athlete_id, int(since.timestamp()), 1, PAGE_SIZE)
        self._upsert_page(job.athlete_id, items)
        return "success", f"synced {len(items)}"
