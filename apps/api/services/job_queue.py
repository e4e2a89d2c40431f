"""
Work Queue

Ordered job lists in the shared store:

- live (``q:live``): webhook-driven work expected to drain within seconds
- backfill (``q:backfill``): bulk reconciliation, drained more slowly
- batch (``queue:batch``): webhook activity events smoothed over a 6-hour cycle
- dead letter (``q:dead``): jobs that exhausted their attempts, kept for operators

Enqueue appends (RPUSH); pop removes the oldest entry (LPOP) and returns None
when the lane is empty. Pops never block. Pop is atomic in the store, so two
drainers never see the same job; delivery is at most once.

Jobs travel as a JSON envelope serialized exactly once at enqueue:
``{"kind": "sync-activity", "athlete_id": 1, "activity_id": 2, "attempts": 0}``.
Deserialization is strict: unknown kinds and missing fields raise
MalformedJobError.
"""
import json
import logging
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Union

from core.store import CounterStore

logger = logging.getLogger(__name__)


class Lane(str, Enum):
    LIVE = "q:live"
    BACKFILL = "q:backfill"
    BATCH = "queue:batch"
    DEAD_LETTER = "q:dead"


class JobKind(str, Enum):
    SYNC_ACTIVITY = "sync-activity"
    DELETE_ACTIVITY = "delete-activity"
    DEAUTH = "deauth"
    BACKFILL_ATHLETE = "backfill-athlete"
    RECONCILE_SINCE = "reconcile-since"


class MalformedJobError(ValueError):
    def __init__(self, message: str, raw: Any = None):
        super().__init__(message)
        self.raw = raw


@dataclass(frozen=True)
class SyncActivity:
    athlete_id: int
    activity_id: int
    kind: ClassVar[JobKind] = JobKind.SYNC_ACTIVITY


@dataclass(frozen=True)
class DeleteActivity:
    activity_id: int
    athlete_id: Optional[int] = None
    kind: ClassVar[JobKind] = JobKind.DELETE_ACTIVITY


@dataclass(frozen=True)
class Deauth:
    athlete_id: int
    kind: ClassVar[JobKind] = JobKind.DEAUTH


@dataclass(frozen=True)
class BackfillAthlete:
    athlete_id: int
    window_days: int = 90
    # Set when a budget pause requeues a partially finished backfill
    after_epoch: Optional[int] = None
    resume_page: Optional[int] = None
    kind: ClassVar[JobKind] = JobKind.BACKFILL_ATHLETE


@dataclass(frozen=True)
class ReconcileSince:
    athlete_id: int
    since_iso: str
    kind: ClassVar[JobKind] = JobKind.RECONCILE_SINCE


Job = Union[SyncActivity, DeleteActivity, Deauth, BackfillAthlete, ReconcileSince]

JOB_TYPES: Dict[JobKind, type] = {
    JobKind.SYNC_ACTIVITY: SyncActivity,
    JobKind.DELETE_ACTIVITY: DeleteActivity,
    JobKind.DEAUTH: Deauth,
    JobKind.BACKFILL_ATHLETE: BackfillAthlete,
    JobKind.RECONCILE_SINCE: ReconcileSince,
}

_INT_FIELDS = {"athlete_id", "activity_id", "window_days", "after_epoch", "resume_page"}


def _unwrap(raw: Any) -> Any:
    """
    Undo one level of legacy double encoding.

    Older producers pushed ``{"value": "<json>"}`` or a JSON string holding
    JSON. Current producers serialize once and never hit these branches.
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise MalformedJobError(f"job payload is not JSON: {e}", raw) from e
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise MalformedJobError(f"job payload is not JSON: {e}", raw) from e
    if isinstance(raw, dict) and "kind" not in raw and isinstance(raw.get("value"), str):
        try:
            raw = json.loads(raw["value"])
        except ValueError as e:
            raise MalformedJobError(f"wrapped job payload is not JSON: {e}", raw) from e
    return raw


@dataclass
class JobEnvelope:
    job: Job
    attempts: int = 0
    last_error: Optional[str] = None

    @property
    def kind(self) -> JobKind:
        return self.job.kind

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": self.job.kind.value}
        for f in fields(self.job):
            value = getattr(self.job, f.name)
            if value is not None:
                data[f.name] = value
        data["attempts"] = self.attempts
        if self.last_error:
            data["last_error"] = self.last_error
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_payload(cls, raw: Any) -> "JobEnvelope":
        data = _unwrap(raw)
        if not isinstance(data, dict):
            raise MalformedJobError("job payload must be an object", raw)

        try:
            kind = JobKind(data.get("kind"))
        except ValueError:
            raise MalformedJobError(f"unknown job kind: {data.get('kind')!r}", raw)

        job_type = JOB_TYPES[kind]
        kwargs = {}
        for f in fields(job_type):
            if f.name not in data or data[f.name] is None:
                continue
            value = data[f.name]
            if f.name in _INT_FIELDS:
                try:
                    value = int(value)
                except (TypeError, ValueError):
                    raise MalformedJobError(f"{kind.value}: {f.name} must be an integer", raw)
            kwargs[f.name] = value

        try:
            job = job_type(**kwargs)
        except TypeError as e:
            raise MalformedJobError(f"{kind.value}: missing fields ({e})", raw) from e

        try:
            attempts = int(data.get("attempts") or 0)
        except (TypeError, ValueError):
            attempts = 0
        return cls(job=job, attempts=attempts, last_error=data.get("last_error"))


class WorkQueue:
    def __init__(self, store: CounterStore):
        self.store = store

    def enqueue(self, lane: Lane, job: Job) -> int:
        return self.enqueue_envelope(lane, JobEnvelope(job=job))

    def enqueue_envelope(self, lane: Lane, envelope: JobEnvelope) -> int:
        length = self.store.rpush(Lane(lane).value, envelope.to_json())
        logger.debug(f"Enqueued {envelope.kind.value} on {Lane(lane).value} (depth {length})")
        return length

    def pop(self, lane: Lane) -> Optional[JobEnvelope]:
        """
        Remove and return the oldest job, or None if the lane is empty.

        Raises MalformedJobError for unreadable payloads; the entry has
        already been removed from the lane and is gone.
        """
        raw = self.store.lpop(Lane(lane).value)
        if raw is None:
            return None
        return JobEnvelope.from_payload(raw)

    def depth(self) -> Dict[str, int]:
        return {
            "live": self.store.llen(Lane.LIVE.value),
            "backfill": self.store.llen(Lane.BACKFILL.value),
            "batch": self.store.llen(Lane.BATCH.value),
            "dead_letter": self.store.llen(Lane.DEAD_LETTER.value),
        }

    def dead_letter(self, envelope: JobEnvelope, error: str) -> int:
        envelope.last_error = error
        payload = envelope.to_dict()
        payload["dead_lettered_at"] = datetime.now(timezone.utc).isoformat()
        logger.warning(f"Dead-lettering {envelope.kind.value} after {envelope.attempts} attempts: {error}")
        return self.store.rpush(Lane.DEAD_LETTER.value, json.dumps(payload))

    def peek_dead_letters(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Oldest dead-lettered jobs, without removing them."""
        out = []
        for raw in self.store.lrange(Lane.DEAD_LETTER.value, 0, max(0, int(limit) - 1)):
            try:
                out.append(json.loads(raw))
            except ValueError:
                out.append({"raw": raw})
        return out
