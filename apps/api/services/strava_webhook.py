"""
Strava Webhook Ingester

Turns Strava push events into queued jobs. Strava expects a fast 200 for
every delivery and retries otherwise, so nothing here calls the provider:

- activity create -> sync-activity on the batch lane
- activity update -> sync-activity on the batch lane, only when a field we
  mirror changed (title, type, visibility, private)
- any delete      -> delete-activity on the batch lane
- athlete update with ``authorized: "false"`` -> deauthorization runs inline
  (local data and cached telemetry are removed before we answer), then a
  deauth job is put on the live lane as a record

Every event is audit-logged before routing.
"""
import hmac
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from services.activity_cache import LayeredCache
from services.audit_log import AUDIT_WEBHOOK, AuditLog
from services.deauthorization import deauthorize_athlete
from services.job_queue import Deauth, DeleteActivity, Lane, SyncActivity, WorkQueue
from services.persistence import ActivityRepository

logger = logging.getLogger(__name__)

# Update fields that change what we store for an activity
SYNCED_UPDATE_FIELDS = frozenset({"title", "type", "visibility", "private"})


class WebhookVerificationError(ValueError):
    """Subscription handshake carried the wrong verify token."""


@dataclass
class WebhookEvent:
    object_type: str
    object_id: int
    aspect_type: str
    owner_id: int
    updates: Dict[str, Any] = field(default_factory=dict)
    event_time: Optional[int] = None
    subscription_id: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WebhookEvent":
        if not isinstance(data, dict):
            raise ValueError("webhook event must be an object")
        try:
            return cls(
                object_type=str(data["object_type"]),
                object_id=int(data["object_id"]),
                aspect_type=str(data["aspect_type"]),
                owner_id=int(data["owner_id"]),
                updates=dict(data.get("updates") or {}),
                event_time=data.get("event_time"),
                subscription_id=data.get("subscription_id"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"invalid webhook event: {e}") from e

    @property
    def note(self) -> str:
        return f"{self.object_type}:{self.aspect_type}:{self.object_id}"


class WebhookIngester:
    def __init__(
        self,
        queue: WorkQueue,
        repository: ActivityRepository,
        cache: LayeredCache,
        audit: AuditLog,
        verify_token: Optional[str] = None,
    ):
        self.queue = queue
        self.repository = repository
        self.cache = cache
        self.audit = audit
        self.verify_token = verify_token

    def verify_challenge(self, challenge: str, verify_token: Optional[str] = None) -> Dict[str, str]:
        """
        Answer the subscription handshake.

        The token is only compared when both sides have one.
        """
        if self.verify_token and verify_token is not None:
            if not hmac.compare_digest(str(verify_token), str(self.verify_token)):
                logger.warning("Webhook verification failed: verify token mismatch")
                raise WebhookVerificationError("verify token mismatch")
        logger.info("Webhook verification successful")
        return {"hub.challenge": challenge}

    def handle_event(self, data: Dict[str, Any]) -> str:
        """Route one event. Returns what was done, for logging and tests."""
        event = WebhookEvent.from_dict(data)
        logger.info(
            f"Webhook event: type={event.object_type}, aspect={event.aspect_type}, "
            f"object_id={event.object_id}, owner_id={event.owner_id}"
        )
        self.audit.record(AUDIT_WEBHOOK, ref_id=str(event.owner_id), note=event.note, athlete_id=event.owner_id)

        if event.aspect_type == "delete":
            self.queue.enqueue(Lane.BATCH, DeleteActivity(activity_id=event.object_id, athlete_id=event.owner_id))
            return "queued:delete-activity"
        if event.object_type == "athlete":
            return self._handle_athlete(event)
        if event.object_type != "activity":
            logger.info(f"Ignoring {event.object_type} event")
            return "ignored"

        if event.aspect_type == "create":
            self.queue.enqueue(Lane.BATCH, SyncActivity(athlete_id=event.owner_id, activity_id=event.object_id))
            return "queued:sync-activity"
        if event.aspect_type == "update":
            if not SYNCED_UPDATE_FIELDS.intersection(event.updates):
                logger.debug(f"Ignoring update to {event.object_id}: {sorted(event.updates)}")
                return "ignored"
            self.queue.enqueue(Lane.BATCH, SyncActivity(athlete_id=event.owner_id, activity_id=event.object_id))
            return "queued:sync-activity"

        logger.info(f"Ignoring aspect type: {event.aspect_type}")
        return "ignored"

    def _handle_athlete(self, event: WebhookEvent) -> str:
        if str(event.updates.get("authorized", "")).lower() != "false":
            return "ignored"

        deauthorize_athlete(event.owner_id, self.repository, self.cache, self.audit, note="webhook")
        self.queue.enqueue(Lane.LIVE, Deauth(athlete_id=event.owner_id))
        return "deauthorized"
