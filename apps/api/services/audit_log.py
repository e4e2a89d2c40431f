"""
Audit Log

Append-only trail of ingestion events (webhooks, deauthorizations, provider
calls, dropped jobs) used as compliance evidence and for diagnosis.

Entries go to the persistence collaborator and are mirrored as JSON on the
``velosync.audit`` logger. Writes are best effort: a failure is logged and
never blocks the operation being audited.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from core.logging import AUDIT_LOGGER
from services.persistence import ActivityRepository, AuditLogEntry

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger(AUDIT_LOGGER)

AUDIT_WEBHOOK = "webhook"
AUDIT_DEAUTH = "deauth"
AUDIT_API = "api"
AUDIT_JOB_ERROR = "job_error"
AUDIT_CLEANUP = "cleanup"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditLog:
    def __init__(
        self,
        repository: ActivityRepository,
        retention_days: int = 30,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.repository = repository
        self.retention_days = retention_days
        self.now = now

    def record(
        self,
        kind: str,
        ref_id: Optional[str] = None,
        note: Optional[str] = None,
        athlete_id: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> bool:
        """
        Append an entry. Returns False (after logging) if the write failed.

        ``user_id`` is resolved from the athlete when not given.
        """
        try:
            if user_id is None and athlete_id is not None:
                user_id = self.repository.get_user_id(athlete_id)
            entry = AuditLogEntry(
                kind=kind,
                ref_id=ref_id,
                note=note,
                athlete_id=athlete_id,
                user_id=user_id,
                at=self.now(),
            )
            self.repository.append_audit_log(entry)
        except Exception as e:
            logger.error(f"Failed to write audit log entry kind={kind} ref={ref_id}: {e}")
            return False

        audit_logger.info(json.dumps({
            "timestamp": entry.at.isoformat(),
            "kind": kind,
            "ref_id": ref_id,
            "note": note,
            "athlete_id": athlete_id,
        }))
        return True

    def prune(self) -> int:
        """Delete entries older than the retention window. Returns rows deleted."""
        cutoff = self.now() - timedelta(days=self.retention_days)
        deleted = self.repository.prune_audit_log(cutoff)
        logger.info(f"Audit log cleanup deleted {deleted} entries older than {cutoff.isoformat()}")
        return deleted
