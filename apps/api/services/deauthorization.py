"""
Deauthorization path.

Runs when an athlete revokes access (webhook ``authorized=false``) or when
the provider rejects their refresh token. Idempotent: repeating it for an
athlete that is already gone only adds another audit entry.
"""
import logging
from typing import Optional

from services.activity_cache import LayeredCache
from services.audit_log import AUDIT_DEAUTH, AuditLog
from services.persistence import ActivityRepository

logger = logging.getLogger(__name__)


def deauthorize_athlete(
    athlete_id: int,
    repository: ActivityRepository,
    cache: LayeredCache,
    audit: AuditLog,
    note: str = "webhook",
    user_id: Optional[str] = None,
) -> int:
    """Audit, then delete all local data and cached telemetry for the athlete."""
    if user_id is None:
        user_id = repository.get_user_id(athlete_id)
    audit.record(AUDIT_DEAUTH, ref_id=str(athlete_id), note=note, athlete_id=athlete_id, user_id=user_id)

    deleted = repository.delete_athlete(athlete_id)
    purged = cache.purge_athlete(athlete_id)
    logger.info(f"Deauthorized athlete {athlete_id} ({note}): {deleted} athlete row(s), {purged} cache entries")
    return deleted
