"""
Persistence collaborator.

The ingestion core only talks to storage through ``ActivityRepository``.
Each call is its own transaction. ``SqlActivityRepository`` is the default
SQLAlchemy-backed implementation.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from models import ActivitySummary, Athlete, AuditLog

logger = logging.getLogger(__name__)


@dataclass
class CredentialRecord:
    """Stored credentials. Token fields are ciphertext."""
    athlete_id: int
    access_token: Optional[str]
    refresh_token: Optional[str]
    expires_at: Optional[datetime]
    scopes: List[str]
    user_id: Optional[str] = None


@dataclass
class AuditLogEntry:
    kind: str
    ref_id: Optional[str] = None
    note: Optional[str] = None
    athlete_id: Optional[int] = None
    user_id: Optional[str] = None
    at: Optional[datetime] = None


# Provider summary fields copied onto ActivitySummary
_SUMMARY_FIELDS = (
    "name",
    "type",
    "distance",
    "moving_time",
    "elapsed_time",
    "total_elevation_gain",
    "average_speed",
    "max_speed",
    "average_cadence",
    "average_heartrate",
    "max_heartrate",
    "average_watts",
    "weighted_average_watts",
    "kilojoules",
    "calories",
    "private",
    "gear_id",
)


def _parse_start_date(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def summary_values(activity: Dict[str, Any]) -> Dict[str, Any]:
    """Map a provider activity payload onto summary columns."""
    values = {f: activity.get(f) for f in _SUMMARY_FIELDS}
    values["start_date"] = _parse_start_date(activity.get("start_date"))
    values["visibility"] = activity.get("visibility") or "everyone"
    values["map_polyline"] = (activity.get("map") or {}).get("summary_polyline")
    return values


class ActivityRepository(ABC):
    """Storage operations the ingestion core depends on."""

    @abstractmethod
    def upsert_activity_summary(self, activity: Dict[str, Any]) -> None: ...

    @abstractmethod
    def delete_activity(self, activity_id: int) -> bool: ...

    @abstractmethod
    def get_credentials(self, athlete_id: int) -> Optional[CredentialRecord]: ...

    @abstractmethod
    def save_credentials(
        self,
        athlete_id: int,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: datetime,
        scopes: Optional[List[str]] = None,
    ) -> None: ...

    @abstractmethod
    def get_user_id(self, athlete_id: int) -> Optional[str]: ...

    @abstractmethod
    def delete_athlete(self, athlete_id: int) -> int: ...

    @abstractmethod
    def list_connected_athletes(self) -> List[int]: ...

    @abstractmethod
    def append_audit_log(self, entry: AuditLogEntry) -> None: ...

    @abstractmethod
    def prune_audit_log(self, older_than: datetime) -> int: ...


class SqlActivityRepository(ActivityRepository):
    """SQLAlchemy implementation. One session (and commit) per call."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def upsert_activity_summary(self, activity: Dict[str, Any]) -> None:
        activity_id = int(activity["id"])
        athlete_id = int((activity.get("athlete") or {}).get("id") or activity["athlete_id"])
        values = summary_values(activity)

        with self.session_factory() as db:
            row = db.get(ActivitySummary, activity_id)
            if row is None:
                user_id = db.query(Athlete.user_id).filter(Athlete.id == athlete_id).scalar()
                row = ActivitySummary(id=activity_id, athlete_id=athlete_id, user_id=user_id)
                db.add(row)
            for column, value in values.items():
                setattr(row, column, value)
            row.updated_at = datetime.now(timezone.utc)
            db.commit()

    def delete_activity(self, activity_id: int) -> bool:
        with self.session_factory() as db:
            deleted = db.query(ActivitySummary).filter(ActivitySummary.id == int(activity_id)).delete(
                synchronize_session=False
            )
            db.commit()
            return deleted > 0

    def get_credentials(self, athlete_id: int) -> Optional[CredentialRecord]:
        with self.session_factory() as db:
            athlete = db.get(Athlete, int(athlete_id))
            if athlete is None:
                return None
            expires_at = athlete.expires_at
            if expires_at is not None and expires_at.tzinfo is None:
                # SQLite drops tzinfo; stored values are always UTC
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            return CredentialRecord(
                athlete_id=athlete.id,
                access_token=athlete.access_token,
                refresh_token=athlete.refresh_token,
                expires_at=expires_at,
                scopes=[s for s in (athlete.scopes or "").split(",") if s],
                user_id=athlete.user_id,
            )

    def save_credentials(self, athlete_id, access_token, refresh_token, expires_at, scopes=None) -> None:
        with self.session_factory() as db:
            athlete = db.get(Athlete, int(athlete_id))
            if athlete is None:
                athlete = Athlete(id=int(athlete_id))
                db.add(athlete)
            athlete.access_token = access_token
            if refresh_token:
                athlete.refresh_token = refresh_token
            athlete.expires_at = expires_at
            if scopes is not None:
                athlete.scopes = ",".join(scopes)
            db.commit()

    def get_user_id(self, athlete_id: int) -> Optional[str]:
        with self.session_factory() as db:
            return db.query(Athlete.user_id).filter(Athlete.id == int(athlete_id)).scalar()

    def delete_athlete(self, athlete_id: int) -> int:
        with self.session_factory() as db:
            db.query(ActivitySummary).filter(ActivitySummary.athlete_id == int(athlete_id)).delete(
                synchronize_session=False
            )
            deleted = db.query(Athlete).filter(Athlete.id == int(athlete_id)).delete(synchronize_session=False)
            db.commit()
            logger.info(f"Deleted {deleted} athlete record(s) for {athlete_id}")
            return deleted

    def list_connected_athletes(self) -> List[int]:
        with self.session_factory() as db:
            rows = db.query(Athlete.id).filter(Athlete.refresh_token.isnot(None)).order_by(Athlete.id).all()
            return [r[0] for r in rows]

    def append_audit_log(self, entry: AuditLogEntry) -> None:
        with self.session_factory() as db:
            row = AuditLog(
                kind=entry.kind,
                ref_id=entry.ref_id,
                note=entry.note,
                athlete_id=entry.athlete_id,
                user_id=entry.user_id,
            )
            if entry.at is not None:
                row.at = entry.at
            db.add(row)
            db.commit()

    def prune_audit_log(self, older_than: datetime) -> int:
        with self.session_factory() as db:
            deleted = db.query(AuditLog).filter(AuditLog.at < older_than).delete(synchronize_session=False)
            db.commit()
            return deleted
