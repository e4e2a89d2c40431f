"""
Tests for the SQLAlchemy repository against in-memory SQLite.
"""
from datetime import datetime, timedelta, timezone

import pytest

from core.database import build_engine, build_session_factory, check_db_connection, init_schema
from models import Athlete
from services.persistence import AuditLogEntry, SqlActivityRepository


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    init_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def repo(session_factory):
    return SqlActivityRepository(session_factory)


def _activity(activity_id=1, athlete_id=9, **overrides):
    activity = {
        "id": activity_id,
        "athlete": {"id": athlete_id},
        "name": "Morning Ride",
        "type": "Ride",
        "start_date": "2025-01-07T07:00:00Z",
        "distance": 42000.0,
        "moving_time": 5400,
        "average_watts": 210.5,
        "map": {"summary_polyline": "abc"},
    }
    activity.update(overrides)
    return activity


def test_health_check(engine):
    assert check_db_connection(engine) is True


def test_credentials_round_trip(repo):
    expires = datetime(2030, 1, 1, tzinfo=timezone.utc)
    repo.save_credentials(9, "enc-access", "enc-refresh", expires, scopes=["read", "activity:read_all"])

    creds = repo.get_credentials(9)
    assert creds.access_token == "enc-access"
    assert creds.refresh_token == "enc-refresh"
    assert creds.expires_at == expires
    assert creds.scopes == ["read", "activity:read_all"]


def test_save_credentials_keeps_refresh_token_when_absent(repo):
    expires = datetime(2030, 1, 1, tzinfo=timezone.utc)
    repo.save_credentials(9, "a1", "r1", expires)
    repo.save_credentials(9, "a2", None, expires)
    assert repo.get_credentials(9).refresh_token == "r1"


def test_missing_credentials(repo):
    assert repo.get_credentials(404) is None


def test_upsert_inserts_then_updates(repo, session_factory):
    repo.upsert_activity_summary(_activity())
    repo.upsert_activity_summary(_activity(name="Renamed"))

    with session_factory() as db:
        athlete_rows = db.query(Athlete).count()
        from models import ActivitySummary
        rows = db.query(ActivitySummary).all()
    assert athlete_rows == 0
    assert len(rows) == 1
    assert rows[0].name == "Renamed"
    assert rows[0].athlete_id == 9
    assert rows[0].map_polyline == "abc"
    assert rows[0].visibility == "everyone"


def test_upsert_copies_user_from_athlete(repo, session_factory):
    with session_factory() as db:
        db.add(Athlete(id=9, user_id="user-9"))
        db.commit()
    repo.upsert_activity_summary(_activity())

    from models import ActivitySummary
    with session_factory() as db:
        assert db.get(ActivitySummary, 1).user_id == "user-9"
    assert repo.get_user_id(9) == "user-9"


def test_delete_activity(repo):
    repo.upsert_activity_summary(_activity())
    assert repo.delete_activity(1) is True
    assert repo.delete_activity(1) is False


def test_delete_athlete_removes_activities_and_credentials(repo):
    repo.save_credentials(9, "a", "r", datetime(2030, 1, 1, tzinfo=timezone.utc))
    repo.upsert_activity_summary(_activity(1))
    repo.upsert_activity_summary(_activity(2))
    repo.upsert_activity_summary(_activity(3, athlete_id=10))

    assert repo.delete_athlete(9) == 1
    assert repo.get_credentials(9) is None
    assert repo.delete_activity(1) is False
    assert repo.delete_activity(3) is True
    # Idempotent
    assert repo.delete_athlete(9) == 0


def test_connected_athletes_need_refresh_token(repo):
    expires = datetime(2030, 1, 1, tzinfo=timezone.utc)
    repo.save_credentials(11, "a", "r", expires)
    repo.save_credentials(9, "a", "r", expires)
    repo.save_credentials(10, "a", None, expires)
    assert repo.list_connected_athletes() == [9, 11]


def test_audit_append_and_prune(repo):
    now = datetime.now(timezone.utc)
    repo.append_audit_log(AuditLogEntry(kind="webhook", ref_id="9", note="activity:create:1", at=now - timedelta(days=40)))
    repo.append_audit_log(AuditLogEntry(kind="deauth", ref_id="9", note="webhook", at=now))

    assert repo.prune_audit_log(now - timedelta(days=30)) == 1
    assert repo.prune_audit_log(now - timedelta(days=30)) == 0
