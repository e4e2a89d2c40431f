"""
Tests for the queue drainer: lane order, dispatch, retry and dead letters.

The Strava client is a MagicMock; store, repository and clock are fakes.
"""
from unittest.mock import MagicMock

import pytest

from services.activity_cache import ACTIVITIES, STREAMS, BlobCacheBackend, LayeredCache, LocalCache, cache_key
from services.audit_log import AuditLog
from services.job_queue import (
    BackfillAthlete,
    Deauth,
    DeleteActivity,
    JobEnvelope,
    Lane,
    ReconcileSince,
    SyncActivity,
    WorkQueue,
)
from services.queue_drainer import QueueDrainer
from services.rate_limiter import QuotaExceededError
from services.strava_client import ProviderNotFoundError, ProviderUnavailableError, StravaClient
from services.token_manager import CredentialsNotFoundError, CredentialsRevokedError


def _activity(activity_id, athlete_id=9, name="Morning Ride"):
    return {"id": activity_id, "athlete": {"id": athlete_id}, "name": name, "type": "Ride", "distance": 40000.0}


@pytest.fixture
def strava():
    client = MagicMock(spec=StravaClient)
    client.get_activity.side_effect = lambda athlete_id, activity_id: _activity(activity_id, athlete_id)
    client.list_activities_since.return_value = []
    return client


@pytest.fixture
def cache(store, clock):
    return LayeredCache(BlobCacheBackend(store), LocalCache(clock), {ACTIVITIES: 3600, STREAMS: 86400}, clock=clock)


@pytest.fixture
def queue(store):
    return WorkQueue(store)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def drainer(queue, strava, repository, cache, clock, sleeps):
    return QueueDrainer(
        queue, strava, repository, cache, AuditLog(repository),
        max_attempts=3, clock=clock, sleep=sleeps.append,
    )


# ---------------------------------------------------------------------------
# Lane order and limits
# ---------------------------------------------------------------------------

def test_live_drained_before_backfill(drainer, queue, strava):
    queue.enqueue(Lane.BACKFILL, ReconcileSince(athlete_id=9, since_iso="2025-01-06T00:00:00Z"))
    queue.enqueue(Lane.LIVE, SyncActivity(athlete_id=9, activity_id=1))
    queue.enqueue(Lane.LIVE, SyncActivity(athlete_id=9, activity_id=2))

    report = drainer.drain(live_max=10, backfill_max=3)

    assert [r.lane for r in report.results] == ["q:live", "q:live", "q:backfill"]
    assert [r.kind for r in report.results] == ["sync-activity", "sync-activity", "reconcile-since"]
    assert report.processed == 3
    assert report.errors == 0


def test_drain_respects_per_lane_limits(drainer, queue):
    for i in range(5):
        queue.enqueue(Lane.LIVE, SyncActivity(athlete_id=9, activity_id=i))
    for i in range(5):
        queue.enqueue(Lane.BACKFILL, ReconcileSince(athlete_id=i, since_iso="2025-01-06T00:00:00+00:00"))

    report = drainer.drain(live_max=2, backfill_max=1)

    assert report.processed == 3
    assert queue.depth() == {"live": 3, "backfill": 4, "batch": 0, "dead_letter": 0}


def test_empty_lanes_report_nothing(drainer):
    report = drainer.drain()
    assert report.to_dict() == {
        "processed": 0, "errors": 0, "dropped": 0, "requeued": 0, "dead_lettered": 0, "results": [],
    }


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

def test_sync_activity_upserts_caches_and_audits(drainer, queue, repository, cache):
    queue.enqueue(Lane.LIVE, SyncActivity(athlete_id=9, activity_id=123))

    report = drainer.drain()

    assert report.results[0].status == "success"
    assert repository.activities[123]["name"] == "Morning Ride"
    assert cache.get(cache_key(ACTIVITIES, 9, 123))["id"] == 123
    assert repository.audit_kinds() == ["api"]
    assert repository.audit[0].note == "activities:sync"


def test_delete_activity_removes_summary_and_cache(drainer, queue, repository, cache):
    repository.upsert_activity_summary(_activity(55))
    cache.set(cache_key(STREAMS, 9, 55), {"watts": [1]}, 3600, athlete_id=9)
    queue.enqueue(Lane.LIVE, DeleteActivity(activity_id=55, athlete_id=9))

    report = drainer.drain()

    assert report.results[0].detail == "deleted"
    assert 55 not in repository.activities
    assert not cache.get(cache_key(STREAMS, 9, 55))


def test_deauth_job_is_a_logged_noop(drainer, queue, strava, repository):
    queue.enqueue(Lane.LIVE, Deauth(athlete_id=9))

    report = drainer.drain()

    assert report.results[0].status == "skipped"
    assert report.results[0].detail == "deauth_handled_by_webhook"
    strava.assert_not_called()
    assert repository.deleted_athletes == []


def test_backfill_pages_until_empty(drainer, queue, strava, repository, clock):
    pages = {1: [_activity(1), _activity(2)], 2: [_activity(3)]}
    strava.list_activities_since.side_effect = lambda a, after, page, per_page: pages.get(page, [])
    queue.enqueue(Lane.BACKFILL, BackfillAthlete(athlete_id=9, window_days=30))

    report = drainer.drain()

    assert report.results[0].detail == "synced 3"
    assert sorted(repository.activities) == [1, 2, 3]
    first_call = strava.list_activities_since.call_args_list[0]
    assert first_call.args == (9, int(clock() - 30 * 86400), 1, 200)


def test_backfill_pauses_and_resumes_at_page(drainer, queue, strava, repository):
    calls = []

    def list_since(athlete_id, after, page, per_page):
        calls.append(page)
        if page == 2 and len(calls) == 2:
            raise QuotaExceededError("Rate limit exceeded for strava: 15min: 101/100", reset_at=0)
        return [_activity(page)] if page <= 2 else []

    strava.list_activities_since.side_effect = list_since
    queue.enqueue(Lane.BACKFILL, BackfillAthlete(athlete_id=9, window_days=30))

    report = drainer.drain()
    assert report.requeued == 1
    requeued = queue.pop(Lane.BACKFILL)
    assert requeued.job.resume_page == 2
    assert requeued.attempts == 0

    queue.enqueue_envelope(Lane.BACKFILL, requeued)
    drainer.drain()
    assert calls == [1, 2, 2, 3]
    assert sorted(repository.activities) == [1, 2]


def test_reconcile_fetches_one_page_since(drainer, queue, strava):
    strava.list_activities_since.return_value = [_activity(7)]
    queue.enqueue(Lane.BACKFILL, ReconcileSince(athlete_id=9, since_iso="2025-01-06T12:00:00Z"))

    drainer.drain()

    strava.list_activities_since.assert_called_once_with(9, 1736164800, 1, 200)


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

def test_malformed_job_is_counted_and_dropped(drainer, queue, store):
    store.rpush(Lane.LIVE.value, '{"kind": "nope"}')
    queue.enqueue(Lane.LIVE, Deauth(athlete_id=1))

    report = drainer.drain()

    assert report.errors == 1
    assert report.dropped == 1
    assert report.processed == 1
    assert queue.depth()["live"] == 0


def test_transient_failure_requeues_with_attempts(drainer, queue, strava):
    strava.get_activity.side_effect = ProviderUnavailableError("down", status_code=503)
    queue.enqueue(Lane.LIVE, SyncActivity(athlete_id=9, activity_id=1))

    report = drainer.drain(live_max=1)

    assert report.requeued == 1
    retried = queue.pop(Lane.LIVE)
    assert retried.attempts == 1
    assert "down" in retried.last_error


def test_failed_job_runs_once_per_drain(drainer, queue, strava):
    strava.get_activity.side_effect = ProviderUnavailableError("down", status_code=503)
    queue.enqueue(Lane.LIVE, SyncActivity(athlete_id=9, activity_id=1))

    report = drainer.drain()

    assert strava.get_activity.call_count == 1
    assert report.requeued == 1
    assert report.dead_lettered == 0
    assert queue.depth() == {"live": 1, "backfill": 0, "batch": 0, "dead_letter": 0}
    assert queue.pop(Lane.LIVE).attempts == 1


def test_failed_job_goes_behind_waiting_jobs(drainer, queue, strava):
    def get_activity(athlete_id, activity_id):
        if activity_id == 1:
            raise ProviderUnavailableError("down", status_code=502)
        return _activity(activity_id, athlete_id)

    strava.get_activity.side_effect = get_activity
    queue.enqueue(Lane.LIVE, SyncActivity(athlete_id=9, activity_id=1))
    queue.enqueue(Lane.LIVE, SyncActivity(athlete_id=9, activity_id=2))

    report = drainer.drain()

    assert report.processed == 1
    assert report.requeued == 1
    assert [c.args[1] for c in strava.get_activity.call_args_list] == [1, 2]
    assert queue.pop(Lane.LIVE).job.activity_id == 1
    assert queue.pop(Lane.LIVE) is None


def test_job_dead_lettered_after_max_attempts(drainer, queue, strava, repository):
    strava.get_activity.side_effect = ProviderUnavailableError("down", status_code=500)
    queue.enqueue(Lane.LIVE, SyncActivity(athlete_id=9, activity_id=1))

    for _ in range(3):
        drainer.drain(live_max=1)

    assert queue.depth()["live"] == 0
    dead = queue.peek_dead_letters()
    assert len(dead) == 1
    assert dead[0]["attempts"] == 3
    assert "job_error" in repository.audit_kinds()


def test_quota_exceeded_requeues_and_stops_lane(drainer, queue, strava):
    strava.get_activity.side_effect = QuotaExceededError("Rate limit exceeded for strava: 15min: 101/100", reset_at=1)
    queue.enqueue(Lane.LIVE, SyncActivity(athlete_id=9, activity_id=1))
    queue.enqueue(Lane.LIVE, SyncActivity(athlete_id=9, activity_id=2))

    report = drainer.drain(live_max=10)

    assert strava.get_activity.call_count == 1
    assert report.requeued == 1
    assert report.errors == 0
    assert [queue.pop(Lane.LIVE).job.activity_id for _ in range(2)] == [2, 1]


def test_revoked_credentials_deauthorize_athlete(drainer, queue, strava, repository):
    repository.user_ids[9] = "user-9"
    repository.upsert_activity_summary(_activity(1))
    strava.get_activity.side_effect = CredentialsRevokedError("rejected", athlete_id=9)
    queue.enqueue(Lane.LIVE, SyncActivity(athlete_id=9, activity_id=2))

    report = drainer.drain()

    assert report.dropped == 1
    assert repository.deleted_athletes == [9]
    assert repository.activities == {}
    assert "deauth" in repository.audit_kinds()
    assert queue.depth()["live"] == 0


@pytest.mark.parametrize("error", [
    CredentialsNotFoundError("none", athlete_id=9),
    ProviderNotFoundError("gone", status_code=404),
])
def test_permanent_errors_are_dropped(drainer, queue, strava, error):
    strava.get_activity.side_effect = error
    queue.enqueue(Lane.LIVE, SyncActivity(athlete_id=9, activity_id=1))

    report = drainer.drain()

    assert report.dropped == 1
    assert queue.depth() == {"live": 0, "backfill": 0, "batch": 0, "dead_letter": 0}


def test_bad_reconcile_cutoff_is_dropped(drainer, queue, strava):
    queue.enqueue(Lane.BACKFILL, ReconcileSince(athlete_id=9, since_iso="last tuesday"))

    report = drainer.drain()

    assert report.dropped == 1
    assert report.requeued == 0
    strava.list_activities_since.assert_not_called()
    assert queue.depth() == {"live": 0, "backfill": 0, "batch": 0, "dead_letter": 0}


def test_store_outage_stops_lane(drainer, store):
    store.fail = True
    report = drainer.drain()
    assert report.errors == 2
    assert report.processed == 0


# ---------------------------------------------------------------------------
# Batch lane
# ---------------------------------------------------------------------------

def test_batch_sleeps_between_jobs(drainer, queue, sleeps):
    for i in range(3):
        queue.enqueue(Lane.BATCH, SyncActivity(athlete_id=9, activity_id=i))

    report = drainer.drain_batch(max_jobs=200, delay_s=10.0)

    assert report.processed == 3
    assert sleeps == [10.0, 10.0]


def test_batch_honours_max_jobs(drainer, queue):
    for i in range(4):
        queue.enqueue(Lane.BATCH, DeleteActivity(activity_id=i))

    report = drainer.drain_batch(max_jobs=2, delay_s=0)

    assert report.processed == 2
    assert queue.depth()["batch"] == 2


def test_batch_stops_at_time_budget(queue, strava, repository, cache, clock):
    drainer = QueueDrainer(
        queue, strava, repository, cache, AuditLog(repository),
        clock=clock, sleep=clock.advance,
    )
    for i in range(5):
        queue.enqueue(Lane.BATCH, DeleteActivity(activity_id=i))

    report = drainer.drain_batch(max_jobs=200, delay_s=10.0, max_duration_s=25.0)

    assert report.processed == 3
    assert queue.depth()["batch"] == 2


def test_interrupted_batch_sleep_puts_job_back(queue, strava, repository, cache, clock):
    def sleep(seconds):
        raise TimeoutError("soft time limit")

    drainer = QueueDrainer(queue, strava, repository, cache, AuditLog(repository), clock=clock, sleep=sleep)
    for i in range(3):
        queue.enqueue(Lane.BATCH, DeleteActivity(activity_id=i))

    with pytest.raises(TimeoutError):
        drainer.drain_batch(max_jobs=200, delay_s=10.0)

    assert queue.depth()["batch"] == 2
    assert sorted(queue.pop(Lane.BATCH).job.activity_id for _ in range(2)) == [1, 2]


def test_requeued_envelope_keeps_identity():
    envelope = JobEnvelope(SyncActivity(athlete_id=1, activity_id=2), attempts=1)
    assert JobEnvelope.from_payload(envelope.to_json()).job == envelope.job
