"""
Tests for the Celery task bodies and the beat schedule.

Tasks are called directly (no broker); the worker context is an in-memory one.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
import requests

from celerybeat_schedule import beat_schedule
from core.config import settings
from core.context import build_context
from services.job_queue import Deauth, Lane, SyncActivity
from services.persistence import AuditLogEntry
from tasks import celery_app, queue_tasks


@pytest.fixture
def context(store, repository, clock, monkeypatch):
    ctx = build_context(settings, repository=repository, store=store, clock=clock, sleep=lambda s: None)
    ctx.strava.session = MagicMock(spec=requests.Session)
    monkeypatch.setattr(queue_tasks, "get_worker_context", lambda: ctx)
    return ctx


def test_tasks_registered():
    for name in ("tasks.drain_queues", "tasks.batch_process_queue", "tasks.cleanup_audit_logs", "tasks.nightly_reconcile"):
        assert name in celery_app.tasks


def test_beat_schedule_points_at_registered_tasks():
    assert {entry["task"] for entry in beat_schedule.values()} == {
        "tasks.drain_queues",
        "tasks.batch_process_queue",
        "tasks.nightly_reconcile",
        "tasks.cleanup_audit_logs",
    }


def test_drain_task_reports(context):
    context.queue.enqueue(Lane.LIVE, Deauth(athlete_id=1))
    report = queue_tasks.drain_queues_task()
    assert report["processed"] == 1
    assert context.queue.depth()["live"] == 0


def test_batch_task_uses_batch_lane(context):
    context.queue.enqueue(Lane.LIVE, Deauth(athlete_id=1))
    context.queue.enqueue(Lane.BATCH, SyncActivity(athlete_id=404, activity_id=1))
    report = queue_tasks.batch_process_queue_task()
    # No credentials for athlete 404: dropped, not retried
    assert report["dropped"] == 1
    assert context.queue.depth() == {"live": 1, "backfill": 0, "batch": 0, "dead_letter": 0}


def test_batch_task_time_limit_covers_full_run():
    task = celery_app.tasks["tasks.batch_process_queue"]
    full_run = (settings.BATCH_MAX_JOBS - 1) * settings.BATCH_JOB_DELAY_S
    assert settings.BATCH_MAX_DURATION_S >= full_run
    assert task.soft_time_limit > settings.BATCH_MAX_DURATION_S
    assert task.time_limit > task.soft_time_limit


def test_cleanup_prunes_and_records(context, repository, monkeypatch):
    pruned = []
    monkeypatch.setattr(repository, "prune_audit_log", lambda cutoff: pruned.append(cutoff) or 4, raising=False)

    result = queue_tasks.cleanup_audit_logs_task()

    assert result == {"status": "success", "deleted": 4}
    assert datetime.now(timezone.utc) - pruned[0] >= timedelta(days=settings.AUDIT_LOG_RETENTION_DAYS - 1)
    assert repository.audit[-1] == AuditLogEntry(
        kind="cleanup", ref_id="audit_log", note="deleted 4 entries", at=repository.audit[-1].at
    )


def test_cleanup_failure_is_reported(context, repository, monkeypatch):
    def boom(cutoff):
        raise RuntimeError("db down")

    monkeypatch.setattr(repository, "prune_audit_log", boom, raising=False)
    assert queue_tasks.cleanup_audit_logs_task() == {"status": "error", "message": "db down"}


def test_nightly_reconcile_queues_every_connected_athlete(context, repository, encryption, store):
    from conftest import store_credentials

    store_credentials(repository, encryption, 9)
    store_credentials(repository, encryption, 10)

    result = queue_tasks.nightly_reconcile_task()

    assert result == {"status": "success", "total_athletes": 2, "jobs_enqueued": 2}
    jobs = store.list_items(Lane.BACKFILL.value)
    assert [j["athlete_id"] for j in jobs] == [9, 10]
    assert all(j["kind"] == "reconcile-since" for j in jobs)


def test_nightly_reconcile_store_outage_is_partial(context, repository, encryption, store):
    from conftest import store_credentials

    store_credentials(repository, encryption, 9)
    store.fail = True
    assert queue_tasks.nightly_reconcile_task()["status"] == "partial"
