"""
Tests for the audit log writer.
"""
import json
import logging
from datetime import datetime, timedelta, timezone

from services.audit_log import AUDIT_API, AUDIT_DEAUTH, AuditLog
from services.persistence import AuditLogEntry

NOW = datetime(2025, 1, 7, 12, 0, tzinfo=timezone.utc)


def test_record_resolves_user_from_athlete(repository):
    repository.user_ids[9] = "user-9"
    audit = AuditLog(repository, now=lambda: NOW)

    assert audit.record(AUDIT_API, ref_id="123", note="activities:sync", athlete_id=9) is True
    assert repository.audit == [
        AuditLogEntry(kind="api", ref_id="123", note="activities:sync", athlete_id=9, user_id="user-9", at=NOW)
    ]


def test_explicit_user_id_wins(repository):
    repository.user_ids[9] = "user-9"
    AuditLog(repository, now=lambda: NOW).record(AUDIT_DEAUTH, ref_id="9", athlete_id=9, user_id="captured")
    assert repository.audit[0].user_id == "captured"


def test_record_mirrors_to_audit_logger(repository, caplog):
    with caplog.at_level(logging.INFO, logger="velosync.audit"):
        AuditLog(repository, now=lambda: NOW).record("webhook", ref_id="9", note="activity:create:1")
    payload = json.loads(caplog.records[-1].getMessage())
    assert payload["kind"] == "webhook"
    assert payload["timestamp"] == NOW.isoformat()


def test_write_failure_returns_false(repository):
    repository.fail_audit = True
    assert AuditLog(repository).record("webhook", ref_id="9") is False


def test_prune_uses_retention_window(repository):
    audit = AuditLog(repository, retention_days=30, now=lambda: NOW)
    repository.audit = [
        AuditLogEntry(kind="webhook", at=NOW - timedelta(days=31)),
        AuditLogEntry(kind="webhook", at=NOW - timedelta(days=29)),
    ]
    assert audit.prune() == 1
    assert [e.at for e in repository.audit] == [NOW - timedelta(days=29)]
