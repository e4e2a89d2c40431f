"""
Pytest configuration and fixtures

Nothing here touches the network: the counter store, the repository and the
clock are in-memory doubles shared by every test module.
"""
import json
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

os.environ.setdefault("SECRET_KEY", "test-secret-key-that-is-long-enough-0123456789")
os.environ.setdefault("ENVIRONMENT", "test")

from cryptography.fernet import Fernet  # noqa: E402

from core.store import StoreError  # noqa: E402
from services.persistence import ActivityRepository, AuditLogEntry, CredentialRecord  # noqa: E402
from services.token_encryption import TokenEncryption  # noqa: E402

# 2025-01-07 12:00:30 UTC: 30 s into a 15-minute and an hourly window
T0 = 1736251230.0


class FakeClock:
    """Settable epoch-seconds clock."""

    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeStore:
    """
    Minimal in-memory stand-in for the REST counter store.

    Same method surface as core.store.CounterStore. Set ``fail = True`` to make
    every call raise StoreError.
    """

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock or FakeClock()
        self.fail = False
        self.calls: List[tuple] = []
        self._values: Dict[str, Any] = {}
        self._expires: Dict[str, float] = {}

    def _check(self, op: str, *args) -> None:
        self.calls.append((op,) + args)
        if self.fail:
            raise StoreError(f"store unreachable: {op}")

    def _live(self, key: str) -> bool:
        expires = self._expires.get(key)
        if expires is not None and expires <= self.clock():
            self._values.pop(key, None)
            self._expires.pop(key, None)
        return key in self._values

    def ttl(self, key: str) -> Optional[float]:
        if not self._live(key):
            return None
        expires = self._expires.get(key)
        return None if expires is None else expires - self.clock()

    # counters
    def incrby(self, key, amount=1):
        self._check("incrby", key, amount)
        current = int(self._values[key]) if self._live(key) else 0
        self._values[key] = current + int(amount)
        return self._values[key]

    def incr(self, key):
        return self.incrby(key, 1)

    def expire(self, key, seconds):
        self._check("expire", key, seconds)
        if not self._live(key):
            return False
        self._expires[key] = self.clock() + int(seconds)
        return True

    def get(self, key):
        self._check("get", key)
        if not self._live(key):
            return None
        value = self._values[key]
        return value if isinstance(value, str) else str(value)

    def setex(self, key, seconds, value):
        self._check("setex", key, seconds)
        self._values[key] = value
        self._expires[key] = self.clock() + int(seconds)

    def delete(self, *keys):
        self._check("del", *keys)
        removed = 0
        for key in keys:
            if self._live(key):
                removed += 1
            self._values.pop(key, None)
            self._expires.pop(key, None)
        return removed

    # lists
    def rpush(self, key, value):
        self._check("rpush", key)
        if not self._live(key):
            self._values[key] = []
        self._values[key].append(value)
        return len(self._values[key])

    def lpop(self, key):
        self._check("lpop", key)
        if not self._live(key) or not self._values[key]:
            return None
        return self._values[key].pop(0)

    def llen(self, key):
        self._check("llen", key)
        return len(self._values[key]) if self._live(key) else 0

    def lrange(self, key, start, stop):
        self._check("lrange", key, start, stop)
        items = self._values[key] if self._live(key) else []
        return list(items[start:] if stop == -1 else items[start:stop + 1])

    def list_items(self, key) -> List[dict]:
        """Decoded lane contents, for assertions."""
        return [json.loads(v) for v in (self._values.get(key) or [])]

    # sets
    def sadd(self, key, member):
        self._check("sadd", key, member)
        if not self._live(key):
            self._values[key] = set()
        before = len(self._values[key])
        self._values[key].add(member)
        return len(self._values[key]) - before

    def smembers(self, key):
        self._check("smembers", key)
        return sorted(self._values[key]) if self._live(key) else []

    def ping(self):
        return not self.fail


class FakeRepository(ActivityRepository):
    """In-memory persistence collaborator."""

    def __init__(self):
        self.activities: Dict[int, Dict[str, Any]] = {}
        self.credentials: Dict[int, CredentialRecord] = {}
        self.user_ids: Dict[int, str] = {}
        self.audit: List[AuditLogEntry] = []
        self.deleted_athletes: List[int] = []
        self.fail_audit = False

    def upsert_activity_summary(self, activity):
        athlete_id = (activity.get("athlete") or {}).get("id") or activity.get("athlete_id")
        self.activities[int(activity["id"])] = dict(activity, athlete_id=int(athlete_id))

    def delete_activity(self, activity_id):
        return self.activities.pop(int(activity_id), None) is not None

    def get_credentials(self, athlete_id):
        return self.credentials.get(int(athlete_id))

    def save_credentials(self, athlete_id, access_token, refresh_token, expires_at, scopes=None):
        previous = self.credentials.get(int(athlete_id))
        self.credentials[int(athlete_id)] = CredentialRecord(
            athlete_id=int(athlete_id),
            access_token=access_token,
            refresh_token=refresh_token or (previous.refresh_token if previous else None),
            expires_at=expires_at,
            scopes=list(scopes or (previous.scopes if previous else [])),
            user_id=self.user_ids.get(int(athlete_id)),
        )

    def get_user_id(self, athlete_id):
        return self.user_ids.get(int(athlete_id))

    def delete_athlete(self, athlete_id):
        athlete_id = int(athlete_id)
        self.deleted_athletes.append(athlete_id)
        for activity_id in [k for k, v in self.activities.items() if v["athlete_id"] == athlete_id]:
            del self.activities[activity_id]
        self.user_ids.pop(athlete_id, None)
        return 1 if self.credentials.pop(athlete_id, None) is not None else 0

    def list_connected_athletes(self):
        return sorted(a for a, c in self.credentials.items() if c.refresh_token)

    def append_audit_log(self, entry):
        if self.fail_audit:
            raise RuntimeError("audit table unavailable")
        self.audit.append(entry)

    def prune_audit_log(self, older_than):
        before = len(self.audit)
        self.audit = [e for e in self.audit if e.at is None or e.at >= older_than]
        return before - len(self.audit)

    def audit_kinds(self) -> List[str]:
        return [e.kind for e in self.audit]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return FakeStore(clock)


@pytest.fixture
def repository():
    return FakeRepository()


@pytest.fixture
def encryption():
    return TokenEncryption(Fernet.generate_key().decode(), environment="test")


def store_credentials(repository, encryption, athlete_id, access_token="access-1",
                      refresh_token="refresh-1", expires_at=None, user_id=None):
    """Seed encrypted credentials for an athlete."""
    if user_id is not None:
        repository.user_ids[athlete_id] = user_id
    repository.save_credentials(
        athlete_id,
        encryption.encrypt(access_token),
        encryption.encrypt(refresh_token),
        expires_at or datetime(2030, 1, 1, tzinfo=timezone.utc),
        ["activity:read_all"],
    )
