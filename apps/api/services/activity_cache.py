"""
Activity Cache Layer

Three tiers, consulted in order:
1. Edge: Cache-Control headers on HTTP responses, honored by the CDN and the
   mobile client. Not visible to code at runtime; see ``edge_headers``.
2. Persistent blob tier: JSON envelopes in the shared store with SETEX
   (hours to a week).
3. Process-local map, used only while the blob tier is raising.

Raw per-sample telemetry (streams) may not be retained longer than 7 days by
the provider agreement, so TTLs in telemetry namespaces are clamped to that.
Summaries and generated text are not subject to the rule.

Keys always carry the athlete and activity identity:
``{namespace}:{athlete_id}:{activity_id}``.

Populating a tier is an optimization. A failed write is reported in
``CacheResult.write_status`` and never fails the request.
"""
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from core.store import CounterStore, StoreError

logger = logging.getLogger(__name__)

STREAMS = "streams"
ACTIVITIES = "activities"
AI_TEXT = "ai_text"

RAW_TELEMETRY_NAMESPACES = frozenset({STREAMS})
MAX_TELEMETRY_TTL_S = 7 * 24 * 3600

BLOB_PREFIX = "blob:"

HIT_STATUS = "HIT"
MISS_STATUS = "MISS"
WRITE_CACHED = "cached"
WRITE_LOCAL_FALLBACK = "local-fallback"

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate, max-age=0, s-maxage=0",
    "Pragma": "no-cache",
    "Expires": "0",
    "CDN-Cache-Control": "no-store",
}


class _Miss:
    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS = _Miss()


class CacheUnavailableError(RuntimeError):
    """The persistent tier could not be read or written."""


def cache_key(namespace: str, athlete_id: Any, activity_id: Any) -> str:
    for label, part in (("namespace", namespace), ("athlete_id", athlete_id), ("activity_id", activity_id)):
        if part is None or str(part) == "":
            raise ValueError(f"cache key requires {label}")
    return f"{namespace}:{athlete_id}:{activity_id}"


def clamp_ttl(namespace: str, ttl_s: int) -> int:
    ttl_s = int(ttl_s)
    if ttl_s <= 0:
        raise ValueError("ttl must be positive")
    if namespace in RAW_TELEMETRY_NAMESPACES and ttl_s > MAX_TELEMETRY_TTL_S:
        logger.info(f"Clamping {namespace} TTL {ttl_s}s to {MAX_TELEMETRY_TTL_S}s retention limit")
        return MAX_TELEMETRY_TTL_S
    return ttl_s


def edge_headers(namespace: str, max_age_s: int) -> Dict[str, str]:
    """Cache-Control for a successful response in ``namespace``."""
    if namespace in RAW_TELEMETRY_NAMESPACES:
        return {"Cache-Control": f"public, max-age={min(int(max_age_s), MAX_TELEMETRY_TTL_S)}"}
    return {"Cache-Control": f"private, max-age={int(max_age_s)}"}


class BlobCacheBackend:
    """Persistent tier stored in the shared key-value store."""

    def __init__(self, store: CounterStore):
        self.store = store

    @staticmethod
    def _index_key(athlete_id: Any) -> str:
        return f"{BLOB_PREFIX}index:{athlete_id}"

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            raw = self.store.get(BLOB_PREFIX + key)
        except StoreError as e:
            raise CacheUnavailableError(str(e)) from e
        if raw is None:
            return None
        try:
            envelope = json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding unreadable cache entry {key}")
            return None
        return envelope if isinstance(envelope, dict) and "value" in envelope else None

    def set(self, key: str, envelope: Dict[str, Any], ttl_s: int, athlete_id: Any = None) -> None:
        try:
            self.store.setex(BLOB_PREFIX + key, ttl_s, json.dumps(envelope, default=str))
            if athlete_id is not None:
                self.store.sadd(self._index_key(athlete_id), key)
        except StoreError as e:
            raise CacheUnavailableError(str(e)) from e

    def delete(self, key: str) -> None:
        try:
            self.store.delete(BLOB_PREFIX + key)
        except StoreError as e:
            raise CacheUnavailableError(str(e)) from e

    def purge_athlete(self, athlete_id: Any) -> int:
        try:
            keys = self.store.smembers(self._index_key(athlete_id))
            if not keys:
                return 0
            self.store.delete(*[BLOB_PREFIX + k for k in keys])
            self.store.delete(self._index_key(athlete_id))
            return len(keys)
        except StoreError as e:
            raise CacheUnavailableError(str(e)) from e


class LocalCache:
    """In-process fallback with per-entry expiry."""

    def __init__(self, clock: Callable[[], float] = time.time, max_entries: int = 1000):
        self.clock = clock
        self.max_entries = max(1, int(max_entries))
        self._entries: Dict[str, Tuple[float, Dict[str, Any]]] = {}

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        hit = self._entries.get(key)
        if hit is None:
            return None
        expires_at, envelope = hit
        if expires_at <= self.clock():
            del self._entries[key]
            return None
        return envelope

    def set(self, key: str, envelope: Dict[str, Any], ttl_s: int) -> None:
        now = self.clock()
        self._entries[key] = (now + ttl_s, envelope)
        self._sweep(now)

    def _sweep(self, now: float) -> None:
        for k in [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]:
            del self._entries[k]
        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            # Evict the entries closest to expiry first
            for k, _ in sorted(self._entries.items(), key=lambda item: item[1][0])[:overflow]:
                del self._entries[k]

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def purge_athlete(self, athlete_id: Any) -> int:
        doomed = [k for k in self._entries if k.split(":")[1:2] == [str(athlete_id)]]
        for k in doomed:
            del self._entries[k]
        return len(doomed)


@dataclass
class CacheResult:
    value: Any
    status: str  # HIT | MISS
    tier: str  # blob | local | provider
    write_status: str = "not-attempted"


class LayeredCache:
    def __init__(
        self,
        blob: BlobCacheBackend,
        local: LocalCache,
        ttls: Dict[str, int],
        clock: Callable[[], float] = time.time,
    ):
        self.blob = blob
        self.local = local
        self.ttls = dict(ttls)
        self.clock = clock

    def ttl_for(self, namespace: str, ttl_s: Optional[int] = None) -> int:
        if ttl_s is None:
            ttl_s = self.ttls.get(namespace, 3600)
        return clamp_ttl(namespace, ttl_s)

    def _fresh(self, envelope: Optional[Dict[str, Any]]) -> bool:
        if not envelope:
            return False
        meta = envelope.get("metadata") or {}
        try:
            return float(meta["cachedAt"]) + float(meta["ttlSeconds"]) > self.clock()
        except (KeyError, TypeError, ValueError):
            return True  # SETEX still bounds it

    def _lookup(self, key: str) -> Tuple[Any, str]:
        try:
            envelope = self.blob.get(key)
            tier = "blob"
        except CacheUnavailableError as e:
            logger.warning(f"Blob cache unavailable on read of {key}, using local fallback: {e}")
            envelope = self.local.get(key)
            tier = "local"
        if self._fresh(envelope):
            return envelope["value"], tier
        return MISS, tier

    def get(self, key: str) -> Any:
        """Cached value or ``MISS``."""
        value, _ = self._lookup(key)
        return value

    def set(self, key: str, value: Any, ttl_s: int, athlete_id: Any = None) -> str:
        """Store ``value``. Returns a write status; never raises for tier failures."""
        namespace = key.split(":", 1)[0]
        ttl_s = clamp_ttl(namespace, ttl_s)
        envelope = {
            "value": value,
            "metadata": {"cachedAt": self.clock(), "ttlSeconds": ttl_s},
        }
        try:
            self.blob.set(key, envelope, ttl_s, athlete_id=athlete_id)
            return WRITE_CACHED
        except CacheUnavailableError as e:
            logger.warning(f"Blob cache write failed for {key}, caching locally: {e}")
            self.local.set(key, envelope, ttl_s)
            return WRITE_LOCAL_FALLBACK

    def delete(self, key: str) -> None:
        self.local.delete(key)
        try:
            self.blob.delete(key)
        except CacheUnavailableError as e:
            logger.warning(f"Blob cache delete failed for {key}: {e}")

    def purge_athlete(self, athlete_id: Any) -> int:
        purged = self.local.purge_athlete(athlete_id)
        try:
            purged += self.blob.purge_athlete(athlete_id)
        except CacheUnavailableError as e:
            logger.warning(f"Blob cache purge failed for athlete {athlete_id}: {e}")
        return purged

    def get_or_fetch(
        self,
        namespace: str,
        athlete_id: Any,
        activity_id: Any,
        fetch: Callable[[], Any],
        ttl_s: Optional[int] = None,
    ) -> CacheResult:
        """
        Serve from cache, or call ``fetch`` and populate the cache.

        Errors raised by ``fetch`` (quota, provider, credentials) propagate.
        """
        key = cache_key(namespace, athlete_id, activity_id)
        value, tier = self._lookup(key)
        if value is not MISS:
            logger.debug(f"Cache hit: {key} ({tier})")
            return CacheResult(value=value, status=HIT_STATUS, tier=tier)

        logger.debug(f"Cache miss: {key}")
        value = fetch()
        write_status = self.set(key, value, self.ttl_for(namespace, ttl_s), athlete_id=athlete_id)
        return CacheResult(value=value, status=MISS_STATUS, tier="provider", write_status=write_status)
