"""
Shared Counter Store client.

Thin client for the REST-over-HTTP key-value endpoint that backs rate-limit
counters, the work queue lanes and the persistent cache tier. Every command
is one HTTP call carrying the bearer token; there are no multi-command
transactions, so INCRBY followed by EXPIRE is two round-trips.

The client is constructed explicitly once per process (see core.context) and
handed to every component that needs it.
"""
import json
import logging
from typing import Any, List, Optional
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """The counter store could not be reached or rejected the command."""


class CounterStore:
    """REST client for the shared counter / queue store."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str],
        timeout_s: float = 2.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.session = session or requests.Session()
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def _call(self, method: str, *parts: Any, body: Optional[str] = None) -> Any:
        path = "/".join(quote(str(p), safe="") for p in parts)
        url = f"{self.base_url}/{path}"
        try:
            if body is None:
                r = self.session.request(method, url, timeout=self.timeout_s)
            else:
                r = self.session.request(method, url, data=body.encode("utf-8"), timeout=self.timeout_s)
        except requests.exceptions.RequestException as e:
            raise StoreError(f"store unreachable: {e}") from e

        try:
            payload = r.json()
        except ValueError:
            payload = None

        if r.status_code >= 400 or not isinstance(payload, dict):
            message = payload.get("error") if isinstance(payload, dict) else r.text
            raise StoreError(f"store error {r.status_code} on {parts[0]}: {message}")
        if payload.get("error"):
            raise StoreError(f"store error on {parts[0]}: {payload['error']}")
        return payload.get("result")

    # --- counters -----------------------------------------------------------

    def incrby(self, key: str, amount: int = 1) -> int:
        return int(self._call("POST", "incrby", key, int(amount)))

    def incr(self, key: str) -> int:
        return self.incrby(key, 1)

    def expire(self, key: str, seconds: int) -> bool:
        return bool(self._call("POST", "expire", key, int(seconds)))

    def get(self, key: str) -> Optional[str]:
        result = self._call("GET", "get", key)
        return None if result is None else str(result)

    def setex(self, key: str, seconds: int, value: str) -> None:
        self._call("POST", "setex", key, int(seconds), body=value)

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self._call("POST", "del", *keys) or 0)

    # --- lists --------------------------------------------------------------

    def rpush(self, key: str, value: str) -> int:
        return int(self._call("POST", "rpush", key, body=value))

    def lpop(self, key: str) -> Optional[str]:
        result = self._call("POST", "lpop", key)
        if result is None:
            return None
        if isinstance(result, str):
            return result
        # Some store builds hand back already-decoded JSON
        return json.dumps(result)

    def llen(self, key: str) -> int:
        return int(self._call("GET", "llen", key) or 0)

    def lrange(self, key: str, start: int, stop: int) -> List[str]:
        result = self._call("GET", "lrange", key, int(start), int(stop)) or []
        return [r if isinstance(r, str) else json.dumps(r) for r in result]

    # --- sets ---------------------------------------------------------------

    def sadd(self, key: str, member: str) -> int:
        return int(self._call("POST", "sadd", key, member) or 0)

    def smembers(self, key: str) -> List[str]:
        return [str(m) for m in (self._call("GET", "smembers", key) or [])]

    def ping(self) -> bool:
        try:
            return self._call("GET", "ping") == "PONG"
        except StoreError as e:
            logger.warning(f"Counter store ping failed: {e}")
            return False
