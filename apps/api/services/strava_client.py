"""
Strava API client.

Every HTTP request (including the retry after a 401) is gated by the provider
budget in the Rate Limiter before it is sent, and authenticated with a token
from the Token Manager. Errors are typed so callers never see raw provider
error text:

- QuotaExceededError (from services.rate_limiter): our budget or Strava's 429
- ProviderNotFoundError: 404, the object no longer exists upstream
- ProviderUnavailableError: any other non-2xx or network failure
"""
import logging
import time
from typing import Any, Dict, List, Optional

import requests

from services.rate_limiter import QuotaExceededError, RateLimiter, WINDOW_SECONDS
from services.token_manager import TokenManager

logger = logging.getLogger(__name__)

STRAVA_PROVIDER = "strava"

# Raw per-sample telemetry channels requested for the streams endpoint
STRAVA_STREAM_KEYS = ["time", "latlng", "altitude", "heartrate", "cadence", "watts"]


class ProviderError(RuntimeError):
    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def reason(self) -> str:
        return f"strava_{self.status_code}" if self.status_code else "strava_unreachable"


class ProviderUnavailableError(ProviderError):
    """Non-2xx response or network failure talking to the provider."""


class ProviderNotFoundError(ProviderError):
    """The requested object does not exist (deleted or private)."""


class StravaClient:
    def __init__(
        self,
        rate_limiter: RateLimiter,
        token_manager: TokenManager,
        api_base: str = "https://www.strava.com/api/v3",
        timeout_s: float = 30,
        session: Optional[requests.Session] = None,
        provider: str = STRAVA_PROVIDER,
    ):
        self.rate_limiter = rate_limiter
        self.token_manager = token_manager
        self.api_base = api_base.rstrip("/")
        self.timeout_s = timeout_s
        self.session = session or requests.Session()
        self.provider = provider

    def _request(self, athlete_id: int, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.api_base}{path}"
        token = None

        for attempt in range(2):
            self.rate_limiter.require_provider(self.provider, str(athlete_id))
            if token is None:
                token = self.token_manager.get_valid_access_token(athlete_id)
            try:
                r = self.session.get(
                    url,
                    headers={"Authorization": f"Bearer {token}"},
                    params=params,
                    timeout=self.timeout_s,
                )
            except requests.exceptions.RequestException as e:
                raise ProviderUnavailableError(f"Strava request {path} failed: {e}") from e

            if r.status_code == 401 and attempt == 0:
                # Token revoked or rotated early; force one refresh and retry
                logger.info(f"Strava 401 on {path} for athlete {athlete_id}, refreshing token")
                credential = self.token_manager.refresh(self.token_manager.get_credentials(athlete_id))
                token = credential.access_token
                continue

            if r.status_code == 429:
                raise QuotaExceededError(
                    f"Rate limit exceeded for {self.provider}: upstream 429",
                    reset_at=self._retry_after_ms(r),
                )
            if r.status_code == 404:
                raise ProviderNotFoundError(f"Strava {path} not found", status_code=404)
            if r.status_code >= 400:
                raise ProviderUnavailableError(f"Strava {path} returned {r.status_code}", status_code=r.status_code)

            try:
                return r.json()
            except ValueError as e:
                raise ProviderUnavailableError(f"Malformed JSON from Strava {path}", status_code=r.status_code) from e

        raise ProviderUnavailableError(f"Strava {path} still unauthorized after token refresh", status_code=401)

    @staticmethod
    def _retry_after_ms(r: requests.Response) -> int:
        now = time.time()
        try:
            return int((now + int(r.headers.get("Retry-After"))) * 1000)
        except (TypeError, ValueError):
            window = WINDOW_SECONDS["15min"]
            return (int(now // window) + 1) * window * 1000

    def get_activity(self, athlete_id: int, activity_id: int) -> Dict[str, Any]:
        """Activity detail."""
        return self._request(athlete_id, f"/activities/{int(activity_id)}")

    def list_activities_since(
        self,
        athlete_id: int,
        after_epoch: int,
        page: int = 1,
        per_page: int = 200,
    ) -> List[Dict[str, Any]]:
        """One page of the athlete's activities started after ``after_epoch``."""
        params = {"after": int(after_epoch), "page": int(page), "per_page": int(per_page)}
        items = self._request(athlete_id, "/athlete/activities", params=params)
        return items if isinstance(items, list) else []

    def get_streams(
        self,
        athlete_id: int,
        activity_id: int,
        keys: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Raw telemetry streams keyed by type. Subject to the 7-day retention rule."""
        params = {"keys": ",".join(keys or STRAVA_STREAM_KEYS), "key_by_type": "true"}
        data = self._request(athlete_id, f"/activities/{int(activity_id)}/streams", params=params)
        if isinstance(data, list):
            # Older API versions ignore key_by_type
            return {s["type"]: s for s in data if isinstance(s, dict) and s.get("type")}
        return data or {}
