"""
Streams read path for the mobile client.

Order of checks for ``GET /v1/streams/{activity_id}``:
1. tier budget for the caller (429 when spent)
2. layered cache
3. on a miss, Strava (gated by the provider budget and the token manager)

Provider, quota and credential failures are mapped onto API exceptions in
``services.read_gate`` so routers stay thin.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict

from services.activity_cache import MISS_STATUS, STREAMS, LayeredCache, edge_headers
from services.rate_limiter import RateLimiter
from services.read_gate import provider_errors, rate_limit_headers, require_tier_budget
from services.strava_client import StravaClient

logger = logging.getLogger(__name__)

STREAMS_ROUTE = "api-streams"


@dataclass
class ReadResponse:
    body: Dict[str, Any]
    headers: Dict[str, str]


class StreamsService:
    def __init__(
        self,
        rate_limiter: RateLimiter,
        cache: LayeredCache,
        strava: StravaClient,
        edge_max_age_s: int = 86400,
    ):
        self.rate_limiter = rate_limiter
        self.cache = cache
        self.strava = strava
        self.edge_max_age_s = edge_max_age_s

    def get_streams(self, user_id: str, athlete_id: int, tier: str, activity_id: int) -> ReadResponse:
        decision = require_tier_budget(self.rate_limiter, user_id, athlete_id, tier, STREAMS_ROUTE)

        logger.info(f"Streams request for activity {activity_id} (athlete {athlete_id}, tier {tier})")
        with provider_errors(athlete_id, "Activity", str(activity_id)):
            result = self.cache.get_or_fetch(
                STREAMS,
                athlete_id,
                activity_id,
                lambda: self.strava.get_streams(athlete_id, activity_id),
            )

        headers = edge_headers(STREAMS, self.edge_max_age_s)
        headers["X-Cache"] = result.status
        headers.update(rate_limit_headers(decision))
        if result.status == MISS_STATUS:
            headers["X-Cache-Write"] = result.write_status

        body = {
            "activity_id": activity_id,
            "streams": result.value,
            "metadata": {"tier": tier, "cache_tier": result.tier},
        }
        return ReadResponse(body=body, headers=headers)
