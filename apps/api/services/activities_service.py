"""
Recent activities read path for the mobile client.

``GET /v1/activities`` lists the caller's activities from the last
``days_back`` days, newest page first as Strava returns them. The list is
cached per athlete and window for ``CACHE_TTL_ACTIVITIES`` and is private to
the caller at the edge.
"""
import logging
import time
from typing import Any, Callable, Dict, List

from services.activity_cache import ACTIVITIES, MISS_STATUS, LayeredCache, edge_headers
from services.rate_limiter import RateLimiter
from services.read_gate import provider_errors, rate_limit_headers, require_tier_budget
from services.streams_service import ReadResponse
from services.strava_client import StravaClient

logger = logging.getLogger(__name__)

ACTIVITIES_ROUTE = "api-activities"
STRAVA_MAX_PER_PAGE = 200
PREFETCH_COUNT = 3


def list_window_key(days_back: int, limit: int) -> str:
    return f"recent-{int(days_back)}d-{int(limit)}"


class ActivitiesService:
    def __init__(
        self,
        rate_limiter: RateLimiter,
        cache: LayeredCache,
        strava: StravaClient,
        clock: Callable[[], float] = time.time,
    ):
        self.rate_limiter = rate_limiter
        self.cache = cache
        self.strava = strava
        self.clock = clock

    def fetch_recent(self, athlete_id: int, days_back: int, limit: int) -> List[Dict[str, Any]]:
        """Page through ``/athlete/activities`` until ``limit`` items or a short page."""
        after = int(self.clock()) - days_back * 24 * 3600
        per_page = min(limit, STRAVA_MAX_PER_PAGE)
        activities: List[Dict[str, Any]] = []
        page = 1
        while len(activities) < limit:
            items = self.strava.list_activities_since(athlete_id, after, page, per_page)
            activities.extend(items)
            if len(items) < per_page:
                break
            page += 1
        logger.info(f"Fetched {len(activities)} activities for athlete {athlete_id} ({page} pages)")
        return activities[:limit]

    def get_activities(
        self,
        user_id: str,
        athlete_id: int,
        tier: str,
        days_back: int = 30,
        limit: int = 50,
    ) -> ReadResponse:
        decision = require_tier_budget(self.rate_limiter, user_id, athlete_id, tier, ACTIVITIES_ROUTE)

        logger.info(f"Activities request: athlete={athlete_id} tier={tier} days_back={days_back} limit={limit}")
        with provider_errors(athlete_id, "Athlete", str(athlete_id)):
            result = self.cache.get_or_fetch(
                ACTIVITIES,
                athlete_id,
                list_window_key(days_back, limit),
                lambda: self.fetch_recent(athlete_id, days_back, limit),
            )

        activities = result.value or []
        headers = edge_headers(ACTIVITIES, self.cache.ttl_for(ACTIVITIES))
        headers["X-Cache"] = result.status
        headers["X-Activity-Count"] = str(len(activities))
        headers.update(rate_limit_headers(decision))
        if result.status == MISS_STATUS:
            headers["X-Cache-Write"] = result.write_status

        body = {
            "activities": activities,
            # Streams the app can warm in the background
            "prefetch_urls": [f"/v1/streams/{a['id']}" for a in activities[:PREFETCH_COUNT] if "id" in a],
            "metadata": {
                "athlete_id": athlete_id,
                "tier": tier,
                "days_back": days_back,
                "limit": limit,
                "count": len(activities),
                "cache_tier": result.tier,
            },
        }
        return ReadResponse(body=body, headers=headers)
