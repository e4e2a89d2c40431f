"""
Shared checks for the mobile read paths (streams, activities).

Tier budget first, then provider work wrapped so quota, provider, credential
and rate limiter failures surface as API exceptions.
"""
import logging
from contextlib import contextmanager
from typing import Dict, Iterator

from core.exceptions import (
    NotFoundError,
    ProviderAuthorizationError,
    ProviderUnavailableAPIError,
    RateLimitExceededError,
    ServiceUnavailableError,
)
from services.rate_limiter import QuotaExceededError, RateLimiter, RateLimiterUnavailable, TierDecision
from services.strava_client import ProviderNotFoundError, ProviderUnavailableError
from services.token_manager import (
    CredentialsNotFoundError,
    CredentialsRevokedError,
    TokenRefreshTransientError,
)

logger = logging.getLogger(__name__)

RATE_LIMITER_UNAVAILABLE = "rate_limiter_unavailable"


def require_tier_budget(
    rate_limiter: RateLimiter,
    user_id: str,
    athlete_id: int,
    tier: str,
    route: str,
) -> TierDecision:
    """Count the request against the caller's hourly budget; 429 when spent."""
    try:
        decision = rate_limiter.check_tier(user_id, str(athlete_id), tier, route)
    except RateLimiterUnavailable as e:
        logger.error(f"Tier check failed closed for {route} (athlete {athlete_id}): {e}")
        raise ServiceUnavailableError(RATE_LIMITER_UNAVAILABLE)

    if not decision.allowed:
        raise RateLimitExceededError(
            f"User tier limit exceeded ({tier}): {decision.limit} requests per hour",
            reset_at_ms=decision.reset_at,
            limit=decision.limit,
            remaining=decision.remaining,
        )
    return decision


def rate_limit_headers(decision: TierDecision) -> Dict[str, str]:
    return {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(decision.reset_at),
    }


@contextmanager
def provider_errors(athlete_id: int, resource: str, identifier: str) -> Iterator[None]:
    """Map failures from a cache fill or provider call onto API exceptions."""
    try:
        yield
    except QuotaExceededError as e:
        raise RateLimitExceededError(e.reason, reset_at_ms=e.reset_at, remaining=e.remaining, limit=e.limit)
    except RateLimiterUnavailable as e:
        logger.error(f"Provider budget check failed closed for athlete {athlete_id}: {e}")
        raise ServiceUnavailableError(RATE_LIMITER_UNAVAILABLE)
    except ProviderNotFoundError:
        raise NotFoundError(resource, identifier)
    except ProviderUnavailableError as e:
        logger.error(f"Strava fetch failed for {resource} {identifier}: {e}")
        raise ProviderUnavailableAPIError(e.reason)
    except TokenRefreshTransientError as e:
        logger.error(f"Token refresh failed for athlete {athlete_id}: {e}")
        raise ProviderUnavailableAPIError("token_refresh_failed")
    except (CredentialsNotFoundError, CredentialsRevokedError) as e:
        logger.warning(f"Athlete {athlete_id} has no usable Strava credentials: {e}")
        raise ProviderAuthorizationError()
