"""
Rate Limiter

Fixed-window request budgets kept in the shared counter store.

Two independent budget classes:
- Tier budgets: per athlete, per API route, per subscription tier, one hourly
  window. Limits come from the tier table (free / trial / pro).
- Provider budgets: per external provider and athlete, evaluated across every
  window the provider is configured with (15min / hour / day). All windows
  must be within budget for the call to go through.

Counting is count-then-check: the counter is incremented first and then
compared, so the request that overflows a window is itself counted and
``remaining`` is ``max(0, limit - count)``. TTL is set only when the increment
returns 1, and always equals the window duration. Counters are never
decremented; they reset by expiry.

Every provider check also bumps an aggregate (not athlete-scoped) counter so
monitoring sees attempted calls, including rejected ones.
"""
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Mapping, Optional, Tuple

from core.store import CounterStore, StoreError

logger = logging.getLogger(__name__)

WINDOW_SECONDS: Dict[str, int] = {
    "15min": 900,
    "hour": 3600,
    "day": 86400,
}
WINDOW_ORDER: Tuple[str, ...] = ("15min", "hour", "day")

TIER_WINDOW = "hour"


class OnStoreError(str, Enum):
    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


class RateLimiterUnavailable(RuntimeError):
    """Counter store is down and the caller asked to fail closed."""


class QuotaExceededError(RuntimeError):
    """A tier or provider budget is exhausted. Retry after ``reset_at`` (epoch ms)."""

    def __init__(self, reason: str, *, reset_at: int, remaining: int = 0, limit: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        self.reset_at = int(reset_at)
        self.remaining = int(remaining)
        self.limit = limit


@dataclass
class TierDecision:
    allowed: bool
    remaining: int
    reset_at: int
    limit: int


@dataclass
class ProviderDecision:
    allowed: bool
    remaining: Dict[str, int] = field(default_factory=dict)
    reset_at: Dict[str, int] = field(default_factory=dict)
    reason: Optional[str] = None

    def most_restrictive(self) -> Optional[Tuple[int, int]]:
        """(remaining, reset_at) of the tightest window, or None when unmetered."""
        if not self.remaining:
            return None
        window = min(self.remaining, key=lambda w: (self.remaining[w], self.reset_at.get(w, 0)))
        return self.remaining[window], self.reset_at[window]


@dataclass
class CombinedDecision:
    allowed: bool
    remaining: int
    reset_at: int
    limit: int
    reason: Optional[str] = None


def window_index(now: float, window: str) -> int:
    """floor(now / duration) for the given window kind."""
    return int(now // WINDOW_SECONDS[window])


def window_reset_at(index: int, window: str) -> int:
    """Epoch milliseconds at which window ``index`` ends."""
    return (index + 1) * WINDOW_SECONDS[window] * 1000


def tier_key(athlete_id: str, route: str, tier: str, index: int) -> str:
    return f"rate_limit:{athlete_id}:{route}:{tier}:{index}"


def provider_key(provider: str, athlete_id: str, window: str, index: int) -> str:
    return f"rate_limit:{provider}:{athlete_id}:{window}:{index}"


def aggregate_key(provider: str, window: str, index: int) -> str:
    return f"rate_limit:{provider}:total:{window}:{index}"


class RateLimiter:
    """Tier and provider budgets over the shared counter store."""

    def __init__(
        self,
        store: CounterStore,
        tier_limits: Mapping[str, int],
        provider_limits: Mapping[str, Mapping[str, int]],
        default_tier_limit: int = 60,
        on_store_error: OnStoreError = OnStoreError.FAIL_OPEN,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.tier_limits = dict(tier_limits)
        self.provider_limits = {p: dict(w) for p, w in provider_limits.items()}
        self.default_tier_limit = default_tier_limit
        self.on_store_error = OnStoreError(on_store_error)
        self.clock = clock

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _count(self, key: str, window_seconds: int) -> int:
        count = self.store.incrby(key, 1)
        if count == 1:
            self.store.expire(key, window_seconds)
        return count

    def _policy(self, override: Optional[OnStoreError]) -> OnStoreError:
        return OnStoreError(override) if override is not None else self.on_store_error

    def tier_limit(self, tier: str) -> int:
        return int(self.tier_limits.get((tier or "").lower(), self.default_tier_limit))

    def provider_windows(self, provider: str) -> Dict[str, int]:
        limits = self.provider_limits.get(provider, {})
        return {w: int(limits[w]) for w in WINDOW_ORDER if limits.get(w)}

    # ------------------------------------------------------------------
    # tier budgets
    # ------------------------------------------------------------------

    def check_tier(
        self,
        user_id: str,
        subject_id: str,
        tier: str,
        route: str,
        on_store_error: Optional[OnStoreError] = None,
    ) -> TierDecision:
        limit = self.tier_limit(tier)
        index = window_index(self.clock(), TIER_WINDOW)
        reset_at = window_reset_at(index, TIER_WINDOW)
        key = tier_key(str(subject_id), route, (tier or "").lower(), index)

        try:
            count = self._count(key, WINDOW_SECONDS[TIER_WINDOW])
        except StoreError as e:
            if self._policy(on_store_error) == OnStoreError.FAIL_CLOSED:
                raise RateLimiterUnavailable(f"tier check unavailable: {e}") from e
            logger.warning(f"Counter store unavailable, allowing tier request (user={user_id}, route={route}): {e}")
            return TierDecision(allowed=True, remaining=limit, reset_at=reset_at, limit=limit)

        allowed = count <= limit
        if not allowed:
            logger.info(f"Tier limit exceeded: user={user_id} athlete={subject_id} tier={tier} route={route} count={count}/{limit}")
        return TierDecision(
            allowed=allowed,
            remaining=max(0, limit - count),
            reset_at=reset_at,
            limit=limit,
        )

    # ------------------------------------------------------------------
    # provider budgets
    # ------------------------------------------------------------------

    def check_provider(
        self,
        provider: str,
        athlete_id: str,
        on_store_error: Optional[OnStoreError] = None,
    ) -> ProviderDecision:
        if provider not in self.provider_limits:
            logger.warning(f"Unknown provider: {provider}")
            return ProviderDecision(allowed=False, reason=f"Unknown provider: {provider}")

        windows = self.provider_windows(provider)
        if not windows:
            return ProviderDecision(allowed=True)

        now = self.clock()
        remaining: Dict[str, int] = {}
        reset_at: Dict[str, int] = {}
        violations = []

        try:
            for window, limit in windows.items():
                index = window_index(now, window)
                count = self._count(provider_key(provider, str(athlete_id), window, index), WINDOW_SECONDS[window])
                remaining[window] = max(0, limit - count)
                reset_at[window] = window_reset_at(index, window)
                if count > limit:
                    violations.append(f"{window}: {count}/{limit}")
        except StoreError as e:
            if self._policy(on_store_error) == OnStoreError.FAIL_CLOSED:
                raise RateLimiterUnavailable(f"provider check unavailable: {e}") from e
            logger.warning(f"Counter store unavailable, allowing {provider} call for athlete {athlete_id}: {e}")
            return ProviderDecision(
                allowed=True,
                remaining=dict(windows),
                reset_at={w: window_reset_at(window_index(now, w), w) for w in windows},
            )

        # Attempted calls, allowed or not
        self._track_aggregate(provider, windows, now)

        if violations:
            reason = f"Rate limit exceeded for {provider}: {', '.join(violations)}"
            logger.warning(reason)
            return ProviderDecision(allowed=False, remaining=remaining, reset_at=reset_at, reason=reason)

        logger.debug(f"Allowed {provider} call for athlete {athlete_id}, remaining={remaining}")
        return ProviderDecision(allowed=True, remaining=remaining, reset_at=reset_at)

    def _track_aggregate(self, provider: str, windows: Dict[str, int], now: float) -> None:
        try:
            for window in windows:
                self._count(aggregate_key(provider, window, window_index(now, window)), WINDOW_SECONDS[window])
        except StoreError as e:
            logger.warning(f"Failed to track aggregate usage for {provider}: {e}")

    def require_provider(self, provider: str, athlete_id: str, on_store_error: Optional[OnStoreError] = None) -> ProviderDecision:
        """check_provider, raising QuotaExceededError on denial."""
        decision = self.check_provider(provider, athlete_id, on_store_error=on_store_error)
        if not decision.allowed:
            tightest = decision.most_restrictive()
            reset_at = tightest[1] if tightest else int(self.clock() * 1000)
            raise QuotaExceededError(decision.reason or "provider quota exceeded", reset_at=reset_at)
        return decision

    # ------------------------------------------------------------------
    # combined
    # ------------------------------------------------------------------

    def check_combined(
        self,
        user_id: str,
        athlete_id: str,
        tier: str,
        route: str,
        provider: str,
        on_store_error: Optional[OnStoreError] = None,
    ) -> CombinedDecision:
        tier_check = self.check_tier(user_id, athlete_id, tier, route, on_store_error=on_store_error)
        if not tier_check.allowed:
            return CombinedDecision(
                allowed=False,
                remaining=tier_check.remaining,
                reset_at=tier_check.reset_at,
                limit=tier_check.limit,
                reason=f"User tier limit exceeded ({tier})",
            )

        provider_check = self.check_provider(provider, athlete_id, on_store_error=on_store_error)
        if not provider_check.allowed:
            return CombinedDecision(
                allowed=False,
                remaining=min(provider_check.remaining.values(), default=0),
                reset_at=min(provider_check.reset_at.values(), default=tier_check.reset_at),
                limit=tier_check.limit,
                reason=provider_check.reason,
            )

        remaining, reset_at = tier_check.remaining, tier_check.reset_at
        tightest = provider_check.most_restrictive()
        if tightest is not None and tightest[0] < remaining:
            remaining, reset_at = tightest
        return CombinedDecision(allowed=True, remaining=remaining, reset_at=reset_at, limit=tier_check.limit)

    # ------------------------------------------------------------------
    # monitoring (read-only)
    # ------------------------------------------------------------------

    def provider_status(self, provider: str, athlete_id: str) -> Dict[str, Dict[str, int]]:
        """Current per-athlete usage without consuming budget."""
        if provider not in self.provider_limits:
            raise ValueError(f"Unknown provider: {provider}")
        now = self.clock()
        current, maximum, remaining = {}, {}, {}
        for window, limit in self.provider_windows(provider).items():
            raw = self.store.get(provider_key(provider, str(athlete_id), window, window_index(now, window)))
            count = int(raw or 0)
            current[window] = count
            maximum[window] = limit
            remaining[window] = max(0, limit - count)
        return {"current": current, "max": maximum, "remaining": remaining}

    def aggregate_usage(self, provider: str) -> Dict[str, int]:
        """Attempted calls across all athletes in the current windows."""
        if provider not in self.provider_limits:
            raise ValueError(f"Unknown provider: {provider}")
        now = self.clock()
        usage = {}
        for window in self.provider_windows(provider):
            raw = self.store.get(aggregate_key(provider, window, window_index(now, window)))
            usage[window] = int(raw or 0)
        return usage
