"""
Process context.

Builds the component graph once per process (API startup, Celery worker
process init) and hands it out explicitly. Nothing here runs at import time.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Request
from sqlalchemy.engine import Engine

from core.config import Settings
from core.database import build_engine, build_session_factory
from core.store import CounterStore
from services.activities_service import ActivitiesService
from services.activity_cache import ACTIVITIES, AI_TEXT, STREAMS, BlobCacheBackend, LayeredCache, LocalCache
from services.audit_log import AuditLog
from services.job_queue import WorkQueue
from services.persistence import ActivityRepository, SqlActivityRepository
from services.queue_drainer import QueueDrainer
from services.rate_limiter import OnStoreError, RateLimiter
from services.strava_client import StravaClient
from services.strava_webhook import WebhookIngester
from services.streams_service import StreamsService
from services.token_encryption import TokenEncryption
from services.token_manager import TokenManager

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    store: CounterStore
    repository: ActivityRepository
    rate_limiter: RateLimiter
    token_manager: TokenManager
    strava: StravaClient
    cache: LayeredCache
    queue: WorkQueue
    audit: AuditLog
    drainer: QueueDrainer
    webhooks: WebhookIngester
    streams: StreamsService
    activities: ActivitiesService
    engine: Optional[Engine] = None


def build_context(
    settings: Settings,
    repository: Optional[ActivityRepository] = None,
    store: Optional[CounterStore] = None,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], None] = time.sleep,
) -> AppContext:
    """Wire every component from settings. Collaborators can be swapped in for tests."""
    if store is None:
        store = CounterStore(settings.STORE_REST_URL, settings.STORE_REST_TOKEN, timeout_s=settings.STORE_TIMEOUT_S)
    engine = None
    if repository is None:
        engine = build_engine(
            settings.DATABASE_URL,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            echo=settings.DEBUG,
        )
        repository = SqlActivityRepository(build_session_factory(engine))

    rate_limiter = RateLimiter(
        store,
        settings.TIER_LIMITS,
        settings.PROVIDER_LIMITS,
        default_tier_limit=settings.TIER_LIMIT_DEFAULT,
        on_store_error=OnStoreError.FAIL_OPEN if settings.RATE_LIMIT_FAIL_OPEN else OnStoreError.FAIL_CLOSED,
        clock=clock,
    )
    token_manager = TokenManager(
        repository,
        TokenEncryption(settings.TOKEN_ENCRYPTION_KEY, settings.ENVIRONMENT),
        settings.STRAVA_CLIENT_ID,
        settings.STRAVA_CLIENT_SECRET,
        token_url=settings.STRAVA_TOKEN_URL,
        buffer_s=settings.TOKEN_REFRESH_BUFFER_S,
        timeout_s=settings.EXTERNAL_API_TIMEOUT,
        clock=clock,
    )
    strava = StravaClient(
        rate_limiter,
        token_manager,
        api_base=settings.STRAVA_API_BASE,
        timeout_s=settings.EXTERNAL_API_TIMEOUT,
    )
    cache = LayeredCache(
        BlobCacheBackend(store),
        LocalCache(clock=clock),
        ttls={
            STREAMS: settings.CACHE_TTL_STREAMS,
            ACTIVITIES: settings.CACHE_TTL_ACTIVITIES,
            AI_TEXT: settings.CACHE_TTL_AI_TEXT,
        },
        clock=clock,
    )
    queue = WorkQueue(store)
    audit = AuditLog(repository, retention_days=settings.AUDIT_LOG_RETENTION_DAYS)

    return AppContext(
        settings=settings,
        store=store,
        repository=repository,
        rate_limiter=rate_limiter,
        token_manager=token_manager,
        strava=strava,
        cache=cache,
        queue=queue,
        audit=audit,
        drainer=QueueDrainer(
            queue,
            strava,
            repository,
            cache,
            audit,
            max_attempts=settings.JOB_MAX_ATTEMPTS,
            clock=clock,
            sleep=sleep,
        ),
        webhooks=WebhookIngester(queue, repository, cache, audit, verify_token=settings.STRAVA_WEBHOOK_VERIFY_TOKEN),
        streams=StreamsService(rate_limiter, cache, strava, edge_max_age_s=settings.CACHE_EDGE_MAX_AGE_S),
        activities=ActivitiesService(rate_limiter, cache, strava, clock=clock),
        engine=engine,
    )


_worker_context: Optional[AppContext] = None


def set_worker_context(context: Optional[AppContext]) -> None:
    global _worker_context
    _worker_context = context


def get_worker_context() -> AppContext:
    """Context for Celery tasks, built lazily on first use in the process."""
    global _worker_context
    if _worker_context is None:
        from core.config import settings

        logger.info("Building worker context")
        _worker_context = build_context(settings)
    return _worker_context


def get_app_context(request: Request) -> AppContext:
    """FastAPI dependency: the context attached to the running app."""
    return request.app.state.context
