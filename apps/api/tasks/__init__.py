"""
Celery tasks for background processing.

Tasks are defined here and imported by both the API (to enqueue) and
the worker (to execute).
"""
from celery import Celery
from celery.signals import worker_process_init

from celerybeat_schedule import beat_schedule
from core.config import settings

# Create Celery app instance
celery_app = Celery(
    "velosync",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=30 * 60,  # 30 minutes max
    task_soft_time_limit=25 * 60,  # 25 minutes soft limit
    beat_schedule=beat_schedule,
)


@worker_process_init.connect
def _init_worker_process(**kwargs):
    """Each worker process builds its own store client, engine and components."""
    from core.context import build_context, set_worker_context
    from core.logging import setup_logging

    setup_logging()
    set_worker_context(build_context(settings))


# Import tasks to register them
from . import queue_tasks  # noqa: E402

__all__ = ["celery_app"]
