"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule.
"""

from celery.schedules import crontab

# Schedule configuration
beat_schedule = {
    # Live lane first, then a few backfill jobs.
    'drain-queues': {
        'task': 'tasks.drain_queues',
        'schedule': crontab(minute='*'),  # Every minute
    },
    # Webhook activity events, spread across the provider's 15-minute window
    'batch-process-queue': {
        'task': 'tasks.batch_process_queue',
        'schedule': crontab(minute=0, hour='*/6'),
    },
    'nightly-reconcile': {
        'task': 'tasks.nightly_reconcile',
        'schedule': crontab(hour=3, minute=0),  # 03:00 UTC
    },
    'cleanup-audit-logs': {
        'task': 'tasks.cleanup_audit_logs',
        'schedule': crontab(hour=4, minute=0),  # 04:00 UTC
    },
}
