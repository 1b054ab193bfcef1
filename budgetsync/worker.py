from celery import Celery
from celery.schedules import crontab

from budgetsync.core.config import settings

celery_app = Celery(
    "budgetsync",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # Webhook events are redelivered if a worker dies mid-task
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    # Caps a whole bulk run
    task_time_limit=30 * 60,
    result_expires=7 * 24 * 3600,
    broker_connection_retry_on_startup=True,
)

# ─── Scheduled tasks ──────────────────────────
celery_app.conf.beat_schedule = {
    "sync-revolut-daily": {
        "task": "budgetsync.services.scheduler.sync_all_households",
        "schedule": crontab(hour=6, minute=0),
    },
}

celery_app.conf.include = [
    "budgetsync.services.scheduler",
    "budgetsync.services.webhooks",
]
