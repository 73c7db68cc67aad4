"""
Celery application for scrape job execution.

Broker/backend: Redis (REDIS_URL env).
Queue: scrape. Jobs are dispatched by the API; when the in-process scheduler
is disabled, celery beat drives the live tracker instead.
"""
from celery import Celery

from campaign_tracker.settings import get_settings

settings = get_settings()

celery_app = Celery(
    "campaign_tracker",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["campaign_tracker.worker.tasks"],
)

celery_app.conf.update(
    task_routes={"scrape.*": {"queue": "scrape"}},
    task_default_queue="scrape",
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_time_limit=2 * 3600,
    task_soft_time_limit=int(1.5 * 3600),
    result_expires=24 * 3600,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    broker_transport_options={"visibility_timeout": 3 * 3600},
)

if settings.live_tracker_enabled and not settings.scheduler_enabled:
    celery_app.conf.beat_schedule = {
        "live-tracker-cycle": {
            "task": "scrape.run_live_tracker_cycle",
            "schedule": settings.live_tracker_interval_minutes * 60.0,
        },
    }
