"""Celery application configuration."""
from datetime import timedelta

from celery import Celery

from app.config import get_settings

settings = get_settings()

celery_app = Celery(
    "leads_importer",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.tasks.import_tasks"],
)

celery_app.conf.update(
    task_track_started=True,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    beat_schedule={
        "cleanup-expired-uploads": {
            "task": "app.tasks.import_tasks.cleanup_expired_uploads",
            "schedule": timedelta(hours=settings.cleanup_interval_hours),
        },
    },
)
