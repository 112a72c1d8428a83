"""Celery app for background inbox sync. Uses Redis; DB session per task."""
import logging

from celery import Celery

from .config import settings

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

celery_app = Celery(
    "priority_inbox",
    broker=settings.celery_broker,
    backend=settings.redis_url,
    include=["priority_inbox.tasks"],
)
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    beat_schedule={
        "batch-sync": {
            "task": "priority_inbox.tasks.run_batch_sync",
            "schedule": float(max(1, settings.batch_sync_min_interval_minutes) * 60),
        },
    },
)
