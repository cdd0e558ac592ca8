"""
Celery Worker Configuration
"""

from celery import Celery

from comicstudio.core.config import settings
from comicstudio.core.logging import configure_logging

configure_logging()

# Create Celery app
celery_app = Celery(
    "comicstudio",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=settings.job_stuck_timeout_seconds,
    task_soft_time_limit=max(1, settings.job_stuck_timeout_seconds - 60),
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["comicstudio.services"])
