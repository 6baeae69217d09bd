"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "precastflow",
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
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.automation.*": {"queue": "automation"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # For deployments that run the sweep outside the API process.
    beat_schedule={
        "overdue-sweep-hourly": {
            "task": "workers.automation.run_overdue_sweep",
            "schedule": crontab(minute=0),
            "options": {"queue": "automation"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"])
