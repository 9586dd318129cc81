"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "garmentops",
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
        "workers.replenishment.*": {"queue": "planning"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    beat_schedule={
        # ── Replenishment ──────────────────────────────────────────
        "replenishment-plan-nightly": {
            "task": "workers.replenishment.run_replenishment_plan",
            "schedule": crontab(hour=2, minute=30),
            "options": {"queue": "planning"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"])
