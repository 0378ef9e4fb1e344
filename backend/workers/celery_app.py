"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "controltower",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.scheduler", "workers.inventory_kpi"],
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
        "workers.inventory_kpi.*": {"queue": "kpi"},
        "workers.scheduler.*": {"queue": "sync"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # Jobs fan out across active tenants via workers.scheduler.dispatch_active_tenants.
    beat_schedule={
        # ── Inventory KPIs ──────────────────────────────────────────
        "inventory-kpis-daily": {
            "task": "workers.scheduler.dispatch_active_tenants",
            "schedule": crontab(hour=1, minute=30),  # After nightly inventory/demand sync
            "kwargs": {
                "task_name": "workers.inventory_kpi.compute_inventory_kpis",
                "task_kwargs": {"trigger": "scheduled"},
            },
            "options": {"queue": "sync"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"])
