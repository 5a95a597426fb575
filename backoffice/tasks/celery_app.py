"""
Celery Application Configuration
"""

import os
from celery import Celery
from celery.schedules import crontab

# Use REDIS_URL if set, otherwise construct from CELERY_BROKER_URL or default
REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", REDIS_URL)
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", REDIS_URL)

app = Celery(
    "backoffice",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
    include=[
        "backoffice.tasks.platforms",
    ],
)

app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=15 * 60,  # 15 minutes
    task_soft_time_limit=12 * 60,  # 12 minutes
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
)

app.conf.beat_schedule = {
    # Refresh OAuth tokens that expire within the next half hour
    "refresh-expiring-tokens": {
        "task": "tasks.refresh_expiring_tokens",
        "schedule": crontab(minute="*/15"),
        "kwargs": {"minutes_ahead": 30},
    },
    "pull-marketplace-orders": {
        "task": "tasks.pull_all_orders",
        "schedule": crontab(minute="*/10"),
    },
    "sync-marketplace-inventory-hourly": {
        "task": "tasks.sync_all_inventory",
        "schedule": crontab(minute=0),
    },
}

if __name__ == "__main__":
    app.start()
