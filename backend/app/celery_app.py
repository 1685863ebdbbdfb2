from celery import Celery
from celery.schedules import crontab
from app.config import get_settings

settings = get_settings()

celery_app = Celery(
    "adops",
    broker=settings.effective_celery_broker_url,
    backend=settings.effective_celery_result_backend,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    result_expires=86400,  # 24 hours
)

# Celery Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "daily-metrics-sync": {
        "task": "app.tasks.sync_tasks.sync_all_accounts",
        "schedule": crontab(minute=0, hour=settings.sync_schedule_hour),
    },
}

# Auto-discover tasks
celery_app.autodiscover_tasks(["app.tasks"], related_name="sync_tasks")
