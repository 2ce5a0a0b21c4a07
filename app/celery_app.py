from datetime import timedelta

from celery import Celery
from celery.signals import setup_logging

from app.config import settings
from app.logging import configure_logging


def get_celery_config() -> dict:
    broker = settings.celery_broker_url or settings.redis_url
    backend = settings.celery_result_backend or settings.redis_url
    return {
        "broker_url": broker,
        "result_backend": backend,
        "timezone": settings.celery_timezone,
        "task_always_eager": settings.celery_task_always_eager,
        "task_acks_late": True,
        "worker_prefetch_multiplier": 1,
        "task_serializer": "json",
        "result_serializer": "json",
        "accept_content": ["json"],
    }


def build_beat_schedule() -> dict:
    schedule: dict[str, dict] = {}
    if settings.cleanup_interval_hours > 0:
        schedule["cleanup"] = {
            "task": "app.tasks.cleanup.run_cleanup",
            "schedule": timedelta(hours=settings.cleanup_interval_hours),
        }
    return schedule


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    configure_logging()


celery_app = Celery("file_transfer")
celery_app.conf.update(get_celery_config())
celery_app.conf.beat_schedule = build_beat_schedule()
celery_app.autodiscover_tasks(["app.tasks"])
