"""
Celery app and sync queue.

Imported by both the API (to enqueue) and the worker (to execute). The
`sync_queue` instance is the only queue handle; the API stores it on
app.state and the handlers receive it explicitly.
"""
from celery import Celery
from core.config import settings
from services.sync_queue import SyncQueue

# Create Celery app instance
celery_app = Celery(
    "wayfarer",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,  # a crashed worker's task goes back on the broker
    worker_prefetch_multiplier=1,  # one claimed task per worker process
    result_expires=settings.CELERY_RESULT_EXPIRES_S,
    task_time_limit=60 * 60,  # 60 minutes max per task
    task_soft_time_limit=55 * 60,
)

sync_queue = SyncQueue(celery_app)

# Register tasks and the beat schedule
from celerybeat_schedule import install_beat_schedule  # noqa: E402
from .sync_tasks import register_sync_tasks  # noqa: E402

registered_tasks = register_sync_tasks(sync_queue)
install_beat_schedule(sync_queue)

__all__ = ["celery_app", "sync_queue", "registered_tasks"]
