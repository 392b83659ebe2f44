"""
Celery worker entry point.

Imports the Celery app (which registers the sync tasks and the beat
schedule) from the API package. Run with:

    celery -A main worker --loglevel=info
    celery -A main beat --loglevel=info
"""
import sys

# Add API directory to path so we can import tasks
sys.path.insert(0, '/api')

from tasks import celery_app, registered_tasks  # noqa: E402


# Health check task
@celery_app.task(name="worker.health_check")
def health_check():
    """Health check task"""
    return {"status": "ok", "tasks": sorted(t.name for t in registered_tasks.values())}
