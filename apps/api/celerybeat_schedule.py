"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule (UTC). Cron strings come from
settings so deployments can move the windows without a code change.
"""

from core.config import settings


def install_beat_schedule(queue):
    # Daily Foursquare check-in sync: fans out one staggered import per active user
    queue.schedule(
        "daily-checkin-sync",
        "daily_checkin_sync",
        settings.DAILY_SYNC_CRON,
        {"data_source": "foursquare"},
    )
    # Retention sweep for finished import jobs
    queue.schedule(
        "cleanup-import-jobs",
        "cleanup_import_jobs",
        settings.JOB_RETENTION_CRON,
        {"days": settings.JOB_RETENTION_DAYS},
    )
    return queue.app.conf.beat_schedule
