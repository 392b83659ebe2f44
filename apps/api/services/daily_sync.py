"""
Daily sync fan-out.

Once a day, for every active user of a data source (default: Foursquare),
create a pending import job and enqueue its import task with a staggered
delay: user i starts i * SYNC_STAGGER_MINUTES after the pass, so the shared
per-app provider budget is spread out.

Users with a pending or running job are skipped. Errors are not caught here:
a failed user query or job insert propagates so the queue retries the whole
pass, and the next pass skips users already queued.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from core.config import settings
from core.logging import job_log_fields
from services import import_jobs
from services.sync_checkpoint import find_active_users
from services.sync_queue import SyncQueue

logger = logging.getLogger(__name__)

IMPORT_TASKS = {
    "foursquare": "import_checkins",
    "strava": "import_strava",
    "garmin": "import_garmin",
}


@dataclass
class DailySyncSummary:
    active_users: int = 0
    queued: int = 0
    skipped: int = 0
    job_ids: List[str] = field(default_factory=list)

    def to_dict(self):
        return {"active_users": self.active_users, "queued": self.queued, "skipped": self.skipped}


def import_task_for(data_source: str) -> str:
    try:
        return IMPORT_TASKS[data_source]
    except KeyError:
        raise ValueError(f"Unknown data source: {data_source}") from None


def enqueue_import(db: Session, queue: SyncQueue, job, *, delay: timedelta = timedelta(0)) -> None:
    """
    Enqueue the import task for a freshly created (and committed) job.

    If the broker rejects the message the pending row is deleted again, so it
    cannot block the user's next sync.
    """
    try:
        queue.enqueue(import_task_for(job.data_source), {"job_id": job.id, "user_id": job.user_id}, delay=delay)
    except Exception:
        logger.exception("Failed to enqueue import job %s", job.id, extra=job_log_fields(job.id, job.user_id, job.data_source))
        import_jobs.discard_pending(db, job.id)
        db.commit()
        raise


def run_daily_sync(
    db: Session,
    queue: SyncQueue,
    *,
    data_source: str = "foursquare",
    stagger: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> DailySyncSummary:
    stagger = stagger if stagger is not None else timedelta(minutes=settings.SYNC_STAGGER_MINUTES)
    now = now or datetime.now(timezone.utc)

    users = find_active_users(db, data_source, now=now)
    summary = DailySyncSummary(active_users=len(users))
    logger.info("Daily %s sync: %s active users", data_source, len(users))

    for i, user in enumerate(users):
        delay = stagger * i
        existing = import_jobs.find_active_for(db, user.id, data_source)
        if existing is not None:
            summary.skipped += 1
            logger.info(
                "Skipping user %s: %s job %s already %s",
                user.id, data_source, existing.id, existing.status,
                extra=job_log_fields(existing.id, user.id, data_source),
            )
            continue

        job = import_jobs.create_job(db, user.id, data_source, sync_type="incremental")
        db.commit()
        enqueue_import(db, queue, job, delay=delay)
        summary.queued += 1
        summary.job_ids.append(str(job.id))
        logger.info(
            "Queued %s sync for user %s in %s",
            data_source, user.id, delay,
            extra=job_log_fields(job.id, user.id, data_source, delay_s=int(delay.total_seconds())),
        )

    logger.info("Daily %s sync complete: %s", data_source, summary.to_dict())
    return summary
