"""
Celery handlers for provider syncs.

Import tasks (one per data source) share `run_import`:

1. Skip unless the job exists and is still pending (a redelivered message
   for a job another worker already ran is a no-op).
2. pending -> running, commit.
3. Load credentials, pick full vs incremental (full when asked for or when
   the user has no checkpoint yet), run the adapter with a
   JobProgressReporter. Every stored page commits together with its cursor.
4. running -> completed. The checkpoint advances to the run's start time
   only when the run imported something.

Errors are dispatched on ProviderError.kind:

- RATE_LIMIT: job -> rate_limited, a resumption job carrying the cursor is
  enqueued for retry_after. Nothing is re-raised, so the Celery retry budget
  is not spent.
- AUTH / FATAL: job -> failed; the user has to reconnect. No retry.
- TRANSIENT (and anything unexpected): job -> failed, then a resumption job
  is handed to Celery's retry with backoff until the policy is exhausted.
"""

from __future__ import annotations

import functools
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.config import settings
from core.cache import get_redis_client
from core.database import get_db_sync
from core.logging import job_log_fields
from models import User
from services import import_jobs
from services.credentials import CredentialStore
from services.daily_sync import IMPORT_TASKS, enqueue_import, run_daily_sync
from services.providers.base import ErrorKind, ProviderError, SyncAdapter
from services.providers.foursquare import FoursquareClient, FoursquareSyncAdapter
from services.providers.garmin import GarminClient, GarminSyncAdapter
from services.providers.strava import StravaClient, StravaSyncAdapter
from services.strava_rate_limit import StravaQuota
from services.sync_checkpoint import advance_checkpoint, get_checkpoint
from services.sync_progress import JobProgressReporter
from services.sync_queue import RetryPolicy, SyncQueue

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT_BACKOFF = timedelta(minutes=15)

AdapterFactory = Callable[[Session, str, User, CredentialStore], SyncAdapter]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_adapter(db: Session, data_source: str, user: User, store: CredentialStore) -> SyncAdapter:
    refresher = store.refresher_for(user)
    if data_source == "foursquare":
        return FoursquareSyncAdapter(
            db, client_factory=lambda credentials: FoursquareClient(credentials, refresher=refresher)
        )
    if data_source == "strava":
        quota = StravaQuota(get_redis_client())
        return StravaSyncAdapter(
            db, client_factory=lambda credentials: StravaClient(credentials, quota=quota, refresher=refresher)
        )
    if data_source == "garmin":
        return GarminSyncAdapter(
            db,
            client_factory=lambda credentials: GarminClient(
                credentials,
                refresher=refresher,
                session_saver=lambda refreshed: store.save(user, refreshed),
            ),
        )
    raise ValueError(f"Unknown data source: {data_source}")


def run_import(
    task,
    *,
    queue: SyncQueue,
    data_source: str,
    job_id: str,
    user_id: Optional[str] = None,
    db_factory: Callable[[], Session] = None,
    adapter_factory: Optional[AdapterFactory] = None,
    now: Callable[[], datetime] = _utcnow,
) -> Dict[str, Any]:
    db = (db_factory or get_db_sync)()
    job_uuid = UUID(str(job_id))
    try:
        job = import_jobs.get_job(db, job_uuid)
        if job is None:
            logger.warning("Import job %s not found; skipping", job_id, extra=job_log_fields(job_id, user_id, data_source))
            return {"status": "skipped", "reason": "job_not_found"}
        if job.data_source != data_source:
            logger.error(
                "Import job %s is for %s, not %s; skipping", job.id, job.data_source, data_source,
                extra=job_log_fields(job.id, job.user_id, data_source),
            )
            return {"status": "skipped", "reason": "wrong_data_source"}
        if job.status != import_jobs.PENDING:
            logger.info(
                "Import job %s is %s; skipping", job.id, job.status,
                extra=job_log_fields(job.id, job.user_id, data_source),
            )
            return {"status": "skipped", "reason": f"job_{job.status}"}

        log_extra = job_log_fields(job.id, job.user_id, data_source, sync_type=job.sync_type)
        run_started_at = now()
        import_jobs.mark_started(db, job.id)
        db.commit()
        logger.info("Starting %s %s import", data_source, job.sync_type, extra=log_extra)

        user = db.get(User, job.user_id)
        if user is None:
            import_jobs.mark_failed(db, job.id, "User no longer exists")
            db.commit()
            return {"status": "failed", "reason": "user_not_found"}

        progress = JobProgressReporter(db, job.id, min_interval_s=settings.PROGRESS_WRITE_INTERVAL_S)
        try:
            store = CredentialStore(db)
            credentials = store.get(user, data_source)
            db.commit()
            adapter = (adapter_factory or build_adapter)(db, data_source, user, store)
            checkpoint = get_checkpoint(user, data_source)
            if job.sync_type == "full" or checkpoint is None:
                result = adapter.full_historical_sync(
                    credentials, user.id, settings.SYNC_FULL_YEARS_BACK, progress, cursor=job.sync_cursor
                )
            else:
                result = adapter.incremental_sync(credentials, user.id, checkpoint, progress, cursor=job.sync_cursor)
            progress.flush()
        except ProviderError as exc:
            db.rollback()
            _flush_progress(db, progress, log_extra)
            return _handle_provider_error(db, queue, task, job, exc, now)
        except Exception as exc:
            db.rollback()
            logger.exception("Unexpected error in %s import", data_source, extra=log_extra)
            _flush_progress(db, progress, log_extra)
            return _retry_transient(db, queue, task, job, exc)

        import_jobs.mark_completed(db, job.id, total_imported=result.total_imported)
        advanced = False
        if result.total_imported > 0:
            advanced = advance_checkpoint(db, user.id, data_source, run_started_at)
        db.commit()
        logger.info(
            "Completed %s import: %s", data_source, result.to_dict(),
            extra=job_log_fields(job.id, job.user_id, data_source, checkpoint_advanced=advanced, **result.to_dict()),
        )
        return {"status": import_jobs.COMPLETED, "job_id": str(job.id), "checkpoint_advanced": advanced, **result.to_dict()}
    finally:
        db.close()


def _flush_progress(db: Session, progress: JobProgressReporter, log_extra: Dict[str, Any]) -> None:
    # Throttled counts live in memory, so they outlive the rollback of the failed page.
    try:
        progress.flush()
    except SQLAlchemyError:
        db.rollback()
        logger.warning("Could not record final progress", exc_info=True, extra=log_extra)


def _handle_provider_error(db: Session, queue: SyncQueue, task, job, exc: ProviderError, now) -> Dict[str, Any]:
    log_extra = job_log_fields(job.id, job.user_id, job.data_source, error_kind=exc.kind.value)

    if exc.kind is ErrorKind.RATE_LIMIT:
        current = now()
        retry_after = exc.retry_after or current + DEFAULT_RATE_LIMIT_BACKOFF
        import_jobs.mark_rate_limited(db, job.id, retry_after, message=exc.message)
        resumed = import_jobs.create_resumption_job(db, job)
        db.commit()
        delay = max(retry_after - current, timedelta(0))
        enqueue_import(db, queue, resumed, delay=delay)
        logger.warning(
            "%s rate limit (%s window); resuming as job %s at %s",
            job.data_source, exc.window, resumed.id, retry_after.isoformat(),
            extra=log_extra,
        )
        return {
            "status": import_jobs.RATE_LIMITED,
            "job_id": str(job.id),
            "resumed_job_id": str(resumed.id),
            "retry_after": retry_after.isoformat(),
        }

    if exc.kind in (ErrorKind.AUTH, ErrorKind.FATAL):
        import_jobs.mark_failed(db, job.id, exc.message)
        db.commit()
        logger.error("%s import failed permanently: %s", job.data_source, exc.message, extra=log_extra)
        return {"status": import_jobs.FAILED, "job_id": str(job.id), "error": exc.message}

    return _retry_transient(db, queue, task, job, exc)


def _retry_transient(db: Session, queue: SyncQueue, task, job, exc: BaseException):
    message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
    import_jobs.mark_failed(db, job.id, message)
    policy = queue.policy_for(task)
    retries = task.request.retries
    if policy.exhausted(retries):
        db.commit()
        logger.error(
            "%s import failed after %s retries: %s", job.data_source, retries, message,
            extra=job_log_fields(job.id, job.user_id, job.data_source),
        )
        raise exc

    resumed = import_jobs.create_resumption_job(db, job)
    db.commit()
    logger.warning(
        "%s import failed (%s); retrying as job %s", job.data_source, message, resumed.id,
        extra=job_log_fields(job.id, job.user_id, job.data_source, resumed_job_id=str(resumed.id)),
    )
    raise queue.retry(task, exc, {"job_id": resumed.id, "user_id": job.user_id})


def run_daily_sync_task(
    task,
    *,
    queue: SyncQueue,
    data_source: str = "foursquare",
    db_factory: Callable[[], Session] = None,
) -> Dict[str, Any]:
    db = (db_factory or get_db_sync)()
    try:
        summary = run_daily_sync(db, queue, data_source=data_source)
        return summary.to_dict()
    except Exception as exc:
        db.rollback()
        logger.exception("Daily %s sync pass failed", data_source)
        raise queue.retry(task, exc)
    finally:
        db.close()


def cleanup_import_jobs(task, *, days: Optional[int] = None, db_factory: Callable[[], Session] = None) -> Dict[str, Any]:
    db = (db_factory or get_db_sync)()
    try:
        days = days if days is not None else settings.JOB_RETENTION_DAYS
        deleted = import_jobs.delete_old(db, days)
        db.commit()
        logger.info("Deleted %s import jobs older than %s days", deleted, days)
        return {"deleted": deleted, "days": days}
    finally:
        db.close()


def register_sync_tasks(queue: SyncQueue) -> Dict[str, Any]:
    registered = {}
    for data_source, task_type in IMPORT_TASKS.items():
        registered[task_type] = queue.register_worker(
            task_type, functools.partial(run_import, queue=queue, data_source=data_source)
        )
    registered["daily_checkin_sync"] = queue.register_worker(
        "daily_checkin_sync", functools.partial(run_daily_sync_task, queue=queue)
    )
    registered["cleanup_import_jobs"] = queue.register_worker(
        "cleanup_import_jobs", cleanup_import_jobs, retry_policy=RetryPolicy(max_retries=0)
    )
    return registered
