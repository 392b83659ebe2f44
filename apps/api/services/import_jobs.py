"""
Import job store (durable state machine for sync attempts).

Goals:
- One row per sync attempt: identity, status, progress, resume cursor
- Single source of truth for "is a sync already running" for (user, source)
- Every status change is one conditional UPDATE, so an illegal transition
  (or a second worker touching a finished job) fails loudly instead of
  silently rewriting history

Status machine:
    pending -> running -> completed | failed | rate_limited

Terminal rows are never updated again. Retried and rate-limited attempts
continue in a fresh row created by `create_resumption_job`, which carries
the sync cursor forward.

The store does not enforce "one active job per (user, source)". Callers
check `find_active_for` before `create_job`. Commits are left to the caller.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from models import ImportJob


PENDING = "pending"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
RATE_LIMITED = "rate_limited"

ACTIVE_STATUSES = (PENDING, RUNNING)
TERMINAL_STATUSES = (COMPLETED, FAILED, RATE_LIMITED)

# target status -> statuses it may be entered from
_ALLOWED_FROM: Dict[str, tuple] = {
    RUNNING: (PENDING,),
    COMPLETED: (RUNNING,),
    FAILED: (RUNNING,),
    RATE_LIMITED: (RUNNING,),
}

# Partial-update field table. Progress payloads arrive with either the API's
# camelCase names or the column names; both resolve here and nowhere else.
UPDATABLE_FIELDS = {
    "total_expected": ImportJob.total_expected,
    "totalExpected": ImportJob.total_expected,
    "total_imported": ImportJob.total_imported,
    "totalImported": ImportJob.total_imported,
    "current_batch": ImportJob.current_batch,
    "currentBatch": ImportJob.current_batch,
    "error_message": ImportJob.error_message,
    "errorMessage": ImportJob.error_message,
    "sync_cursor": ImportJob.sync_cursor,
    "syncCursor": ImportJob.sync_cursor,
}


class JobTransitionError(RuntimeError):
    """Raised when a status change is not legal from the job's current status."""

    def __init__(self, job_id: UUID, target: str, current: Optional[str]):
        self.job_id = job_id
        self.target = target
        self.current = current
        super().__init__(f"Illegal import job transition for {job_id}: {current or 'missing'} -> {target}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _transition(db: Session, job_id: UUID, target: str, values: Dict[Any, Any]) -> None:
    values = {ImportJob.status: target, **values}
    updated = (
        db.query(ImportJob)
        .filter(ImportJob.id == job_id, ImportJob.status.in_(_ALLOWED_FROM[target]))
        .update(values, synchronize_session="fetch")
    )
    if updated != 1:
        current = db.query(ImportJob.status).filter(ImportJob.id == job_id).scalar()
        raise JobTransitionError(job_id, target, current)


def create_job(
    db: Session,
    user_id: UUID,
    data_source: str,
    *,
    sync_type: str = "incremental",
    sync_cursor: Optional[Dict[str, Any]] = None,
    resumed_from_id: Optional[UUID] = None,
) -> ImportJob:
    job = ImportJob(
        user_id=user_id,
        data_source=data_source,
        sync_type=sync_type,
        status=PENDING,
        total_imported=0,
        current_batch=0,
        sync_cursor=sync_cursor,
        resumed_from_id=resumed_from_id,
        created_at=_utcnow(),
    )
    db.add(job)
    db.flush()
    return job


def create_resumption_job(db: Session, job: ImportJob) -> ImportJob:
    """New pending job that continues `job` from its last saved cursor."""
    return create_job(
        db,
        job.user_id,
        job.data_source,
        sync_type=job.sync_type,
        sync_cursor=job.sync_cursor,
        resumed_from_id=job.id,
    )


def discard_pending(db: Session, job_id: UUID) -> bool:
    """Delete a job that never left `pending` (used when enqueueing it failed)."""
    deleted = (
        db.query(ImportJob)
        .filter(ImportJob.id == job_id, ImportJob.status == PENDING)
        .delete(synchronize_session="fetch")
    )
    return deleted == 1


def get_job(db: Session, job_id: UUID) -> Optional[ImportJob]:
    return db.query(ImportJob).filter(ImportJob.id == job_id).first()


def get_job_for_user(db: Session, job_id: UUID, user_id: UUID) -> Optional[ImportJob]:
    return (
        db.query(ImportJob)
        .filter(ImportJob.id == job_id, ImportJob.user_id == user_id)
        .first()
    )


def find_active_for(db: Session, user_id: UUID, data_source: str) -> Optional[ImportJob]:
    return (
        db.query(ImportJob)
        .filter(
            ImportJob.user_id == user_id,
            ImportJob.data_source == data_source,
            ImportJob.status.in_(ACTIVE_STATUSES),
        )
        .order_by(ImportJob.created_at.desc())
        .first()
    )


def find_latest_for(db: Session, user_id: UUID) -> Optional[ImportJob]:
    return (
        db.query(ImportJob)
        .filter(ImportJob.user_id == user_id)
        .order_by(ImportJob.created_at.desc())
        .first()
    )


def list_jobs_for(
    db: Session,
    user_id: UUID,
    *,
    data_source: Optional[str] = None,
    limit: int = 25,
) -> List[ImportJob]:
    q = db.query(ImportJob).filter(ImportJob.user_id == user_id)
    if data_source:
        q = q.filter(ImportJob.data_source == data_source)
    return q.order_by(ImportJob.created_at.desc()).limit(min(max(limit, 1), 200)).all()


def mark_started(db: Session, job_id: UUID) -> None:
    _transition(db, job_id, RUNNING, {ImportJob.started_at: _utcnow(), ImportJob.error_message: None})


def mark_completed(db: Session, job_id: UUID, *, total_imported: Optional[int] = None) -> None:
    values: Dict[Any, Any] = {ImportJob.completed_at: _utcnow()}
    if total_imported is not None:
        values[ImportJob.total_imported] = total_imported
    _transition(db, job_id, COMPLETED, values)


def mark_failed(db: Session, job_id: UUID, message: str) -> None:
    # total_imported is left alone: partial progress stays visible.
    _transition(db, job_id, FAILED, {ImportJob.completed_at: _utcnow(), ImportJob.error_message: message[:2000]})


def mark_rate_limited(db: Session, job_id: UUID, retry_after: datetime, *, message: Optional[str] = None) -> None:
    _transition(
        db,
        job_id,
        RATE_LIMITED,
        {
            ImportJob.completed_at: _utcnow(),
            ImportJob.retry_after: retry_after,
            ImportJob.error_message: message or f"Rate limit reached, resuming after {retry_after.isoformat()}",
        },
    )


def update_job(db: Session, job_id: UUID, **fields: Any) -> bool:
    """
    Merge the given progress fields into an active job.

    Unknown field names raise ValueError. Returns False when the job is no
    longer active (finished rows are not touched).
    """
    values: Dict[Any, Any] = {}
    for name, value in fields.items():
        column = UPDATABLE_FIELDS.get(name)
        if column is None:
            raise ValueError(f"Field {name!r} is not updatable on import jobs")
        values[column] = value
    if not values:
        return True
    updated = (
        db.query(ImportJob)
        .filter(ImportJob.id == job_id, ImportJob.status.in_(ACTIVE_STATUSES))
        .update(values, synchronize_session="fetch")
    )
    return updated == 1


def update_progress(
    db: Session,
    job_id: UUID,
    *,
    total_expected: Optional[int] = None,
    total_imported: Optional[int] = None,
    current_batch: Optional[int] = None,
) -> bool:
    fields = {
        name: value
        for name, value in (
            ("total_expected", total_expected),
            ("total_imported", total_imported),
            ("current_batch", current_batch),
        )
        if value is not None
    }
    return update_job(db, job_id, **fields)


def update_cursor(db: Session, job_id: UUID, cursor: Dict[str, Any]) -> bool:
    return update_job(db, job_id, sync_cursor=dict(cursor))


def delete_old(db: Session, days: int = 30, *, statuses: Iterable[str] = TERMINAL_STATUSES) -> int:
    """Retention sweep: drop finished jobs whose completed_at is older than `days`."""
    cutoff = _utcnow() - timedelta(days=days)
    return (
        db.query(ImportJob)
        .filter(ImportJob.status.in_(tuple(statuses)), ImportJob.completed_at < cutoff)
        .delete(synchronize_session="fetch")
    )
