"""
On-demand sync endpoints.

The frontend starts a sync and then polls the job for progress. Starting is
refused with 409 while the user already has a pending or running job for
the same source; the queue only sees one task per active job.
"""

from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Query, Request
from sqlalchemy.orm import Session

from core.auth import get_current_user
from core.database import get_db
from core.exceptions import ConflictError, NotFoundError, ValidationError
from core.logging import job_log_fields
from models import User
from schemas import (
    DataSource,
    ImportJobStatus,
    JobListResponse,
    LatestJobResponse,
    SyncStartRequest,
    SyncStartResponse,
)
from services import import_jobs
from services.credentials import has_credentials
from services.daily_sync import enqueue_import
from services.sync_queue import SyncQueue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


def get_sync_queue(request: Request) -> SyncQueue:
    return request.app.state.sync_queue


@router.post("/start", response_model=SyncStartResponse)
def start_sync(
    body: Optional[SyncStartRequest] = Body(default=None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    queue: SyncQueue = Depends(get_sync_queue),
):
    body = body or SyncStartRequest()
    if not has_credentials(current_user, body.data_source):
        raise ValidationError("provider_not_connected", field="data_source")

    existing = import_jobs.find_active_for(db, current_user.id, body.data_source)
    if existing is not None:
        raise ConflictError("sync_in_progress", {"jobId": str(existing.id)})

    job = import_jobs.create_job(db, current_user.id, body.data_source, sync_type=body.sync_type)
    db.commit()
    enqueue_import(db, queue, job)
    logger.info(
        "Sync requested", extra=job_log_fields(job.id, current_user.id, body.data_source, sync_type=body.sync_type)
    )
    return SyncStartResponse(job_id=job.id, status=job.status, data_source=body.data_source, sync_type=body.sync_type)


@router.get("/status/{job_id}", response_model=ImportJobStatus)
def get_sync_status(
    job_id: UUID,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    job = import_jobs.get_job_for_user(db, job_id, current_user.id)
    if job is None:
        raise NotFoundError("Import job", str(job_id))
    return job


@router.get("/latest", response_model=LatestJobResponse)
def get_latest_sync(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    job = import_jobs.find_latest_for(db, current_user.id)
    return LatestJobResponse(job=ImportJobStatus.model_validate(job) if job is not None else None)


@router.get("/jobs", response_model=JobListResponse)
def list_sync_jobs(
    data_source: Optional[DataSource] = Query(default=None, alias="dataSource"),
    limit: int = Query(default=25, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    jobs = import_jobs.list_jobs_for(db, current_user.id, data_source=data_source, limit=limit)
    return JobListResponse(jobs=[ImportJobStatus.model_validate(j) for j in jobs])
