from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from datetime import datetime
from uuid import UUID
from typing import Optional, List, Literal


DataSource = Literal["foursquare", "strava", "garmin"]
SyncType = Literal["incremental", "full"]


class CamelModel(BaseModel):
    """Snake_case in Python, camelCase on the wire (what the frontend polls)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class SyncStartRequest(CamelModel):
    data_source: DataSource = "foursquare"
    # Incremental runs fall back to a full sync when the source has no checkpoint yet
    sync_type: SyncType = "incremental"


class SyncStartResponse(CamelModel):
    job_id: UUID
    status: str = "pending"
    data_source: DataSource
    sync_type: SyncType


class ImportJobStatus(CamelModel):
    id: UUID
    status: str
    data_source: str
    sync_type: str
    total_expected: Optional[int] = None
    total_imported: int = 0
    current_batch: int = 0
    error_message: Optional[str] = None
    retry_after: Optional[datetime] = None
    resumed_from_id: Optional[UUID] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime


class LatestJobResponse(CamelModel):
    job: Optional[ImportJobStatus] = None


class JobListResponse(CamelModel):
    jobs: List[ImportJobStatus] = Field(default_factory=list)
