from sqlalchemy import Column, Integer, Boolean, Float, Date, DateTime, ForeignKey, Text, Index, UniqueConstraint, JSON, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from core.database import Base
import uuid
from datetime import datetime, timezone


# JSONB on PostgreSQL, plain JSON elsewhere (local sqlite runs).
JSONType = JSON().with_variant(JSONB(), "postgresql")

DATA_SOURCES = ("foursquare", "strava", "garmin")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    """
    Account row as seen by the sync engine.

    Provider tokens are stored encrypted (services/token_encryption.py).
    The three last_*sync_at columns are the per-source sync checkpoints; only
    services/sync_checkpoint.py writes them.
    """

    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    email = Column(Text, unique=True, nullable=True)
    display_name = Column(Text, nullable=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)

    # --- Foursquare / Swarm ---
    foursquare_user_id = Column(Text, nullable=True)
    foursquare_access_token = Column(Text, nullable=True)  # encrypted
    last_sync_at = Column(DateTime(timezone=True), nullable=True)

    # --- Strava ---
    strava_athlete_id = Column(Text, nullable=True)
    strava_access_token = Column(Text, nullable=True)  # encrypted
    strava_refresh_token = Column(Text, nullable=True)  # encrypted
    strava_token_expires_at = Column(DateTime(timezone=True), nullable=True)
    last_strava_sync_at = Column(DateTime(timezone=True), nullable=True)

    # --- Garmin Connect ---
    garmin_username = Column(Text, nullable=True)
    garmin_password_encrypted = Column(Text, nullable=True)
    garmin_session = Column(Text, nullable=True)  # encrypted garth token dump
    last_garmin_sync_at = Column(DateTime(timezone=True), nullable=True)


class ImportJob(Base):
    """
    One durable record per sync attempt.

    Status machine: pending -> running -> completed | failed | rate_limited.
    Terminal rows are never updated again; a retried or rate-limited attempt
    continues in a new row that points back via resumed_from_id and carries
    the sync_cursor forward.
    """

    __tablename__ = "import_jobs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # 'foursquare' | 'strava' | 'garmin'
    data_source = Column(Text, nullable=False)
    # 'incremental' | 'full'
    sync_type = Column(Text, nullable=False, default="incremental")
    # 'pending' | 'running' | 'completed' | 'failed' | 'rate_limited'
    status = Column(Text, nullable=False, default="pending", index=True)

    total_expected = Column(Integer, nullable=True)  # unknown until the first page
    total_imported = Column(Integer, nullable=False, default=0)
    current_batch = Column(Integer, nullable=False, default=0)

    error_message = Column(Text, nullable=True)
    retry_after = Column(DateTime(timezone=True), nullable=True)

    # Provider-specific resume token; opaque to everything but the adapter.
    sync_cursor = Column(JSONType, nullable=True)
    resumed_from_id = Column(Uuid, ForeignKey("import_jobs.id", ondelete="SET NULL"), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), default=_utcnow, nullable=False, index=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_import_jobs_user_source_status", "user_id", "data_source", "status"),
    )


class Checkin(Base):
    __tablename__ = "checkins"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider_checkin_id = Column(Text, nullable=False)

    venue_id = Column(Text, nullable=True)
    venue_name = Column(Text, nullable=False)
    venue_category = Column(Text, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    city = Column(Text, nullable=True)
    country = Column(Text, nullable=True)
    checkin_date = Column(DateTime(timezone=True), nullable=False, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "provider_checkin_id", name="uq_checkins_user_provider_id"),
    )


class CheckinPhoto(Base):
    __tablename__ = "checkin_photos"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    checkin_id = Column(Uuid, ForeignKey("checkins.id", ondelete="CASCADE"), nullable=False, index=True)
    url = Column(Text, nullable=False)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("checkin_id", "url", name="uq_checkin_photos_checkin_url"),
    )


class Activity(Base):
    """Fitness activity from Strava or Garmin (data_source tells which)."""

    __tablename__ = "activities"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    data_source = Column(Text, nullable=False)  # 'strava' | 'garmin'
    provider_activity_id = Column(Text, nullable=False)

    activity_type = Column(Text, nullable=True)
    name = Column(Text, nullable=True)
    start_time = Column(DateTime(timezone=True), nullable=False, index=True)
    start_lat = Column(Float, nullable=True)
    start_lng = Column(Float, nullable=True)
    end_lat = Column(Float, nullable=True)
    end_lng = Column(Float, nullable=True)

    duration_seconds = Column(Integer, nullable=True)
    moving_time_seconds = Column(Integer, nullable=True)
    distance_meters = Column(Float, nullable=True)
    elevation_gain_meters = Column(Float, nullable=True)
    calories = Column(Float, nullable=True)
    avg_speed = Column(Float, nullable=True)  # m/s
    max_speed = Column(Float, nullable=True)
    avg_heart_rate = Column(Float, nullable=True)
    max_heart_rate = Column(Float, nullable=True)
    avg_cadence = Column(Float, nullable=True)
    avg_watts = Column(Float, nullable=True)

    map_polyline = Column(Text, nullable=True)  # encoded polyline, decoded client-side
    is_private = Column(Boolean, nullable=False, default=False)
    kudos_count = Column(Integer, nullable=True)
    comment_count = Column(Integer, nullable=True)
    photo_count = Column(Integer, nullable=True)
    activity_url = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "data_source", "provider_activity_id", name="uq_activities_user_source_provider_id"),
    )


class ActivityPhoto(Base):
    __tablename__ = "activity_photos"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    activity_id = Column(Uuid, ForeignKey("activities.id", ondelete="CASCADE"), nullable=False, index=True)
    provider_photo_id = Column(Text, nullable=False)
    url = Column(Text, nullable=False)
    caption = Column(Text, nullable=True)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    taken_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("activity_id", "provider_photo_id", name="uq_activity_photos_activity_photo"),
    )


class DailyMetric(Base):
    """Per-day wellness totals (Garmin): steps, resting heart rate, sleep."""

    __tablename__ = "daily_metrics"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    data_source = Column(Text, nullable=False)
    metric_date = Column(Date, nullable=False)

    step_count = Column(Integer, nullable=True)
    resting_heart_rate = Column(Integer, nullable=True)
    sleep_duration_seconds = Column(Integer, nullable=True)
    sleep_score = Column(Integer, nullable=True)
    deep_sleep_seconds = Column(Integer, nullable=True)
    light_sleep_seconds = Column(Integer, nullable=True)
    rem_sleep_seconds = Column(Integer, nullable=True)
    awake_seconds = Column(Integer, nullable=True)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "data_source", "metric_date", name="uq_daily_metrics_user_source_date"),
    )
