"""
Per-user, per-source sync checkpoints (the users.last_*sync_at columns).

A checkpoint only moves forward, and the worker only calls
`advance_checkpoint` after a run that imported at least one record. The
write is a conditional UPDATE, so an older run finishing late cannot move
the checkpoint backwards.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from core.config import settings
from models import User

CHECKPOINT_COLUMNS = {
    "foursquare": User.last_sync_at,
    "strava": User.last_strava_sync_at,
    "garmin": User.last_garmin_sync_at,
}

TOKEN_COLUMNS = {
    "foursquare": User.foursquare_access_token,
    "strava": User.strava_access_token,
    "garmin": User.garmin_username,
}


def _column(data_source: str):
    try:
        return CHECKPOINT_COLUMNS[data_source]
    except KeyError:
        raise ValueError(f"Unknown data source: {data_source}") from None


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def get_checkpoint(user: User, data_source: str) -> Optional[datetime]:
    return _as_utc(getattr(user, _column(data_source).key))


def advance_checkpoint(db: Session, user_id: UUID, data_source: str, at: datetime) -> bool:
    """Set the checkpoint to `at` unless it is already at or past it. Returns True when it moved."""
    column = _column(data_source)
    updated = (
        db.query(User)
        .filter(User.id == user_id, or_(column.is_(None), column < at))
        .update({column: at}, synchronize_session="fetch")
    )
    return updated == 1


def find_active_users(
    db: Session,
    data_source: str = "foursquare",
    *,
    now: Optional[datetime] = None,
    window_days: Optional[int] = None,
) -> List[User]:
    """
    Users connected to `data_source` who logged in within the activity window.

    Users with no recorded login are included (accounts created before login
    tracking). Ordered by id so the daily fan-out order is stable.
    """
    _column(data_source)
    now = now or datetime.now(timezone.utc)
    window_days = window_days if window_days is not None else settings.ACTIVE_USER_WINDOW_DAYS
    cutoff = now - timedelta(days=window_days)
    return (
        db.query(User)
        .filter(
            TOKEN_COLUMNS[data_source].isnot(None),
            or_(User.last_login_at.is_(None), User.last_login_at >= cutoff),
        )
        .order_by(User.id)
        .all()
    )
