"""
Duplicate-safe bulk insertion of imported records.

Every imported table has a natural key enforced by a unique constraint
(see models.py). Inserts use ON CONFLICT DO NOTHING, so re-fetching a page
never creates duplicates and the returned count only covers genuinely new
rows.

A batch runs inside a SAVEPOINT. If it fails for any reason other than a
duplicate (a malformed record poisoning the statement), the savepoint is
rolled back and the records go in one at a time, each in its own savepoint.
Bad records are logged and counted as failed; the rest still land.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Sequence, Tuple
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import Activity, ActivityPhoto, Checkin, CheckinPhoto, DailyMetric

logger = logging.getLogger(__name__)

CHECKIN_KEY = ("user_id", "provider_checkin_id")
CHECKIN_PHOTO_KEY = ("checkin_id", "url")
ACTIVITY_KEY = ("user_id", "data_source", "provider_activity_id")
ACTIVITY_PHOTO_KEY = ("activity_id", "provider_photo_id")
DAILY_METRIC_KEY = ("user_id", "data_source", "metric_date")

_DAILY_METRIC_VALUES = (
    "step_count",
    "resting_heart_rate",
    "sleep_duration_seconds",
    "sleep_score",
    "deep_sleep_seconds",
    "light_sleep_seconds",
    "rem_sleep_seconds",
    "awake_seconds",
)


class InvalidRecordError(ValueError):
    """A fetched record cannot be stored (missing natural key or required field)."""


@dataclass
class BulkInsertResult:
    inserted: int = 0
    failed: int = 0
    photos_inserted: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"inserted": self.inserted, "failed": self.failed, "photos_inserted": self.photos_inserted}


def _dialect_insert(db: Session):
    name = db.get_bind().dialect.name
    if name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"Unsupported dialect for bulk upsert: {name}")
    return insert


def _uniform(rows: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    # Multi-row VALUES needs the same keys on every row.
    keys: List[str] = []
    for row in rows:
        for key in row:
            if key not in keys:
                keys.append(key)
    return [{key: row.get(key) for key in keys} for row in rows]


def insert_ignoring_duplicates(db: Session, model, rows: Sequence[Dict[str, Any]], conflict_columns: Iterable[str]) -> int:
    """Single INSERT ... ON CONFLICT DO NOTHING; returns the number of new rows."""
    if not rows:
        return 0
    insert = _dialect_insert(db)
    stmt = insert(model).values(_uniform(rows)).on_conflict_do_nothing(index_elements=list(conflict_columns))
    result = db.execute(stmt)
    return max(result.rowcount or 0, 0)


def _insert_with_fallback(
    db: Session,
    model,
    rows: List[Dict[str, Any]],
    conflict_columns: Sequence[str],
    validate: Callable[[Dict[str, Any]], None],
    label: str,
) -> Tuple[int, int]:
    """Returns (inserted, failed)."""
    if not rows:
        return 0, 0
    try:
        with db.begin_nested():
            for row in rows:
                validate(row)
            return insert_ignoring_duplicates(db, model, rows, conflict_columns), 0
    except (SQLAlchemyError, InvalidRecordError) as exc:
        logger.warning(
            "Bulk %s insert failed (%s); falling back to per-record insert for %d records",
            label, exc.__class__.__name__, len(rows),
        )

    inserted = 0
    failed = 0
    for row in rows:
        try:
            with db.begin_nested():
                validate(row)
                inserted += insert_ignoring_duplicates(db, model, [row], conflict_columns)
        except (SQLAlchemyError, InvalidRecordError) as exc:
            failed += 1
            logger.warning("Skipping %s record %s: %s", label, _natural_key(row, conflict_columns), exc)
    return inserted, failed


def _natural_key(row: Dict[str, Any], columns: Sequence[str]) -> str:
    return "/".join(str(row.get(c)) for c in columns)


# --- check-ins ---

def _validate_checkin(row: Dict[str, Any]) -> None:
    if not row.get("provider_checkin_id"):
        raise InvalidRecordError("check-in without provider id")
    if row.get("checkin_date") is None:
        raise InvalidRecordError(f"check-in {row.get('provider_checkin_id')} has no checkin_date")


def _checkin_row(record: Dict[str, Any]) -> Dict[str, Any]:
    row = {k: v for k, v in record.items() if k != "photos"}
    row.setdefault("id", uuid.uuid4())
    if not row.get("venue_name"):
        row["venue_name"] = "Unknown"
    return row


def lookup_checkin_ids(db: Session, user_id: UUID, provider_ids: Iterable[str]) -> Dict[str, UUID]:
    provider_ids = list(provider_ids)
    if not provider_ids:
        return {}
    rows = (
        db.query(Checkin.provider_checkin_id, Checkin.id)
        .filter(Checkin.user_id == user_id, Checkin.provider_checkin_id.in_(provider_ids))
        .all()
    )
    return {provider_id: checkin_id for provider_id, checkin_id in rows}


def bulk_insert_checkin_photos(db: Session, rows: Sequence[Dict[str, Any]]) -> int:
    rows = [{"id": uuid.uuid4(), **row} for row in rows if row.get("url") and row.get("checkin_id")]
    if not rows:
        return 0
    try:
        with db.begin_nested():
            return insert_ignoring_duplicates(db, CheckinPhoto, rows, CHECKIN_PHOTO_KEY)
    except SQLAlchemyError as exc:
        logger.warning("Check-in photo insert failed for %d photos: %s", len(rows), exc)
        return 0


def bulk_insert_checkins(db: Session, records: Sequence[Dict[str, Any]]) -> BulkInsertResult:
    """
    Insert transformed check-ins (each may carry a "photos" list).

    Photos are inserted after their parents, keyed on the stored check-in id
    looked up by natural key, so photos of previously imported check-ins are
    filled in as well.
    """
    if not records:
        return BulkInsertResult()
    rows = [_checkin_row(r) for r in records]
    inserted, failed = _insert_with_fallback(db, Checkin, rows, CHECKIN_KEY, _validate_checkin, "check-in")

    with_photos = [r for r in records if r.get("photos") and r.get("provider_checkin_id")]
    photos_inserted = 0
    by_user: Dict[UUID, List[Dict[str, Any]]] = {}
    for record in with_photos:
        by_user.setdefault(record["user_id"], []).append(record)
    for user_id, user_records in by_user.items():
        ids = lookup_checkin_ids(db, user_id, [r["provider_checkin_id"] for r in user_records])
        photo_rows = [
            {"checkin_id": ids[r["provider_checkin_id"]], "url": p.get("url"), "width": p.get("width"), "height": p.get("height")}
            for r in user_records
            if r["provider_checkin_id"] in ids
            for p in r["photos"]
        ]
        photos_inserted += bulk_insert_checkin_photos(db, photo_rows)

    return BulkInsertResult(inserted=inserted, failed=failed, photos_inserted=photos_inserted)


# --- activities ---

def _validate_activity(row: Dict[str, Any]) -> None:
    if not row.get("provider_activity_id"):
        raise InvalidRecordError("activity without provider id")
    if row.get("start_time") is None:
        raise InvalidRecordError(f"activity {row.get('provider_activity_id')} has no start_time")


def bulk_insert_activities(db: Session, records: Sequence[Dict[str, Any]]) -> BulkInsertResult:
    rows = []
    for record in records:
        row = dict(record)
        row.setdefault("id", uuid.uuid4())
        row["is_private"] = bool(row.get("is_private"))
        rows.append(row)
    inserted, failed = _insert_with_fallback(db, Activity, rows, ACTIVITY_KEY, _validate_activity, "activity")
    return BulkInsertResult(inserted=inserted, failed=failed)


def lookup_activity_ids(db: Session, user_id: UUID, data_source: str, provider_ids: Iterable[str]) -> Dict[str, UUID]:
    provider_ids = [str(p) for p in provider_ids]
    if not provider_ids:
        return {}
    rows = (
        db.query(Activity.provider_activity_id, Activity.id)
        .filter(
            Activity.user_id == user_id,
            Activity.data_source == data_source,
            Activity.provider_activity_id.in_(provider_ids),
        )
        .all()
    )
    return {provider_id: activity_id for provider_id, activity_id in rows}


def bulk_insert_activity_photos(db: Session, rows: Sequence[Dict[str, Any]]) -> int:
    rows = [{"id": uuid.uuid4(), **row} for row in rows if row.get("url") and row.get("provider_photo_id")]
    if not rows:
        return 0
    try:
        with db.begin_nested():
            return insert_ignoring_duplicates(db, ActivityPhoto, rows, ACTIVITY_PHOTO_KEY)
    except SQLAlchemyError as exc:
        logger.warning("Activity photo insert failed for %d photos: %s", len(rows), exc)
        return 0


# --- daily metrics ---

def bulk_upsert_daily_metrics(db: Session, rows: Sequence[Dict[str, Any]]) -> int:
    """Insert or refresh per-day metrics; returns the number of rows written."""
    if not rows:
        return 0
    insert = _dialect_insert(db)
    now = datetime.now(timezone.utc)
    values = [{"id": uuid.uuid4(), **row, "updated_at": now} for row in rows]
    stmt = insert(DailyMetric).values(_uniform(values))
    present = [c for c in _DAILY_METRIC_VALUES if any(c in row for row in rows)]
    update_set = {c: getattr(stmt.excluded, c) for c in present}
    update_set["updated_at"] = stmt.excluded.updated_at
    stmt = stmt.on_conflict_do_update(index_elements=list(DAILY_METRIC_KEY), set_=update_set)
    result = db.execute(stmt)
    return max(result.rowcount or 0, 0)
