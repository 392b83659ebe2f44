"""
Strava activity sync.

- Lists /athlete/activities between fixed `after` / `before` bounds, 200 per
  page, until an empty or short page or the record cap.
- The list endpoint omits calories and the full-resolution track, so each
  activity is enriched from /activities/{id} through a bounded thread pool
  (STRAVA_DETAIL_CONCURRENCY, default 10). A failed detail fetch falls back
  to the summary. Rate-limit and auth errors still stop the run.
- Enriched activities are stored every 50 records; each stored sub-batch
  commits together with the cursor.
- Photos are pulled for stored activities that report any.

Every request passes through StravaQuota first.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

import requests

from core.config import settings
from services.bulk_upsert import bulk_insert_activities, bulk_insert_activity_photos, lookup_activity_ids
from services.providers.base import (
    ErrorKind,
    ProviderCredentials,
    ProviderError,
    ProviderHttpClient,
    SyncAdapter,
    SyncResult,
)
from services.strava_rate_limit import StravaQuota
from services.sync_progress import ProgressObserver, ProgressUpdate

logger = logging.getLogger(__name__)

PAGE_SIZE = 200
INSERT_BATCH_SIZE = 50
PHOTO_SIZE = 600

ACTIVITY_TYPE_MAP = {
    "Run": "Running",
    "TrailRun": "Trail Running",
    "VirtualRun": "Running",
    "Ride": "Cycling",
    "VirtualRide": "Cycling",
    "MountainBikeRide": "Mountain Biking",
    "GravelRide": "Cycling",
    "EBikeRide": "E-Biking",
    "Swim": "Swimming",
    "Walk": "Walking",
    "Hike": "Hiking",
    "AlpineSki": "Skiing",
    "BackcountrySki": "Skiing",
    "NordicSki": "Skiing",
    "Snowboard": "Snowboarding",
    "IceSkate": "Ice Skating",
    "InlineSkate": "Inline Skating",
    "Workout": "Gym",
    "WeightTraining": "Strength",
    "Yoga": "Yoga",
    "Elliptical": "Elliptical",
    "StairStepper": "Stair Stepper",
    "Rowing": "Rowing",
    "RockClimbing": "Rock Climbing",
    "Canoeing": "Canoeing",
    "Kayaking": "Kayaking",
    "Surfing": "Surfing",
    "Snowshoe": "Snowshoeing",
    "Soccer": "Soccer",
    "Golf": "Golf",
    "Tennis": "Tennis",
}


class StravaClient(ProviderHttpClient):
    provider = "strava"

    def __init__(self, credentials: ProviderCredentials, *, quota: Optional[StravaQuota] = None, **kwargs):
        super().__init__(settings.STRAVA_API_BASE, credentials, **kwargs)
        self.quota = quota

    def auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.credentials.access_token}"}

    def before_request(self, path: str) -> None:
        if self.quota is not None:
            self.quota.acquire()

    def rate_limit_error(self, response: requests.Response) -> ProviderError:
        if self.quota is not None:
            return self.quota.error_from_response(response)
        return super().rate_limit_error(response)

    def list_activities(self, *, after: int, before: int, page: int, per_page: int = PAGE_SIZE) -> List[Dict]:
        return self.get_json(
            "athlete/activities",
            {"after": int(after), "before": int(before), "page": int(page), "per_page": int(per_page)},
        ) or []

    def get_activity(self, activity_id) -> Dict:
        return self.get_json(f"activities/{activity_id}")

    def get_activity_photos(self, activity_id, size: int = PHOTO_SIZE) -> List[Dict]:
        return self.get_json(f"activities/{activity_id}/photos", {"size": size, "photo_sources": "true"}) or []


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable Strava timestamp: %r", value)
        return None


def _latlng(pair) -> tuple:
    if pair and len(pair) == 2:
        return pair[0], pair[1]
    return None, None


def transform_activity(activity: Dict[str, Any], user_id: UUID) -> Dict[str, Any]:
    start_lat, start_lng = _latlng(activity.get("start_latlng"))
    end_lat, end_lng = _latlng(activity.get("end_latlng"))
    strava_type = activity.get("sport_type") or activity.get("type")
    track = activity.get("map") or {}

    return {
        "user_id": user_id,
        "data_source": "strava",
        "provider_activity_id": str(activity.get("id")) if activity.get("id") is not None else None,
        "activity_type": ACTIVITY_TYPE_MAP.get(strava_type, strava_type),
        "name": activity.get("name"),
        "start_time": _parse_time(activity.get("start_date")),
        "start_lat": start_lat,
        "start_lng": start_lng,
        "end_lat": end_lat,
        "end_lng": end_lng,
        "duration_seconds": activity.get("elapsed_time"),
        "moving_time_seconds": activity.get("moving_time"),
        "distance_meters": activity.get("distance"),
        "elevation_gain_meters": activity.get("total_elevation_gain"),
        "calories": activity.get("calories"),
        "avg_speed": activity.get("average_speed"),
        "max_speed": activity.get("max_speed"),
        "avg_heart_rate": activity.get("average_heartrate"),
        "max_heart_rate": activity.get("max_heartrate"),
        "avg_cadence": activity.get("average_cadence"),
        "avg_watts": activity.get("average_watts"),
        "map_polyline": track.get("polyline") or track.get("summary_polyline"),
        "is_private": bool(activity.get("private")),
        "kudos_count": activity.get("kudos_count"),
        "comment_count": activity.get("comment_count"),
        "photo_count": activity.get("total_photo_count"),
        "activity_url": f"https://www.strava.com/activities/{activity.get('id')}",
    }


def transform_photo(photo: Dict[str, Any], activity_id: UUID) -> Dict[str, Any]:
    urls = photo.get("urls") or {}
    sizes = (photo.get("sizes") or {}).get(str(PHOTO_SIZE)) or [None, None]
    url = urls.get(str(PHOTO_SIZE)) or next(iter(urls.values()), None)
    return {
        "activity_id": activity_id,
        "provider_photo_id": str(photo.get("unique_id") or photo.get("id") or ""),
        "url": url,
        "caption": photo.get("caption"),
        "width": sizes[0] if len(sizes) > 0 else None,
        "height": sizes[1] if len(sizes) > 1 else None,
        "taken_at": _parse_time(photo.get("created_at")),
    }


class StravaSyncAdapter(SyncAdapter):
    data_source = "strava"

    def __init__(
        self,
        db,
        *,
        client_factory: Optional[Callable[[ProviderCredentials], StravaClient]] = None,
        detail_concurrency: Optional[int] = None,
        insert_batch_size: int = INSERT_BATCH_SIZE,
        fetch_photos: bool = True,
        lookback: Optional[timedelta] = None,
        max_records: Optional[int] = None,
    ):
        super().__init__(db, lookback=lookback, max_records=max_records)
        self.client_factory = client_factory or (lambda credentials: StravaClient(credentials))
        self.detail_concurrency = detail_concurrency or settings.STRAVA_DETAIL_CONCURRENCY
        self.insert_batch_size = insert_batch_size
        self.fetch_photos = fetch_photos

    def sync_from(
        self,
        credentials: ProviderCredentials,
        user_id: UUID,
        fetch_from: datetime,
        progress: ProgressObserver,
        *,
        cursor: Optional[Dict[str, Any]] = None,
    ) -> SyncResult:
        client = self.client_factory(credentials)
        after = int(fetch_from.timestamp())
        before = int(datetime.now(timezone.utc).timestamp())
        page = 1
        carried_activities = 0
        carried_photos = 0
        if cursor and cursor.get("before"):
            after = int(cursor.get("after", after))
            before = int(cursor["before"])
            page = int(cursor.get("page") or 1)
            carried_activities = int(cursor.get("activities_imported") or 0)
            carried_photos = int(cursor.get("photos_imported") or 0)
            logger.info("Resuming Strava sync for user %s at page %s (before=%s)", user_id, page, before)

        result = SyncResult(secondary_label="photos_imported")
        buffer: List[Dict[str, Any]] = []

        def store(current_page: int) -> None:
            if not buffer:
                return
            self._store(client, user_id, buffer, result)
            buffer.clear()
            progress.on_cursor({
                "after": after,
                "before": before,
                "page": current_page,
                "activities_imported": carried_activities + result.imported,
                "photos_imported": carried_photos + result.secondary_imported,
            })

        with ThreadPoolExecutor(max_workers=self.detail_concurrency) as pool:
            while True:
                summaries = client.list_activities(after=after, before=before, page=page, per_page=PAGE_SIZE)
                if not summaries:
                    break
                result.fetched += len(summaries)

                for start in range(0, len(summaries), self.detail_concurrency):
                    group = summaries[start:start + self.detail_concurrency]
                    details = list(pool.map(lambda summary: self._detail_or_summary(client, summary), group))
                    buffer.extend(details)
                    if len(buffer) >= self.insert_batch_size:
                        store(page)

                store(page)
                progress.on_cursor({
                    "after": after,
                    "before": before,
                    "page": page + 1,
                    "activities_imported": carried_activities + result.imported,
                    "photos_imported": carried_photos + result.secondary_imported,
                })
                progress.on_progress(ProgressUpdate(fetched=result.fetched, imported=result.total_imported, batch=page))

                if len(summaries) < PAGE_SIZE:
                    break
                if result.fetched >= self.max_records:
                    logger.warning("Strava sync for user %s hit the %s record cap", user_id, self.max_records)
                    break
                page += 1

        logger.info(
            "Strava sync for user %s: fetched=%s imported=%s photos=%s failed=%s",
            user_id, result.fetched, result.imported, result.secondary_imported, result.failed,
        )
        return result

    def _detail_or_summary(self, client: StravaClient, summary: Dict[str, Any]) -> Dict[str, Any]:
        try:
            activity_id = summary.get("id")
            if activity_id is None:
                return summary
            return client.get_activity(activity_id)
        except ProviderError as exc:
            if exc.kind in (ErrorKind.RATE_LIMIT, ErrorKind.AUTH):
                raise
            logger.warning("Strava detail fetch failed for activity %s, using summary: %s", summary.get("id"), exc)
            return summary

    def _store(self, client: StravaClient, user_id: UUID, activities: List[Dict[str, Any]], result: SyncResult) -> None:
        records = [transform_activity(a, user_id) for a in activities]
        stored = bulk_insert_activities(self.db, records)
        result.imported += stored.inserted
        result.failed += stored.failed
        if self.fetch_photos:
            result.secondary_imported += self._store_photos(client, user_id, records)

    def _store_photos(self, client: StravaClient, user_id: UUID, records: List[Dict[str, Any]]) -> int:
        with_photos = [r for r in records if (r.get("photo_count") or 0) > 0 and r.get("provider_activity_id")]
        if not with_photos:
            return 0
        ids = lookup_activity_ids(self.db, user_id, "strava", [r["provider_activity_id"] for r in with_photos])
        inserted = 0
        for record in with_photos:
            activity_id = ids.get(record["provider_activity_id"])
            if activity_id is None:
                continue
            try:
                photos = client.get_activity_photos(record["provider_activity_id"])
            except ProviderError as exc:
                if exc.kind in (ErrorKind.RATE_LIMIT, ErrorKind.AUTH):
                    raise
                logger.warning("Strava photo fetch failed for activity %s: %s", record["provider_activity_id"], exc)
                continue
            inserted += bulk_insert_activity_photos(self.db, [transform_photo(p, activity_id) for p in photos])
        return inserted
