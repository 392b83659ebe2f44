"""
Garmin Connect sync (python-garminconnect).

Two phases per run:

1. Activities: `get_activities(start, 50)` offset pages, newest first; stop
   once a page reaches activities older than the fetch-from date, on a short
   page, or at the record cap. Each page is stored on arrival.
2. Daily metrics: steps and resting heart rate (`get_stats`) and sleep
   (`get_sleep_data`) for every day from fetch-from to today, upserted into
   daily_metrics every 7 days.

The cursor records the phase and position, so a resumed run skips finished
activity pages or days.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from garminconnect import (
    Garmin,
    GarminConnectAuthenticationError,
    GarminConnectConnectionError,
    GarminConnectTooManyRequestsError,
)

from services.bulk_upsert import bulk_insert_activities, bulk_upsert_daily_metrics
from services.providers.base import (
    REAUTH_MESSAGE,
    ErrorKind,
    ProviderCredentials,
    ProviderError,
    SyncAdapter,
    SyncResult,
)
from services.sync_progress import ProgressObserver, ProgressUpdate

logger = logging.getLogger(__name__)

PAGE_SIZE = 50
METRICS_FLUSH_DAYS = 7
RATE_LIMIT_BACKOFF = timedelta(hours=1)


class GarminClient:
    """
    Wraps garminconnect.Garmin with error classification and one re-login.

    A stored session dump is tried first. When Garmin rejects it (or there is
    none) the client logs in with the stored password, and `session_saver`
    persists the fresh session for the next run.
    """

    def __init__(
        self,
        credentials: ProviderCredentials,
        *,
        refresher: Optional[Callable[[ProviderCredentials], ProviderCredentials]] = None,
        session_saver: Optional[Callable[[ProviderCredentials], None]] = None,
        api_factory: Optional[Callable[[Optional[str], Optional[str]], Any]] = None,
    ):
        self.credentials = credentials
        self.refresher = refresher
        self.session_saver = session_saver
        self._api_factory = api_factory or (lambda email, password: Garmin(email, password))
        self._api = None
        self._relogged = False

    def _login(self, use_session: bool = True) -> Any:
        extra = self.credentials.extra
        api = self._api_factory(extra.get("username"), extra.get("password"))
        session = extra.get("session") if use_session else None
        try:
            if session:
                api.login(session)
            else:
                api.login()
        except GarminConnectAuthenticationError as exc:
            raise ProviderError(ErrorKind.AUTH, f"Garmin login failed: {exc}", provider="garmin") from exc
        except GarminConnectTooManyRequestsError as exc:
            raise ProviderError.rate_limited("garmin", datetime.now(timezone.utc) + RATE_LIMIT_BACKOFF, "login") from exc
        except GarminConnectConnectionError as exc:
            raise ProviderError(ErrorKind.TRANSIENT, f"Garmin connection error: {exc}", provider="garmin") from exc
        if not session:
            self._save_session(api)
        return api

    def _save_session(self, api: Any) -> None:
        dumps = getattr(getattr(api, "garth", None), "dumps", None)
        if not callable(dumps) or self.session_saver is None:
            return
        self.credentials.extra["session"] = dumps()
        self.session_saver(self.credentials)

    def _relogin(self) -> None:
        if self._relogged or not self.credentials.extra.get("password"):
            raise ProviderError(ErrorKind.AUTH, REAUTH_MESSAGE, provider="garmin")
        self._relogged = True
        try:
            if self.refresher is not None:
                self.credentials = self.refresher(self.credentials)
            self._api = self._login(use_session=False)
        except ProviderError as exc:
            if exc.kind in (ErrorKind.RATE_LIMIT, ErrorKind.TRANSIENT):
                raise
            raise ProviderError(ErrorKind.AUTH, REAUTH_MESSAGE, provider="garmin") from exc
        logger.info("Re-authenticated Garmin session for %s", self.credentials.extra.get("username"))

    def call(self, method: str, *args) -> Any:
        if self._api is None:
            try:
                self._api = self._login(use_session=True)
            except ProviderError as exc:
                if exc.kind is not ErrorKind.AUTH or not self.credentials.extra.get("session"):
                    raise
                self._relogin()
        for attempt in range(2):
            try:
                return getattr(self._api, method)(*args)
            except GarminConnectAuthenticationError:
                if attempt == 1:
                    raise ProviderError(ErrorKind.AUTH, REAUTH_MESSAGE, provider="garmin")
                self._relogin()
            except GarminConnectTooManyRequestsError as exc:
                raise ProviderError.rate_limited("garmin", datetime.now(timezone.utc) + RATE_LIMIT_BACKOFF, "hourly") from exc
            except GarminConnectConnectionError as exc:
                raise ProviderError(ErrorKind.TRANSIENT, f"Garmin connection error: {exc}", provider="garmin") from exc
        raise ProviderError(ErrorKind.AUTH, REAUTH_MESSAGE, provider="garmin")

    def activities_page(self, start: int, limit: int = PAGE_SIZE) -> List[Dict]:
        return self.call("get_activities", start, limit) or []

    def daily_stats(self, day: date) -> Dict:
        return self.call("get_stats", day.isoformat()) or {}

    def sleep_data(self, day: date) -> Dict:
        return self.call("get_sleep_data", day.isoformat()) or {}


def _parse_gmt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(str(value), "%Y-%m-%d %H:%M:%S").replace(tzinfo=timezone.utc)
    except ValueError:
        logger.warning("Unparseable Garmin startTimeGMT: %r", value)
        return None


def _seconds(value: Any) -> Optional[int]:
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def transform_activity(activity: Dict[str, Any], user_id: UUID) -> Dict[str, Any]:
    activity_id = activity.get("activityId")
    type_key = (activity.get("activityType") or {}).get("typeKey")
    privacy = (activity.get("privacy") or {}).get("typeKey")
    duration = activity.get("duration")
    moving = activity.get("movingDuration")
    return {
        "user_id": user_id,
        "data_source": "garmin",
        "provider_activity_id": str(activity_id) if activity_id is not None else None,
        "activity_type": type_key.replace("_", " ").title() if type_key else None,
        "name": activity.get("activityName"),
        "start_time": _parse_gmt(activity.get("startTimeGMT")),
        "start_lat": activity.get("startLatitude"),
        "start_lng": activity.get("startLongitude"),
        "end_lat": activity.get("endLatitude"),
        "end_lng": activity.get("endLongitude"),
        "duration_seconds": _seconds(duration),
        "moving_time_seconds": _seconds(moving),
        "distance_meters": activity.get("distance"),
        "elevation_gain_meters": activity.get("elevationGain"),
        "calories": activity.get("calories"),
        "avg_speed": activity.get("averageSpeed"),
        "max_speed": activity.get("maxSpeed"),
        "avg_heart_rate": activity.get("averageHR"),
        "max_heart_rate": activity.get("maxHR"),
        "avg_cadence": activity.get("averageRunningCadenceInStepsPerMinute") or activity.get("averageBikingCadenceInRevPerMinute"),
        "avg_watts": activity.get("avgPower"),
        "map_polyline": None,
        "is_private": privacy == "private",
        "kudos_count": None,
        "comment_count": None,
        "photo_count": None,
        "activity_url": f"https://connect.garmin.com/modern/activity/{activity_id}",
    }


def transform_daily_metrics(user_id: UUID, day: date, stats: Dict[str, Any], sleep: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    row: Dict[str, Any] = {}
    if stats.get("totalSteps") is not None:
        row["step_count"] = stats["totalSteps"]
    if stats.get("restingHeartRate") is not None:
        row["resting_heart_rate"] = stats["restingHeartRate"]
    dto = (sleep or {}).get("dailySleepDTO") or {}
    if dto.get("sleepTimeSeconds"):
        row.update({
            "sleep_duration_seconds": dto.get("sleepTimeSeconds"),
            "sleep_score": (((dto.get("sleepScores") or {}).get("overall")) or {}).get("value"),
            "deep_sleep_seconds": dto.get("deepSleepSeconds"),
            "light_sleep_seconds": dto.get("lightSleepSeconds"),
            "rem_sleep_seconds": dto.get("remSleepSeconds"),
            "awake_seconds": dto.get("awakeSleepSeconds"),
        })
    if not row:
        return None
    return {"user_id": user_id, "data_source": "garmin", "metric_date": day, **row}


class GarminSyncAdapter(SyncAdapter):
    data_source = "garmin"

    def __init__(
        self,
        db,
        *,
        client_factory: Optional[Callable[[ProviderCredentials], GarminClient]] = None,
        today: Optional[Callable[[], date]] = None,
        lookback: Optional[timedelta] = None,
        max_records: Optional[int] = None,
    ):
        super().__init__(db, lookback=lookback, max_records=max_records)
        self.client_factory = client_factory or (lambda credentials: GarminClient(credentials))
        self._today = today or (lambda: datetime.now(timezone.utc).date())

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
        cursor = dict(cursor or {})
        if cursor.get("fetch_from"):
            fetch_from = datetime.fromisoformat(cursor["fetch_from"])
        base_cursor = {"fetch_from": fetch_from.isoformat()}

        result = SyncResult(secondary_label="daily_metrics_imported")
        if cursor.get("phase") != "metrics":
            self._sync_activities(client, user_id, fetch_from, progress, result, base_cursor, int(cursor.get("start") or 0))
            metrics_from = fetch_from.date()
        else:
            metrics_from = date.fromisoformat(cursor["next_date"])
        self._sync_daily_metrics(client, user_id, metrics_from, progress, result, base_cursor)

        logger.info(
            "Garmin sync for user %s: activities fetched=%s imported=%s daily_metrics=%s failed=%s",
            user_id, result.fetched, result.imported, result.secondary_imported, result.failed,
        )
        return result

    def _sync_activities(self, client, user_id, fetch_from, progress, result, base_cursor, start) -> None:
        batch = start // PAGE_SIZE
        while True:
            page = client.activities_page(start, PAGE_SIZE)
            batch += 1
            in_range = []
            reached_older = False
            for activity in page:
                started = _parse_gmt(activity.get("startTimeGMT"))
                if started is not None and started < fetch_from:
                    reached_older = True
                    break
                in_range.append(activity)

            result.fetched += len(in_range)
            stored = bulk_insert_activities(self.db, [transform_activity(a, user_id) for a in in_range])
            result.imported += stored.inserted
            result.failed += stored.failed
            start += len(page)

            progress.on_cursor({**base_cursor, "phase": "activities", "start": start})
            progress.on_progress(ProgressUpdate(fetched=result.fetched, imported=result.total_imported, batch=batch))

            if reached_older or len(page) < PAGE_SIZE:
                return
            if result.fetched >= self.max_records:
                logger.warning("Garmin sync for user %s hit the %s record cap", user_id, self.max_records)
                return

    def _sync_daily_metrics(self, client, user_id, metrics_from: date, progress, result, base_cursor) -> None:
        today = self._today()
        day = metrics_from
        rows: List[Dict[str, Any]] = []
        days_done = 0
        while day <= today:
            stats = self._metric_or_empty(client.daily_stats, day)
            sleep = self._metric_or_empty(client.sleep_data, day)
            row = transform_daily_metrics(user_id, day, stats, sleep)
            if row:
                rows.append(row)
            day += timedelta(days=1)
            days_done += 1
            if days_done % METRICS_FLUSH_DAYS == 0 or day > today:
                result.secondary_imported += bulk_upsert_daily_metrics(self.db, rows)
                rows = []
                progress.on_cursor({**base_cursor, "phase": "metrics", "next_date": day.isoformat()})
                progress.on_progress(ProgressUpdate(fetched=result.fetched, imported=result.total_imported, batch=days_done))

    def _metric_or_empty(self, fetch: Callable[[date], Dict], day: date) -> Dict:
        try:
            return fetch(day)
        except ProviderError as exc:
            if exc.kind in (ErrorKind.RATE_LIMIT, ErrorKind.AUTH):
                raise
            logger.warning("Garmin daily metric fetch failed for %s: %s", day, exc)
            return {}
