"""
Foursquare / Swarm check-in sync.

Offset pagination over /users/self/checkins, 100 per page, oldest first,
with a 200 ms pause between pages (the API allows 500 requests/hour).
Each page is stored as soon as it arrives. The cursor is the next offset
together with the afterTimestamp the run started with, so a resumed run
walks the same result set.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import UUID

import requests

from core.config import settings
from services.bulk_upsert import bulk_insert_checkins
from services.providers.base import (
    ProviderCredentials,
    ProviderError,
    ProviderHttpClient,
    SyncAdapter,
    SyncResult,
    retry_after_from_headers,
)
from services.sync_progress import ProgressObserver, ProgressUpdate

logger = logging.getLogger(__name__)

PAGE_SIZE = 100
PAGE_DELAY_S = 0.2


class FoursquareClient(ProviderHttpClient):
    provider = "foursquare"

    def __init__(self, credentials: ProviderCredentials, **kwargs):
        super().__init__(settings.FOURSQUARE_API_BASE, credentials, **kwargs)

    def auth_params(self) -> Dict[str, Any]:
        return {"oauth_token": self.credentials.access_token, "v": settings.FOURSQUARE_API_VERSION}

    def rate_limit_error(self, response: requests.Response) -> ProviderError:
        return ProviderError.rate_limited(self.provider, retry_after_from_headers(response, 3600), "hourly")

    def checkins_page(self, *, offset: int, limit: int = PAGE_SIZE, after_timestamp: Optional[int] = None) -> Tuple[List[Dict], Optional[int]]:
        params: Dict[str, Any] = {"limit": limit, "offset": offset, "sort": "oldestfirst"}
        if after_timestamp:
            params["afterTimestamp"] = int(after_timestamp)
        payload = self.get_json("users/self/checkins", params)
        checkins = (payload.get("response") or {}).get("checkins") or {}
        return checkins.get("items") or [], checkins.get("count")


def _parse_epoch(value: Any) -> Optional[datetime]:
    # An unparseable timestamp leaves checkin_date empty and the row is rejected on insert.
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        logger.warning("Unparseable Foursquare createdAt: %r", value)
        return None


def transform_checkin(checkin: Dict[str, Any], user_id: UUID) -> Dict[str, Any]:
    venue = checkin.get("venue") or {}
    location = venue.get("location") or {}
    categories = venue.get("categories") or []
    created_at = checkin.get("createdAt")

    photos = [
        {
            "url": f"{photo.get('prefix')}original{photo.get('suffix')}",
            "width": photo.get("width"),
            "height": photo.get("height"),
        }
        for photo in ((checkin.get("photos") or {}).get("items") or [])
        if photo.get("prefix") and photo.get("suffix")
    ]

    return {
        "user_id": user_id,
        "provider_checkin_id": checkin.get("id"),
        "venue_id": venue.get("id"),
        "venue_name": venue.get("name"),
        "venue_category": categories[0].get("name") if categories else None,
        "latitude": location.get("lat"),
        "longitude": location.get("lng"),
        "city": location.get("city"),
        "country": location.get("country"),
        "checkin_date": _parse_epoch(created_at),
        "photos": photos,
    }


class FoursquareSyncAdapter(SyncAdapter):
    data_source = "foursquare"

    def __init__(
        self,
        db,
        *,
        client_factory: Optional[Callable[[ProviderCredentials], FoursquareClient]] = None,
        page_delay_s: float = PAGE_DELAY_S,
        sleep: Callable[[float], None] = time.sleep,
        lookback: Optional[timedelta] = None,
        max_records: Optional[int] = None,
    ):
        super().__init__(db, lookback=lookback, max_records=max_records)
        self.client_factory = client_factory or (lambda credentials: FoursquareClient(credentials))
        self.page_delay_s = page_delay_s
        self._sleep = sleep

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
        after_ts = int(fetch_from.timestamp())
        offset = 0
        if cursor and cursor.get("after") is not None:
            after_ts = int(cursor["after"])
            offset = int(cursor.get("offset") or 0)
            logger.info("Resuming Foursquare sync for user %s at offset %s", user_id, offset)

        result = SyncResult(secondary_label="photos_imported")
        batch = offset // PAGE_SIZE
        pages = 0

        while True:
            if pages > 0:
                self._sleep(self.page_delay_s)
            items, total = client.checkins_page(offset=offset, after_timestamp=after_ts)
            pages += 1
            batch += 1

            records = [transform_checkin(item, user_id) for item in items]
            stored = bulk_insert_checkins(self.db, records)
            result.fetched += len(items)
            result.imported += stored.inserted
            result.failed += stored.failed
            result.secondary_imported += stored.photos_inserted
            offset += len(items)

            progress.on_cursor({"offset": offset, "after": after_ts})
            progress.on_progress(
                ProgressUpdate(fetched=result.fetched, imported=result.total_imported, batch=batch, total_expected=total)
            )

            if len(items) < PAGE_SIZE:
                break
            if total is not None and offset >= total:
                break
            if result.fetched >= self.max_records:
                logger.warning("Foursquare sync for user %s hit the %s record cap", user_id, self.max_records)
                break

        logger.info(
            "Foursquare sync for user %s: fetched=%s imported=%s photos=%s failed=%s",
            user_id, result.fetched, result.imported, result.secondary_imported, result.failed,
        )
        return result
