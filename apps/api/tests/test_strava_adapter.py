"""
Strava activity sync: detail enrichment, fallbacks, photos and cursors.
"""
import pytest
from datetime import datetime, timedelta, timezone

from models import Activity, ActivityPhoto
from services.providers.base import ErrorKind, ProviderCredentials, ProviderError
from services.providers.strava import StravaSyncAdapter, transform_activity
from tests.sync_helpers import RecordingProgress

FETCH_FROM = datetime(2024, 12, 25, tzinfo=timezone.utc)


def _summary(n, **extra):
    summary = {
        "id": 1000 + n,
        "name": f"Morning Run {n}",
        "sport_type": "Run",
        "start_date": f"2025-01-0{1 + n % 9}T07:00:00Z",
        "distance": 5000.0 + n,
        "elapsed_time": 1800,
        "moving_time": 1750,
        "start_latlng": [37.77, -122.42],
        "end_latlng": [],
        "map": {"summary_polyline": f"summary-{n}"},
        "total_photo_count": 0,
        "private": False,
    }
    summary.update(extra)
    return summary


def _detail(summary):
    detail = dict(summary)
    detail["calories"] = 412.0
    detail["map"] = {"polyline": f"full-{summary['id']}", "summary_polyline": summary["map"]["summary_polyline"]}
    return detail


class FakeStravaClient:
    def __init__(self, summaries, *, detail_errors=None, photos=None):
        self.summaries = {s.get("id"): s for s in summaries}
        self.ordered = list(summaries)
        self.detail_errors = detail_errors or {}
        self.photos = photos or {}
        self.list_calls = []

    def list_activities(self, *, after, before, page, per_page=200):
        self.list_calls.append({"after": after, "before": before, "page": page})
        start = (page - 1) * per_page
        return self.ordered[start:start + per_page]

    def get_activity(self, activity_id):
        if activity_id in self.detail_errors:
            raise self.detail_errors[activity_id]
        return _detail(self.summaries[activity_id])

    def get_activity_photos(self, activity_id):
        return self.photos.get(str(activity_id), [])


def _credentials():
    return ProviderCredentials(data_source="strava", access_token="strava-token")


def _adapter(db, fake, **kwargs):
    kwargs.setdefault("detail_concurrency", 2)
    return StravaSyncAdapter(db, client_factory=lambda credentials: fake, **kwargs)


def test_transform_activity_maps_types_and_prefers_full_polyline(test_user):
    record = transform_activity(_detail(_summary(1, sport_type="MountainBikeRide")), test_user.id)

    assert record["activity_type"] == "Mountain Biking"
    assert record["provider_activity_id"] == "1001"
    assert record["map_polyline"] == "full-1001"
    assert record["start_lat"] == 37.77
    assert record["end_lat"] is None
    assert record["start_time"] == datetime(2025, 1, 2, 7, tzinfo=timezone.utc)
    assert record["activity_url"] == "https://www.strava.com/activities/1001"


def test_unknown_sport_type_passes_through(test_user):
    record = transform_activity(_summary(1, sport_type="Pickleball"), test_user.id)
    assert record["activity_type"] == "Pickleball"


def test_enriches_each_activity_with_detail(db_session, test_user):
    fake = FakeStravaClient([_summary(n) for n in range(3)])

    result = _adapter(db_session, fake).sync_from(_credentials(), test_user.id, FETCH_FROM, RecordingProgress())

    assert result.fetched == 3
    assert result.imported == 3
    stored = db_session.query(Activity).order_by(Activity.provider_activity_id).all()
    assert [a.calories for a in stored] == [412.0, 412.0, 412.0]
    assert stored[0].map_polyline == "full-1000"
    assert fake.list_calls[0]["after"] == int(FETCH_FROM.timestamp())


def test_transient_detail_failure_falls_back_to_summary(db_session, test_user):
    fake = FakeStravaClient(
        [_summary(n) for n in range(3)],
        detail_errors={1001: ProviderError(ErrorKind.TRANSIENT, "strava server error (502)", provider="strava")},
    )

    result = _adapter(db_session, fake).sync_from(_credentials(), test_user.id, FETCH_FROM, RecordingProgress())

    assert result.imported == 3
    fallback = db_session.query(Activity).filter(Activity.provider_activity_id == "1001").one()
    assert fallback.calories is None
    assert fallback.map_polyline == "summary-1"


def test_summary_without_id_or_with_bad_start_date_is_skipped(db_session, test_user):
    no_id = _summary(2)
    del no_id["id"]
    fake = FakeStravaClient([_summary(0), _summary(1, start_date="garbage"), no_id, _summary(3)])

    result = _adapter(db_session, fake).sync_from(_credentials(), test_user.id, FETCH_FROM, RecordingProgress())

    assert result.fetched == 4
    assert result.imported == 2
    assert result.failed == 2
    assert {a.provider_activity_id for a in db_session.query(Activity).all()} == {"1000", "1003"}


def test_rate_limit_during_detail_fetch_stops_the_run(db_session, test_user):
    retry_after = datetime(2025, 1, 5, 12, 15, tzinfo=timezone.utc)
    fake = FakeStravaClient(
        [_summary(n) for n in range(3)],
        detail_errors={1001: ProviderError.rate_limited("strava", retry_after, "15min")},
    )

    with pytest.raises(ProviderError) as exc_info:
        _adapter(db_session, fake).sync_from(_credentials(), test_user.id, FETCH_FROM, RecordingProgress())

    assert exc_info.value.kind is ErrorKind.RATE_LIMIT
    assert exc_info.value.retry_after == retry_after


def test_stores_in_sub_batches_and_saves_cursor_after_each(db_session, test_user):
    fake = FakeStravaClient([_summary(n) for n in range(5)])
    progress = RecordingProgress()

    _adapter(db_session, fake, insert_batch_size=2).sync_from(_credentials(), test_user.id, FETCH_FROM, progress)

    assert [c["activities_imported"] for c in progress.cursors] == [2, 4, 5, 5]
    assert [c["page"] for c in progress.cursors] == [1, 1, 1, 2]
    before = progress.cursors[0]["before"]
    assert all(c["before"] == before and c["after"] == int(FETCH_FROM.timestamp()) for c in progress.cursors)


def test_resumes_with_cursor_window_and_page(db_session, test_user):
    fake = FakeStravaClient([_summary(n) for n in range(3)])
    cursor = {"after": 1700000000, "before": 1736000000, "page": 2, "activities_imported": 200, "photos_imported": 4}
    progress = RecordingProgress()

    result = _adapter(db_session, fake).sync_from(
        _credentials(), test_user.id, FETCH_FROM, progress, cursor=cursor
    )

    assert fake.list_calls == [{"after": 1700000000, "before": 1736000000, "page": 2}]
    assert result.fetched == 0
    assert progress.cursors == []


def test_photos_are_stored_for_activities_that_have_them(db_session, test_user):
    photos = {
        "1001": [
            {
                "unique_id": "ph-1",
                "urls": {"600": "https://dgtzuqphqg23d.cloudfront.net/ph-1-600.jpg"},
                "sizes": {"600": [600, 450]},
                "caption": "summit",
                "created_at": "2025-01-02T08:00:00Z",
            },
            {"unique_id": "ph-2", "urls": {"600": "https://dgtzuqphqg23d.cloudfront.net/ph-2-600.jpg"}},
        ]
    }
    summaries = [_summary(0), _summary(1, total_photo_count=2)]
    fake = FakeStravaClient(summaries, photos=photos)

    result = _adapter(db_session, fake).sync_from(_credentials(), test_user.id, FETCH_FROM, RecordingProgress())

    assert result.imported == 2
    assert result.secondary_imported == 2
    assert result.to_dict()["photos_imported"] == 2
    assert result.total_imported == 4
    stored = db_session.query(ActivityPhoto).filter(ActivityPhoto.provider_photo_id == "ph-1").one()
    assert stored.caption == "summit"
    assert (stored.width, stored.height) == (600, 450)


def test_photo_fetch_can_be_disabled(db_session, test_user):
    fake = FakeStravaClient([_summary(1, total_photo_count=2)], photos={"1001": [{"unique_id": "x", "urls": {"600": "u"}}]})

    result = _adapter(db_session, fake, fetch_photos=False).sync_from(
        _credentials(), test_user.id, FETCH_FROM - timedelta(days=1), RecordingProgress()
    )

    assert result.secondary_imported == 0
    assert db_session.query(ActivityPhoto).count() == 0
