"""
Strava app-wide quota: window arithmetic, Redis outcomes, 429 headers.
"""
import pytest
from datetime import datetime, timezone
from unittest.mock import MagicMock

from services.providers.base import ErrorKind, ProviderError
from services.strava_rate_limit import StravaQuota, next_daily_reset, next_short_window_reset
from tests.sync_helpers import http_response

NOW = datetime(2025, 1, 5, 10, 7, 30, tzinfo=timezone.utc)


def _quota(redis_client):
    return StravaQuota(redis_client, limit_15min=95, limit_daily=950, clock=lambda: NOW.timestamp())


def test_window_resets_align_to_quarter_hour_and_utc_midnight():
    assert next_short_window_reset(NOW) == datetime(2025, 1, 5, 10, 15, tzinfo=timezone.utc)
    assert next_daily_reset(NOW) == datetime(2025, 1, 6, tzinfo=timezone.utc)


def test_acquire_passes_limits_and_window_keys_to_redis():
    redis_client = MagicMock()
    redis_client.eval.return_value = 0

    _quota(redis_client).acquire()

    args = redis_client.eval.call_args.args
    assert args[1] == 2
    assert args[2].startswith("strava:quota:15min:")
    assert args[3] == "strava:quota:daily:20250105"
    assert args[4:6] == ("95", "950")


def test_short_window_exhausted_raises_rate_limit_until_next_quarter_hour():
    redis_client = MagicMock()
    redis_client.eval.return_value = 1

    with pytest.raises(ProviderError) as exc_info:
        _quota(redis_client).acquire()

    assert exc_info.value.kind is ErrorKind.RATE_LIMIT
    assert exc_info.value.window == "15min"
    assert exc_info.value.retry_after == datetime(2025, 1, 5, 10, 15, tzinfo=timezone.utc)


def test_daily_window_exhausted_raises_rate_limit_until_midnight():
    redis_client = MagicMock()
    redis_client.eval.return_value = 2

    with pytest.raises(ProviderError) as exc_info:
        _quota(redis_client).acquire()

    assert exc_info.value.window == "daily"
    assert exc_info.value.retry_after == datetime(2025, 1, 6, tzinfo=timezone.utc)


def test_without_redis_every_request_is_allowed():
    _quota(None).acquire()


def test_redis_errors_do_not_stop_the_sync():
    redis_client = MagicMock()
    redis_client.eval.side_effect = ConnectionError("redis down")

    _quota(redis_client).acquire()


def test_429_with_daily_usage_exhausted_waits_for_midnight():
    response = http_response(429, headers={"X-RateLimit-Usage": "40,1000", "X-RateLimit-Limit": "100,1000"})

    error = _quota(None).error_from_response(response)

    assert error.window == "daily"
    assert error.retry_after == datetime(2025, 1, 6, tzinfo=timezone.utc)


def test_429_without_usable_headers_waits_for_next_quarter_hour():
    response = http_response(429, headers={"X-RateLimit-Usage": "garbage"})

    error = _quota(None).error_from_response(response)

    assert error.window == "15min"
    assert error.retry_after == datetime(2025, 1, 5, 10, 15, tzinfo=timezone.utc)
