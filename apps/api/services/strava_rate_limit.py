"""
Strava read quota (app-wide).

Strava enforces 100 requests / 15 minutes and 1,000 / day per application.
Every Strava request made by a sync run goes through `StravaQuota.acquire`
first, which atomically checks and increments both windows in Redis. The
15-minute window is aligned to Strava's own quarter-hour boundaries and the
daily window to UTC midnight, so the computed retry time matches when
Strava actually resets.

When the budget is exhausted the caller gets a RATE_LIMIT ProviderError
carrying the window name and reset time; the worker defers the job instead
of sleeping. If Redis is unavailable the quota degrades to "allow" and
Strava's own 429 becomes the only signal.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from core.config import settings
from services.providers.base import ProviderError

logger = logging.getLogger(__name__)

SHORT_WINDOW_S = 15 * 60
DAILY_WINDOW_S = 24 * 60 * 60

_ACQUIRE_LUA = """
local short_key = KEYS[1]
local daily_key = KEYS[2]
local short_limit = tonumber(ARGV[1])
local daily_limit = tonumber(ARGV[2])
local short_ttl = tonumber(ARGV[3])
local daily_ttl = tonumber(ARGV[4])
local short = tonumber(redis.call("GET", short_key) or "0")
local daily = tonumber(redis.call("GET", daily_key) or "0")
if daily >= daily_limit then
    return 2
end
if short >= short_limit then
    return 1
end
redis.call("INCR", short_key)
if short == 0 then
    redis.call("EXPIRE", short_key, short_ttl)
end
redis.call("INCR", daily_key)
if daily == 0 then
    redis.call("EXPIRE", daily_key, daily_ttl)
end
return 0
"""


def next_short_window_reset(now: datetime) -> datetime:
    epoch = int(now.timestamp())
    return datetime.fromtimestamp((epoch // SHORT_WINDOW_S + 1) * SHORT_WINDOW_S, tz=timezone.utc)


def next_daily_reset(now: datetime) -> datetime:
    midnight = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + timedelta(days=1)


class StravaQuota:
    def __init__(
        self,
        redis_client=None,
        *,
        limit_15min: Optional[int] = None,
        limit_daily: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis_client
        self.limit_15min = limit_15min or settings.STRAVA_RATE_LIMIT_15MIN
        self.limit_daily = limit_daily or settings.STRAVA_RATE_LIMIT_DAILY
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _keys(self, now: datetime) -> Dict[str, str]:
        epoch = int(now.timestamp())
        return {
            "short": f"strava:quota:15min:{epoch // SHORT_WINDOW_S}",
            "daily": f"strava:quota:daily:{now.strftime('%Y%m%d')}",
        }

    def acquire(self) -> None:
        """Reserve one request or raise a RATE_LIMIT ProviderError."""
        if self.redis is None:
            return
        now = self._now()
        keys = self._keys(now)
        try:
            result = int(
                self.redis.eval(
                    _ACQUIRE_LUA,
                    2,
                    keys["short"],
                    keys["daily"],
                    str(self.limit_15min),
                    str(self.limit_daily),
                    str(SHORT_WINDOW_S + 300),
                    str(DAILY_WINDOW_S + 3600),
                )
            )
        except Exception as e:  # redis errors must not stop a sync; Strava's 429 still guards us
            logger.warning(f"Strava quota check unavailable, continuing without it: {e}")
            return

        if result == 2:
            raise ProviderError.rate_limited("strava", next_daily_reset(now), "daily")
        if result == 1:
            raise ProviderError.rate_limited("strava", next_short_window_reset(now), "15min")

    def error_from_response(self, response) -> ProviderError:
        """
        Build the RATE_LIMIT error for a Strava 429.

        X-RateLimit-Usage / X-RateLimit-Limit are "short,daily" pairs; when the
        daily pair is exhausted the reset is UTC midnight, else the next
        quarter hour.
        """
        now = self._now()
        usage = _parse_pair(response.headers.get("X-RateLimit-Usage"))
        limit = _parse_pair(response.headers.get("X-RateLimit-Limit"))
        if usage and limit and usage[1] >= limit[1]:
            return ProviderError.rate_limited("strava", next_daily_reset(now), "daily")
        return ProviderError.rate_limited("strava", next_short_window_reset(now), "15min")


def _parse_pair(raw: Optional[str]):
    if not raw:
        return None
    try:
        short, daily = (int(part.strip()) for part in raw.split(",")[:2])
    except ValueError:
        return None
    return short, daily
