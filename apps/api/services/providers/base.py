"""
Shared pieces for provider sync adapters.

- `ErrorKind` / `ProviderError`: the one error type adapters raise. The
  worker dispatches on `kind`, never on message text.
- `ProviderHttpClient`: requests-based client that classifies responses and
  performs the single refresh-and-retry on 401.
- `SyncAdapter` / `SyncResult`: the incremental vs full-historical contract.
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional
from uuid import UUID

import requests
from sqlalchemy.orm import Session

from core.config import settings
from services.sync_progress import ProgressObserver

logger = logging.getLogger(__name__)

REAUTH_MESSAGE = "OAuth token expired and refresh failed. Please re-authenticate."


class ErrorKind(enum.Enum):
    TRANSIENT = "transient"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    FATAL = "fatal"


class ProviderError(RuntimeError):
    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        provider: Optional[str] = None,
        retry_after: Optional[datetime] = None,
        window: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.provider = provider
        self.retry_after = retry_after
        self.window = window
        self.status_code = status_code

    @classmethod
    def rate_limited(cls, provider: str, retry_after: datetime, window: str, message: Optional[str] = None) -> "ProviderError":
        return cls(
            ErrorKind.RATE_LIMIT,
            message or f"{provider} rate limit reached ({window} window)",
            provider=provider,
            retry_after=retry_after,
            window=window,
            status_code=429,
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def retry_after_from_headers(response: requests.Response, default_s: int) -> datetime:
    raw = response.headers.get("Retry-After")
    try:
        seconds = int(raw) if raw is not None else default_s
    except ValueError:
        seconds = default_s
    return _utcnow() + timedelta(seconds=max(0, seconds))


def classify_response(response: requests.Response, provider: str, *, default_retry_s: int = 900) -> Optional[ProviderError]:
    """Map a provider HTTP response to a ProviderError, or None when it is a success."""
    status = response.status_code
    if status < 400:
        return None
    if status == 429:
        return ProviderError.rate_limited(provider, retry_after_from_headers(response, default_retry_s), "provider")
    if status == 401:
        return ProviderError(ErrorKind.AUTH, f"{provider} rejected the access token (401)", provider=provider, status_code=status)
    if status >= 500:
        return ProviderError(ErrorKind.TRANSIENT, f"{provider} server error ({status})", provider=provider, status_code=status)
    return ProviderError(ErrorKind.FATAL, f"{provider} request failed ({status}): {response.text[:200]}", provider=provider, status_code=status)


def classify_exception(exc: requests.RequestException, provider: str) -> ProviderError:
    if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
        return ProviderError(ErrorKind.TRANSIENT, f"{provider} request failed: {exc}", provider=provider)
    response = getattr(exc, "response", None)
    if response is not None:
        classified = classify_response(response, provider)
        if classified is not None:
            return classified
    return ProviderError(ErrorKind.TRANSIENT, f"{provider} request failed: {exc}", provider=provider)


@dataclass
class ProviderCredentials:
    """Decrypted credentials handed to an adapter for one run."""

    data_source: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)


Refresher = Callable[[ProviderCredentials], ProviderCredentials]


class ProviderHttpClient:
    """
    Thin requests wrapper shared by the HTTP providers.

    On a 401 the client asks `refresher` for new credentials once and replays
    the request once. Refresh failure (or a second 401) becomes an AUTH error
    carrying the re-authenticate message.
    """

    provider = "provider"

    def __init__(
        self,
        base_url: str,
        credentials: ProviderCredentials,
        *,
        session: Optional[requests.Session] = None,
        timeout: Optional[int] = None,
        refresher: Optional[Refresher] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials
        self.session = session or requests.Session()
        self.timeout = timeout or settings.EXTERNAL_API_TIMEOUT
        self.refresher = refresher
        self._refreshed = False
        self._refresh_lock = threading.Lock()

    def auth_headers(self) -> Dict[str, str]:
        return {}

    def auth_params(self) -> Dict[str, Any]:
        return {}

    def before_request(self, path: str) -> None:
        """Hook for quota checks; raise ProviderError to stop the request."""

    def after_request(self, path: str, response: requests.Response) -> None:
        """Hook for quota accounting."""

    def rate_limit_error(self, response: requests.Response) -> ProviderError:
        return ProviderError.rate_limited(self.provider, retry_after_from_headers(response, 900), "provider")

    def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        response = self._send(path, params)
        if response.status_code == 401:
            self._refresh_credentials()
            response = self._send(path, params)
            if response.status_code == 401:
                raise ProviderError(ErrorKind.AUTH, REAUTH_MESSAGE, provider=self.provider, status_code=401)
        if response.status_code == 429:
            raise self.rate_limit_error(response)
        error = classify_response(response, self.provider)
        if error is not None:
            raise error
        return response.json()

    def _send(self, path: str, params: Optional[Dict[str, Any]]) -> requests.Response:
        self.before_request(path)
        url = f"{self.base_url}/{path.lstrip('/')}"
        merged = {**self.auth_params(), **(params or {})}
        try:
            response = self.session.get(url, headers=self.auth_headers(), params=merged, timeout=self.timeout)
        except requests.RequestException as exc:
            raise classify_exception(exc, self.provider) from exc
        self.after_request(path, response)
        return response

    def _refresh_credentials(self) -> None:
        with self._refresh_lock:
            if self._refreshed:
                # Another thread already refreshed; the replay uses the new token.
                return
            if self.refresher is None:
                raise ProviderError(ErrorKind.AUTH, REAUTH_MESSAGE, provider=self.provider, status_code=401)
            try:
                self.credentials = self.refresher(self.credentials)
            except ProviderError as exc:
                if exc.kind in (ErrorKind.RATE_LIMIT, ErrorKind.TRANSIENT):
                    raise
                raise ProviderError(ErrorKind.AUTH, REAUTH_MESSAGE, provider=self.provider) from exc
            except requests.RequestException as exc:
                raise ProviderError(ErrorKind.AUTH, REAUTH_MESSAGE, provider=self.provider) from exc
            self._refreshed = True
            logger.info("Refreshed %s credentials after 401", self.provider)


@dataclass
class SyncResult:
    imported: int = 0
    fetched: int = 0
    failed: int = 0
    secondary_imported: int = 0
    secondary_label: Optional[str] = None

    @property
    def total_imported(self) -> int:
        return self.imported + self.secondary_imported

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "imported": self.imported,
            "fetched": self.fetched,
            "failed": self.failed,
            "total_imported": self.total_imported,
        }
        if self.secondary_label:
            data[self.secondary_label] = self.secondary_imported
        return data


class SyncAdapter:
    """
    One per data source.

    Incremental runs start `lookback` before the checkpoint so records the
    provider surfaced late are not missed; full runs go back `years_back`.
    Both resume from `cursor` when one is given.
    """

    data_source = ""

    def __init__(self, db: Session, *, lookback: Optional[timedelta] = None, max_records: Optional[int] = None):
        self.db = db
        self.lookback = lookback if lookback is not None else timedelta(days=settings.SYNC_LOOKBACK_DAYS)
        self.max_records = max_records or settings.SYNC_MAX_RECORDS

    def fetch_from_for_incremental(self, since: datetime) -> datetime:
        return since - self.lookback

    @staticmethod
    def fetch_from_for_full(years_back: int, now: Optional[datetime] = None) -> datetime:
        now = now or _utcnow()
        return now - timedelta(days=365 * years_back)

    def incremental_sync(
        self,
        credentials: ProviderCredentials,
        user_id: UUID,
        since: datetime,
        progress: ProgressObserver,
        *,
        cursor: Optional[Dict[str, Any]] = None,
    ) -> SyncResult:
        return self.sync_from(credentials, user_id, self.fetch_from_for_incremental(since), progress, cursor=cursor)

    def full_historical_sync(
        self,
        credentials: ProviderCredentials,
        user_id: UUID,
        years_back: int,
        progress: ProgressObserver,
        *,
        cursor: Optional[Dict[str, Any]] = None,
    ) -> SyncResult:
        return self.sync_from(credentials, user_id, self.fetch_from_for_full(years_back), progress, cursor=cursor)

    def sync_from(
        self,
        credentials: ProviderCredentials,
        user_id: UUID,
        fetch_from: datetime,
        progress: ProgressObserver,
        *,
        cursor: Optional[Dict[str, Any]] = None,
    ) -> SyncResult:
        raise NotImplementedError
