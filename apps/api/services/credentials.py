"""
Credential store for provider sync runs.

Reads the encrypted provider secrets off the `User` row and hands adapters
a decrypted `ProviderCredentials`. Exposes get / refresh / save:

- Strava: OAuth access + refresh token. Refreshed proactively when the
  access token expires within 5 minutes, and on demand after a 401.
- Foursquare: long-lived OAuth token, no refresh grant. A 401 means the
  user has to reconnect.
- Garmin: username + encrypted password, plus an encrypted session dump.
  "Refresh" drops the session so the adapter logs in again.

`save` commits straight away: Strava rotates refresh tokens on every grant,
so a refreshed pair must survive a rollback of the page that triggered it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import requests
from sqlalchemy.orm import Session

from core.config import settings
from models import User
from services.providers.base import (
    REAUTH_MESSAGE,
    ErrorKind,
    ProviderCredentials,
    ProviderError,
    classify_response,
)
from services.token_encryption import TokenDecryptionError, decrypt_token, encrypt_token

logger = logging.getLogger(__name__)

EXPIRY_BUFFER = timedelta(minutes=5)


class CredentialsMissingError(ProviderError):
    def __init__(self, data_source: str):
        super().__init__(
            ErrorKind.AUTH,
            f"{data_source} is not connected for this user",
            provider=data_source,
        )


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def has_credentials(user: User, data_source: str) -> bool:
    if data_source == "foursquare":
        return bool(user.foursquare_access_token)
    if data_source == "strava":
        return bool(user.strava_access_token or user.strava_refresh_token)
    if data_source == "garmin":
        return bool(user.garmin_username and (user.garmin_password_encrypted or user.garmin_session))
    return False


class CredentialStore:
    def __init__(self, db: Session, *, http: Optional[requests.Session] = None, now: Callable[[], datetime] = None):
        self.db = db
        self.http = http or requests.Session()
        self._now = now or (lambda: datetime.now(timezone.utc))

    def get(self, user: User, data_source: str) -> ProviderCredentials:
        if not has_credentials(user, data_source):
            raise CredentialsMissingError(data_source)
        try:
            credentials = self._load(user, data_source)
        except TokenDecryptionError as exc:
            raise ProviderError(ErrorKind.AUTH, REAUTH_MESSAGE, provider=data_source) from exc

        if data_source == "strava" and self._expiring(credentials):
            logger.info("Strava token for user %s expires soon; refreshing before sync", user.id)
            credentials = self.refresh(user, credentials)
        return credentials

    def refresh(self, user: User, credentials: ProviderCredentials) -> ProviderCredentials:
        if credentials.data_source == "strava":
            refreshed = self._refresh_strava(credentials)
        elif credentials.data_source == "garmin":
            refreshed = ProviderCredentials(
                data_source="garmin",
                access_token=None,
                extra={**credentials.extra, "session": None},
            )
        else:
            raise ProviderError(ErrorKind.AUTH, REAUTH_MESSAGE, provider=credentials.data_source)
        self.save(user, refreshed)
        return refreshed

    def refresher_for(self, user: User) -> Callable[[ProviderCredentials], ProviderCredentials]:
        return lambda credentials: self.refresh(user, credentials)

    def save(self, user: User, credentials: ProviderCredentials) -> None:
        source = credentials.data_source
        if source == "foursquare":
            user.foursquare_access_token = encrypt_token(credentials.access_token)
        elif source == "strava":
            user.strava_access_token = encrypt_token(credentials.access_token)
            if credentials.refresh_token:
                user.strava_refresh_token = encrypt_token(credentials.refresh_token)
            user.strava_token_expires_at = credentials.expires_at
        elif source == "garmin":
            if credentials.extra.get("username"):
                user.garmin_username = credentials.extra["username"]
            if credentials.extra.get("password"):
                user.garmin_password_encrypted = encrypt_token(credentials.extra["password"])
            user.garmin_session = encrypt_token(credentials.extra.get("session"))
        else:
            raise ValueError(f"Unknown data source: {source}")
        self.db.add(user)
        self.db.commit()

    def _load(self, user: User, data_source: str) -> ProviderCredentials:
        if data_source == "foursquare":
            return ProviderCredentials(data_source="foursquare", access_token=decrypt_token(user.foursquare_access_token))
        if data_source == "strava":
            return ProviderCredentials(
                data_source="strava",
                access_token=decrypt_token(user.strava_access_token),
                refresh_token=decrypt_token(user.strava_refresh_token),
                expires_at=_as_utc(user.strava_token_expires_at),
            )
        return ProviderCredentials(
            data_source="garmin",
            extra={
                "username": user.garmin_username,
                "password": decrypt_token(user.garmin_password_encrypted),
                "session": decrypt_token(user.garmin_session),
            },
        )

    def _expiring(self, credentials: ProviderCredentials) -> bool:
        if not credentials.access_token:
            return True
        if credentials.expires_at is None:
            return False
        return credentials.expires_at <= self._now() + EXPIRY_BUFFER

    def _refresh_strava(self, credentials: ProviderCredentials) -> ProviderCredentials:
        if not credentials.refresh_token:
            raise ProviderError(ErrorKind.AUTH, REAUTH_MESSAGE, provider="strava")
        response = self.http.post(
            settings.STRAVA_OAUTH_URL,
            json={
                "client_id": settings.STRAVA_CLIENT_ID,
                "client_secret": settings.STRAVA_CLIENT_SECRET,
                "refresh_token": credentials.refresh_token,
                "grant_type": "refresh_token",
            },
            timeout=settings.EXTERNAL_API_TIMEOUT,
        )
        error = classify_response(response, "strava")
        if error is not None:
            if error.kind in (ErrorKind.RATE_LIMIT, ErrorKind.TRANSIENT):
                raise error
            raise ProviderError(ErrorKind.AUTH, REAUTH_MESSAGE, provider="strava", status_code=response.status_code)
        token = response.json()
        expires_at = None
        if token.get("expires_at"):
            expires_at = datetime.fromtimestamp(int(token["expires_at"]), tz=timezone.utc)
        return ProviderCredentials(
            data_source="strava",
            access_token=token["access_token"],
            refresh_token=token.get("refresh_token") or credentials.refresh_token,
            expires_at=expires_at,
        )
