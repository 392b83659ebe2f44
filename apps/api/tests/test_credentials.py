"""
Credential store: decrypting provider secrets, Strava token refresh,
Garmin session reset.
"""
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from services.credentials import CredentialsMissingError, CredentialStore, has_credentials
from services.providers.base import REAUTH_MESSAGE, ErrorKind, ProviderError
from services.token_encryption import decrypt_token, encrypt_token
from tests.sync_helpers import http_response, make_user

NOW = datetime(2025, 1, 5, 12, tzinfo=timezone.utc)


def _strava_user(db, expires_in):
    return make_user(
        db,
        strava_access_token=encrypt_token("old-access"),
        strava_refresh_token=encrypt_token("old-refresh"),
        strava_token_expires_at=NOW + expires_in,
    )


def _store(db, http=None):
    return CredentialStore(db, http=http or MagicMock(), now=lambda: NOW)


def test_foursquare_token_is_decrypted(db_session, test_user):
    credentials = _store(db_session).get(test_user, "foursquare")

    assert credentials.data_source == "foursquare"
    assert credentials.access_token == "fsq-token"


def test_unconnected_provider_is_an_auth_error(db_session, test_user):
    assert has_credentials(test_user, "strava") is False

    with pytest.raises(CredentialsMissingError) as exc_info:
        _store(db_session).get(test_user, "strava")
    assert exc_info.value.kind is ErrorKind.AUTH


def test_corrupt_ciphertext_asks_the_user_to_reconnect(db_session):
    user = make_user(db_session, foursquare_access_token="not-a-fernet-token")

    with pytest.raises(ProviderError) as exc_info:
        _store(db_session).get(user, "foursquare")
    assert exc_info.value.kind is ErrorKind.AUTH
    assert exc_info.value.message == REAUTH_MESSAGE


def test_valid_strava_token_is_used_without_refresh(db_session):
    user = _strava_user(db_session, timedelta(hours=2))
    http = MagicMock()

    credentials = _store(db_session, http).get(user, "strava")

    assert credentials.access_token == "old-access"
    assert credentials.refresh_token == "old-refresh"
    http.post.assert_not_called()


def test_strava_token_expiring_soon_is_refreshed_and_saved(db_session):
    user = _strava_user(db_session, timedelta(minutes=2))
    new_expiry = NOW + timedelta(hours=6)
    http = MagicMock()
    http.post.return_value = http_response(
        200, {"access_token": "new-access", "refresh_token": "new-refresh", "expires_at": int(new_expiry.timestamp())}
    )

    credentials = _store(db_session, http).get(user, "strava")

    assert credentials.access_token == "new-access"
    assert credentials.expires_at == new_expiry
    assert http.post.call_args.kwargs["json"]["grant_type"] == "refresh_token"
    assert http.post.call_args.kwargs["json"]["refresh_token"] == "old-refresh"
    assert decrypt_token(user.strava_access_token) == "new-access"
    assert decrypt_token(user.strava_refresh_token) == "new-refresh"


def test_rejected_strava_refresh_is_an_auth_error(db_session):
    user = _strava_user(db_session, timedelta(minutes=-5))
    http = MagicMock()
    http.post.return_value = http_response(400, {"message": "Bad Request", "errors": [{"code": "invalid"}]})

    with pytest.raises(ProviderError) as exc_info:
        _store(db_session, http).get(user, "strava")

    assert exc_info.value.kind is ErrorKind.AUTH
    assert exc_info.value.message == REAUTH_MESSAGE
    assert decrypt_token(user.strava_access_token) == "old-access"


def test_strava_refresh_server_error_stays_transient(db_session):
    user = _strava_user(db_session, timedelta(minutes=-5))
    http = MagicMock()
    http.post.return_value = http_response(503)

    with pytest.raises(ProviderError) as exc_info:
        _store(db_session, http).get(user, "strava")
    assert exc_info.value.kind is ErrorKind.TRANSIENT


def test_garmin_refresh_drops_the_saved_session(db_session):
    user = make_user(
        db_session,
        garmin_username="runner@example.com",
        garmin_password_encrypted=encrypt_token("hunter2"),
        garmin_session=encrypt_token('{"oauth1": "..."}'),
    )
    store = _store(db_session)

    credentials = store.get(user, "garmin")
    assert credentials.extra == {"username": "runner@example.com", "password": "hunter2", "session": '{"oauth1": "..."}'}

    refreshed = store.refresher_for(user)(credentials)

    assert refreshed.extra["session"] is None
    assert refreshed.extra["password"] == "hunter2"
    assert user.garmin_session is None
    assert decrypt_token(user.garmin_password_encrypted) == "hunter2"


def test_foursquare_has_no_refresh_grant(db_session, test_user):
    store = _store(db_session)
    credentials = store.get(test_user, "foursquare")

    with pytest.raises(ProviderError) as exc_info:
        store.refresh(test_user, credentials)
    assert exc_info.value.kind is ErrorKind.AUTH
