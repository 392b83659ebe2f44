"""
Pytest configuration and fixtures

Tests run against an in-memory SQLite database (DATABASE_URL=sqlite://).
The schema is created from the models for every test and dropped after it,
so nothing leaks between tests.

Environment must be set before anything imports core.config.
"""
import os
import sys

from cryptography.fernet import Fernet

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-the-sync-api-0123456789")
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("ENVIRONMENT", "test")

# Add the parent directory to the path so we can import core/, services/, tasks/
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest  # noqa: E402
from unittest.mock import MagicMock  # noqa: E402

from core.database import Base, SessionLocal, engine  # noqa: E402
from services.sync_queue import RetryPolicy, SyncQueue  # noqa: E402


@pytest.fixture(scope="function")
def db_session():
    """Fresh schema and session per test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_user(db_session):
    from tests.sync_helpers import make_user

    return make_user(db_session)


@pytest.fixture
def celery_stub():
    """Stand-in Celery app: records send_task calls instead of talking to a broker."""
    return MagicMock(name="celery_app")


@pytest.fixture
def sync_queue(celery_stub):
    return SyncQueue(celery_stub, retry_policy=RetryPolicy(max_retries=3, backoff_base_s=60, backoff_max_s=3600))
