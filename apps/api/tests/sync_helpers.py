"""Shared builders for the sync tests."""
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List
from unittest.mock import MagicMock
from uuid import uuid4

import requests
from celery.exceptions import Retry

from models import User
from services import import_jobs
from services.sync_progress import ProgressObserver, ProgressUpdate
from services.token_encryption import encrypt_token


def make_user(db, **overrides):
    """Create and commit a user connected to Foursquare (plus whatever overrides add)."""
    values = {
        "email": f"user_{uuid4()}@example.com",
        "display_name": "Sync Test",
        "last_login_at": datetime.now(timezone.utc) - timedelta(days=1),
        "foursquare_access_token": encrypt_token("fsq-token"),
    }
    values.update(overrides)
    user = User(**values)
    db.add(user)
    db.commit()
    return user


def make_pending_job(db, user, data_source="foursquare", **kwargs):
    job = import_jobs.create_job(db, user.id, data_source, **kwargs)
    db.commit()
    return job


def make_task(name="tasks.import_checkins", retries=0):
    """A bound-task double whose `retry` raises celery's Retry like the real one."""
    task = MagicMock(name=name)
    task.name = name
    task.request.retries = retries
    task.retry.side_effect = Retry("retry scheduled")
    return task


def enqueued(celery_stub) -> List[tuple]:
    """[(task_name, kwargs, countdown)] for every send_task call."""
    return [
        (call.args[0], call.kwargs.get("kwargs"), call.kwargs.get("countdown"))
        for call in celery_stub.send_task.call_args_list
    ]


def http_response(status_code: int, payload: Any = None, headers: Dict[str, str] = None) -> requests.Response:
    response = requests.Response()
    response.status_code = status_code
    response._content = json.dumps(payload if payload is not None else {}).encode()
    response.headers.update(headers or {})
    return response


class RecordingProgress(ProgressObserver):
    def __init__(self):
        self.updates: List[ProgressUpdate] = []
        self.cursors: List[Dict[str, Any]] = []

    def on_progress(self, update: ProgressUpdate) -> None:
        self.updates.append(update)

    def on_cursor(self, cursor: Dict[str, Any]) -> None:
        self.cursors.append(dict(cursor))
