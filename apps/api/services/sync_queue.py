"""
Durable sync queue on top of Celery.

`SyncQueue` is constructed once per process (tasks/__init__.py) and passed
to whatever needs to enqueue work: the daily orchestrator, the sync router
(via app.state) and the import handlers themselves (for resumption jobs).

- enqueue(task_type, payload, delay): `send_task` with a countdown
- register_worker(task_type, handler): a bound, late-ack Celery task, so a
  worker crash mid-run puts the message back on the broker
- schedule(entry, task_type, cron, payload): a beat entry from a 5-field cron
- retry(task, exc, payload): Celery retry with the queue's exponential backoff
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, Optional, Union

from celery import Celery
from celery.schedules import crontab

from core.config import settings

logger = logging.getLogger(__name__)

TASK_PREFIX = "tasks."


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    backoff_base_s: int = 60
    backoff_max_s: int = 3600

    def countdown(self, retries: int) -> int:
        """Seconds before attempt `retries + 1`: base * 2^retries, capped."""
        return int(min(self.backoff_base_s * (2 ** max(retries, 0)), self.backoff_max_s))

    def exhausted(self, retries: int) -> bool:
        return retries >= self.max_retries

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_retries=settings.SYNC_RETRY_MAX,
            backoff_base_s=settings.SYNC_RETRY_BACKOFF_S,
            backoff_max_s=settings.SYNC_RETRY_BACKOFF_MAX_S,
        )


def parse_cron(expression: str) -> crontab:
    """Turn "m h dom mon dow" into a celery crontab (UTC)."""
    parts = expression.split()
    if len(parts) != 5:
        raise ValueError(f"Cron expression must have 5 fields, got {expression!r}")
    minute, hour, day_of_month, month_of_year, day_of_week = parts
    return crontab(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month_of_year=month_of_year,
        day_of_week=day_of_week,
    )


def task_name(task_type: str) -> str:
    return task_type if task_type.startswith(TASK_PREFIX) else f"{TASK_PREFIX}{task_type}"


class SyncQueue:
    def __init__(self, celery_app: Celery, *, retry_policy: Optional[RetryPolicy] = None):
        self.app = celery_app
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self._policies: Dict[str, RetryPolicy] = {}

    def enqueue(self, task_type: str, payload: Dict[str, Any], *, delay: Union[timedelta, float, int, None] = None):
        if isinstance(delay, timedelta):
            countdown = delay.total_seconds()
        else:
            countdown = float(delay or 0)
        countdown = max(0, int(countdown))
        name = task_name(task_type)
        result = self.app.send_task(name, kwargs={k: _jsonable(v) for k, v in payload.items()}, countdown=countdown)
        logger.info("Enqueued %s in %ss", name, countdown, extra={"extra_fields": {"task": name, "countdown_s": countdown}})
        return result

    def register_worker(
        self,
        task_type: str,
        handler: Callable[..., Any],
        *,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        """
        Register `handler(task, **payload)` as the Celery task for `task_type`.

        The task is bound so handlers can inspect `task.request.retries` and
        hand it back to `retry`.
        """
        name = task_name(task_type)
        policy = retry_policy or self.retry_policy
        self._policies[name] = policy

        def run(task, **payload):
            return handler(task, **payload)

        run.__name__ = name.replace(".", "_")
        return self.app.task(name=name, bind=True, acks_late=True, max_retries=policy.max_retries)(run)

    def policy_for(self, task) -> RetryPolicy:
        return self._policies.get(getattr(task, "name", None), self.retry_policy)

    def retry(self, task, exc: BaseException, payload: Optional[Dict[str, Any]] = None):
        """
        Re-run `task` after the policy's backoff.

        Raises celery's Retry (or `exc` itself once retries are exhausted), so
        callers use it as `raise queue.retry(...)`.
        """
        policy = self.policy_for(task)
        retries = task.request.retries
        countdown = policy.countdown(retries)
        kwargs = {k: _jsonable(v) for k, v in (payload or {}).items()} if payload is not None else None
        logger.warning("Retrying %s in %ss (attempt %s of %s): %s", task.name, countdown, retries + 1, policy.max_retries, exc)
        return task.retry(exc=exc, kwargs=kwargs, countdown=countdown, max_retries=policy.max_retries)

    def schedule(self, entry: str, task_type: str, cron: str, payload: Optional[Dict[str, Any]] = None) -> None:
        beat_schedule = dict(self.app.conf.beat_schedule or {})
        beat_schedule[entry] = {
            "task": task_name(task_type),
            "schedule": parse_cron(cron),
            "kwargs": dict(payload or {}),
        }
        self.app.conf.beat_schedule = beat_schedule


def _jsonable(value: Any) -> Any:
    # UUIDs and datetimes go over the wire as strings.
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)
