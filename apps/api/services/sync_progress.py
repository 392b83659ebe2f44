"""
Progress reporting for sync runs.

Adapters emit `ProgressUpdate`s to a `ProgressObserver`. The worker wires a
`JobProgressReporter`, which persists them into the import job row for the
polling status endpoint.

Write policy: at most one job write per page, and at most one per
`min_interval_s` seconds. The first update and the first update that learns
the provider total are always written. `flush()` writes whatever is still
buffered. Cursor saves are never throttled; they are what makes a resumed
run skip work already done.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from services import import_jobs

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressUpdate:
    fetched: int
    imported: int
    batch: int
    total_expected: Optional[int] = None


class ProgressObserver:
    """Receives cumulative progress from a running adapter."""

    def on_progress(self, update: ProgressUpdate) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def on_cursor(self, cursor: Dict[str, Any]) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def flush(self) -> None:
        return None


class NullProgress(ProgressObserver):
    def on_progress(self, update: ProgressUpdate) -> None:
        return None

    def on_cursor(self, cursor: Dict[str, Any]) -> None:
        return None


class JobProgressReporter(ProgressObserver):
    def __init__(
        self,
        db: Session,
        job_id: UUID,
        *,
        min_interval_s: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.db = db
        self.job_id = job_id
        self.min_interval_s = min_interval_s
        self._clock = clock
        self._last_write_at: Optional[float] = None
        self._last_written: Optional[ProgressUpdate] = None
        self._pending: Optional[ProgressUpdate] = None
        self._total_known = False
        self.writes = 0

    def on_progress(self, update: ProgressUpdate) -> None:
        # Progress is cumulative; never let a late update roll counters back.
        if self._last_written is not None and update.imported < self._last_written.imported:
            update = ProgressUpdate(
                fetched=max(update.fetched, self._last_written.fetched),
                imported=self._last_written.imported,
                batch=max(update.batch, self._last_written.batch),
                total_expected=update.total_expected,
            )

        learned_total = update.total_expected is not None and not self._total_known
        now = self._clock()
        due = self._last_write_at is None or (now - self._last_write_at) >= self.min_interval_s
        if due or learned_total:
            self._write(update, now)
        else:
            self._pending = update

    def on_cursor(self, cursor: Dict[str, Any]) -> None:
        import_jobs.update_cursor(self.db, self.job_id, cursor)
        self.db.commit()

    def flush(self) -> None:
        if self._pending is not None:
            self._write(self._pending, self._clock())

    def _write(self, update: ProgressUpdate, now: float) -> None:
        fields: Dict[str, Any] = {
            "total_imported": update.imported,
            "current_batch": update.batch,
        }
        if update.total_expected is not None:
            fields["total_expected"] = update.total_expected
            self._total_known = True
        import_jobs.update_job(self.db, self.job_id, **fields)
        self.db.commit()
        self.writes += 1
        self._last_write_at = now
        self._last_written = update
        self._pending = None
        logger.debug(
            "Job %s progress: fetched=%s imported=%s batch=%s total=%s",
            self.job_id, update.fetched, update.imported, update.batch, update.total_expected,
        )
