"""
JobProgressReporter write throttling and monotonic counters.
"""
from models import ImportJob
from services import import_jobs
from services.sync_progress import JobProgressReporter, ProgressUpdate
from tests.sync_helpers import make_pending_job


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _running_job(db, user):
    job = make_pending_job(db, user)
    import_jobs.mark_started(db, job.id)
    db.commit()
    return job


def _stored(db, job_id):
    db.expire_all()
    return db.get(ImportJob, job_id)


def test_first_update_is_written_immediately(db_session, test_user):
    job = _running_job(db_session, test_user)
    reporter = JobProgressReporter(db_session, job.id, min_interval_s=2.0, clock=FakeClock())

    reporter.on_progress(ProgressUpdate(fetched=100, imported=90, batch=1))

    assert reporter.writes == 1
    stored = _stored(db_session, job.id)
    assert stored.total_imported == 90
    assert stored.current_batch == 1


def test_updates_inside_the_interval_are_buffered_until_flush(db_session, test_user):
    job = _running_job(db_session, test_user)
    clock = FakeClock()
    reporter = JobProgressReporter(db_session, job.id, min_interval_s=2.0, clock=clock)

    reporter.on_progress(ProgressUpdate(fetched=100, imported=100, batch=1))
    clock.advance(0.5)
    reporter.on_progress(ProgressUpdate(fetched=200, imported=200, batch=2))
    clock.advance(0.5)
    reporter.on_progress(ProgressUpdate(fetched=300, imported=300, batch=3))

    assert reporter.writes == 1
    assert _stored(db_session, job.id).total_imported == 100

    reporter.flush()
    assert reporter.writes == 2
    stored = _stored(db_session, job.id)
    assert stored.total_imported == 300
    assert stored.current_batch == 3

    reporter.flush()
    assert reporter.writes == 2


def test_update_after_interval_is_written(db_session, test_user):
    job = _running_job(db_session, test_user)
    clock = FakeClock()
    reporter = JobProgressReporter(db_session, job.id, min_interval_s=2.0, clock=clock)

    reporter.on_progress(ProgressUpdate(fetched=100, imported=100, batch=1))
    clock.advance(2.5)
    reporter.on_progress(ProgressUpdate(fetched=200, imported=180, batch=2))

    assert reporter.writes == 2
    assert _stored(db_session, job.id).total_imported == 180


def test_learning_the_total_forces_a_write(db_session, test_user):
    job = _running_job(db_session, test_user)
    clock = FakeClock()
    reporter = JobProgressReporter(db_session, job.id, min_interval_s=2.0, clock=clock)

    reporter.on_progress(ProgressUpdate(fetched=0, imported=0, batch=0))
    clock.advance(0.1)
    reporter.on_progress(ProgressUpdate(fetched=100, imported=100, batch=1, total_expected=1234))
    clock.advance(0.1)
    reporter.on_progress(ProgressUpdate(fetched=200, imported=200, batch=2, total_expected=1234))

    assert reporter.writes == 2
    assert _stored(db_session, job.id).total_expected == 1234


def test_counters_never_move_backwards(db_session, test_user):
    job = _running_job(db_session, test_user)
    clock = FakeClock()
    reporter = JobProgressReporter(db_session, job.id, min_interval_s=2.0, clock=clock)

    reporter.on_progress(ProgressUpdate(fetched=300, imported=250, batch=3))
    clock.advance(5)
    reporter.on_progress(ProgressUpdate(fetched=100, imported=80, batch=1))

    stored = _stored(db_session, job.id)
    assert stored.total_imported == 250
    assert stored.current_batch == 3


def test_cursor_is_saved_on_every_call(db_session, test_user):
    job = _running_job(db_session, test_user)
    reporter = JobProgressReporter(db_session, job.id, min_interval_s=60, clock=FakeClock())

    reporter.on_cursor({"offset": 100, "after": 1})
    reporter.on_cursor({"offset": 200, "after": 1})

    assert _stored(db_session, job.id).sync_cursor == {"offset": 200, "after": 1}
