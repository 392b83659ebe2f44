"""
Import job store: status machine, partial updates, resumption and retention.
"""
import pytest
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from models import ImportJob
from services import import_jobs
from services.import_jobs import JobTransitionError
from tests.sync_helpers import make_pending_job, make_user


def _reload(db, job_id):
    db.expire_all()
    return db.get(ImportJob, job_id)


def test_create_job_starts_pending_with_zeroed_progress(db_session, test_user):
    job = make_pending_job(db_session, test_user)

    stored = _reload(db_session, job.id)
    assert stored.status == "pending"
    assert stored.data_source == "foursquare"
    assert stored.sync_type == "incremental"
    assert stored.total_imported == 0
    assert stored.current_batch == 0
    assert stored.total_expected is None
    assert stored.created_at is not None


def test_happy_path_transitions(db_session, test_user):
    job = make_pending_job(db_session, test_user)

    import_jobs.mark_started(db_session, job.id)
    db_session.commit()
    assert _reload(db_session, job.id).status == "running"
    assert _reload(db_session, job.id).started_at is not None

    import_jobs.mark_completed(db_session, job.id, total_imported=42)
    db_session.commit()
    stored = _reload(db_session, job.id)
    assert stored.status == "completed"
    assert stored.total_imported == 42
    assert stored.completed_at is not None


@pytest.mark.parametrize(
    "mark",
    [
        lambda db, job_id: import_jobs.mark_completed(db, job_id),
        lambda db, job_id: import_jobs.mark_failed(db, job_id, "boom"),
        lambda db, job_id: import_jobs.mark_rate_limited(db, job_id, datetime.now(timezone.utc)),
    ],
)
def test_terminal_states_cannot_be_entered_from_pending(db_session, test_user, mark):
    job = make_pending_job(db_session, test_user)

    with pytest.raises(JobTransitionError) as exc_info:
        mark(db_session, job.id)
    assert exc_info.value.current == "pending"
    assert _reload(db_session, job.id).status == "pending"


def test_terminal_job_is_never_rewritten(db_session, test_user):
    job = make_pending_job(db_session, test_user)
    import_jobs.mark_started(db_session, job.id)
    import_jobs.mark_completed(db_session, job.id, total_imported=3)
    db_session.commit()

    with pytest.raises(JobTransitionError):
        import_jobs.mark_failed(db_session, job.id, "late failure")
    with pytest.raises(JobTransitionError):
        import_jobs.mark_started(db_session, job.id)

    assert import_jobs.update_job(db_session, job.id, total_imported=99) is False
    stored = _reload(db_session, job.id)
    assert stored.status == "completed"
    assert stored.total_imported == 3
    assert stored.error_message is None


def test_failed_keeps_partial_progress(db_session, test_user):
    job = make_pending_job(db_session, test_user)
    import_jobs.mark_started(db_session, job.id)
    import_jobs.update_progress(db_session, job.id, total_imported=17, current_batch=2)
    import_jobs.mark_failed(db_session, job.id, "provider timed out")
    db_session.commit()

    stored = _reload(db_session, job.id)
    assert stored.status == "failed"
    assert stored.error_message == "provider timed out"
    assert stored.total_imported == 17


def test_rate_limited_records_retry_after(db_session, test_user):
    job = make_pending_job(db_session, test_user)
    import_jobs.mark_started(db_session, job.id)
    retry_after = datetime(2025, 1, 1, 12, 15, tzinfo=timezone.utc)
    import_jobs.mark_rate_limited(db_session, job.id, retry_after)
    db_session.commit()

    stored = _reload(db_session, job.id)
    assert stored.status == "rate_limited"
    assert stored.retry_after.replace(tzinfo=timezone.utc) == retry_after
    assert "Rate limit" in stored.error_message


def test_missing_job_transition_reports_missing(db_session):
    with pytest.raises(JobTransitionError) as exc_info:
        import_jobs.mark_started(db_session, uuid4())
    assert exc_info.value.current is None


def test_update_job_accepts_snake_and_camel_case_and_merges(db_session, test_user):
    job = make_pending_job(db_session, test_user)
    import_jobs.mark_started(db_session, job.id)

    assert import_jobs.update_job(db_session, job.id, totalExpected=250) is True
    assert import_jobs.update_job(db_session, job.id, total_imported=100, currentBatch=1) is True
    db_session.commit()

    stored = _reload(db_session, job.id)
    assert stored.total_expected == 250
    assert stored.total_imported == 100
    assert stored.current_batch == 1


def test_update_job_rejects_unknown_fields(db_session, test_user):
    job = make_pending_job(db_session, test_user)

    with pytest.raises(ValueError):
        import_jobs.update_job(db_session, job.id, status="completed")
    with pytest.raises(ValueError):
        import_jobs.update_job(db_session, job.id, userId="someone-else")


def test_find_active_and_latest(db_session, test_user):
    other = make_user(db_session)
    assert import_jobs.find_active_for(db_session, test_user.id, "foursquare") is None
    assert import_jobs.find_latest_for(db_session, test_user.id) is None

    done = make_pending_job(db_session, test_user)
    import_jobs.mark_started(db_session, done.id)
    import_jobs.mark_completed(db_session, done.id)
    db_session.query(ImportJob).filter(ImportJob.id == done.id).update(
        {ImportJob.created_at: datetime.now(timezone.utc) - timedelta(hours=1)}, synchronize_session=False
    )
    db_session.commit()
    assert import_jobs.find_active_for(db_session, test_user.id, "foursquare") is None

    active = make_pending_job(db_session, test_user)
    make_pending_job(db_session, other)

    assert import_jobs.find_active_for(db_session, test_user.id, "foursquare").id == active.id
    assert import_jobs.find_active_for(db_session, test_user.id, "strava") is None
    assert import_jobs.find_latest_for(db_session, test_user.id).id == active.id
    assert [j.id for j in import_jobs.list_jobs_for(db_session, test_user.id)] == [active.id, done.id]


def test_resumption_job_carries_cursor_forward(db_session, test_user):
    job = make_pending_job(db_session, test_user, sync_type="full")
    import_jobs.mark_started(db_session, job.id)
    import_jobs.update_cursor(db_session, job.id, {"offset": 300, "after": 1735084800})
    import_jobs.mark_rate_limited(db_session, job.id, datetime.now(timezone.utc) + timedelta(hours=1))
    db_session.commit()

    resumed = import_jobs.create_resumption_job(db_session, _reload(db_session, job.id))
    db_session.commit()

    stored = _reload(db_session, resumed.id)
    assert stored.status == "pending"
    assert stored.sync_type == "full"
    assert stored.sync_cursor == {"offset": 300, "after": 1735084800}
    assert stored.resumed_from_id == job.id
    assert import_jobs.find_active_for(db_session, test_user.id, "foursquare").id == resumed.id


def test_discard_pending_only_removes_pending_jobs(db_session, test_user):
    pending = make_pending_job(db_session, test_user)
    assert import_jobs.discard_pending(db_session, pending.id) is True
    db_session.commit()
    assert import_jobs.get_job(db_session, pending.id) is None

    running = make_pending_job(db_session, test_user)
    import_jobs.mark_started(db_session, running.id)
    db_session.commit()
    assert import_jobs.discard_pending(db_session, running.id) is False
    assert import_jobs.get_job(db_session, running.id) is not None


def test_delete_old_removes_only_old_terminal_jobs(db_session, test_user):
    old_done = make_pending_job(db_session, test_user)
    import_jobs.mark_started(db_session, old_done.id)
    import_jobs.mark_completed(db_session, old_done.id)
    recent_failed = make_pending_job(db_session, test_user, data_source="strava")
    import_jobs.mark_started(db_session, recent_failed.id)
    import_jobs.mark_failed(db_session, recent_failed.id, "nope")
    still_pending = make_pending_job(db_session, test_user, data_source="garmin")
    db_session.commit()

    db_session.query(ImportJob).filter(ImportJob.id == old_done.id).update(
        {ImportJob.completed_at: datetime.now(timezone.utc) - timedelta(days=45)}, synchronize_session=False
    )
    db_session.commit()

    deleted = import_jobs.delete_old(db_session, days=30)
    db_session.commit()

    assert deleted == 1
    remaining = {j.id for j in db_session.query(ImportJob).all()}
    assert remaining == {recent_failed.id, still_pending.id}
