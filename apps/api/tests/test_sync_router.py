"""
/sync endpoints: starting a sync, conflicts, and polling job status.
"""
import pytest
from fastapi.testclient import TestClient

from core.database import get_db
from core.security import create_access_token
from main import app
from routers.sync import get_sync_queue
from services import import_jobs
from tests.sync_helpers import enqueued, make_pending_job, make_user


@pytest.fixture
def client(db_session, sync_queue):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sync_queue] = lambda: sync_queue
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _auth(user):
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user.id)})}"}


def test_start_creates_pending_job_and_enqueues_it(client, db_session, test_user, celery_stub):
    response = client.post("/sync/start", headers=_auth(test_user))

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "pending"
    assert body["dataSource"] == "foursquare"
    assert body["syncType"] == "incremental"

    job = import_jobs.find_active_for(db_session, test_user.id, "foursquare")
    assert body["jobId"] == str(job.id)
    assert enqueued(celery_stub) == [
        ("tasks.import_checkins", {"job_id": str(job.id), "user_id": str(test_user.id)}, 0)
    ]


def test_second_start_conflicts_with_the_job_in_flight(client, test_user, celery_stub):
    first = client.post("/sync/start", headers=_auth(test_user))

    second = client.post("/sync/start", json={"dataSource": "foursquare"}, headers=_auth(test_user))

    assert second.status_code == 409
    assert second.json()["error"] == "sync_in_progress"
    assert second.json()["jobId"] == first.json()["jobId"]
    assert len(enqueued(celery_stub)) == 1


def test_full_sync_can_be_requested(client, db_session, test_user, celery_stub):
    response = client.post("/sync/start", json={"syncType": "full"}, headers=_auth(test_user))

    assert response.status_code == 200
    assert response.json()["syncType"] == "full"
    assert import_jobs.find_active_for(db_session, test_user.id, "foursquare").sync_type == "full"


def test_start_for_unconnected_provider_is_rejected(client, test_user, celery_stub):
    response = client.post("/sync/start", json={"dataSource": "strava"}, headers=_auth(test_user))

    assert response.status_code == 400
    assert response.json()["detail"] == "provider_not_connected"
    assert enqueued(celery_stub) == []


def test_unknown_data_source_is_a_validation_error(client, test_user):
    response = client.post("/sync/start", json={"dataSource": "fitbit"}, headers=_auth(test_user))
    assert response.status_code == 422


def test_requests_without_a_token_are_unauthorized(client):
    assert client.post("/sync/start").status_code == 401
    assert client.get("/sync/latest").status_code == 401


def test_status_reports_progress_in_camel_case(client, db_session, test_user):
    job = make_pending_job(db_session, test_user)
    import_jobs.mark_started(db_session, job.id)
    import_jobs.update_job(db_session, job.id, total_expected=500, total_imported=200, current_batch=2)
    db_session.commit()

    response = client.get(f"/sync/status/{job.id}", headers=_auth(test_user))

    assert response.status_code == 200
    body = response.json()
    assert body["id"] == str(job.id)
    assert body["status"] == "running"
    assert body["totalExpected"] == 500
    assert body["totalImported"] == 200
    assert body["currentBatch"] == 2
    assert body["errorMessage"] is None


def test_status_of_another_users_job_is_not_found(client, db_session, test_user):
    other = make_user(db_session)
    job = make_pending_job(db_session, other)

    response = client.get(f"/sync/status/{job.id}", headers=_auth(test_user))

    assert response.status_code == 404


def test_latest_is_null_before_the_first_sync(client, test_user):
    response = client.get("/sync/latest", headers=_auth(test_user))

    assert response.status_code == 200
    assert response.json() == {"job": None}


def test_latest_and_job_list(client, db_session, test_user):
    job = make_pending_job(db_session, test_user)
    make_pending_job(db_session, test_user, data_source="strava")

    latest = client.get("/sync/latest", headers=_auth(test_user))
    jobs = client.get("/sync/jobs", params={"dataSource": "foursquare"}, headers=_auth(test_user))

    assert latest.json()["job"]["dataSource"] in {"foursquare", "strava"}
    assert [j["id"] for j in jobs.json()["jobs"]] == [str(job.id)]
