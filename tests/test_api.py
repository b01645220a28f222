# tests/test_api.py
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from sluice_core.api import create_router
from sluice_core.connectors.memory import MemorySource


@pytest.fixture
def service(make_service, add_dataset, make_rows):
    add_dataset()
    return make_service(MemorySource(rows=make_rows(5)))


@pytest.fixture
def client(service):
    app = FastAPI()
    app.include_router(create_router(service), prefix="/api")
    return TestClient(app)


def test_trigger_then_duplicate_is_conflict(client):
    first = client.post("/api/datasets/10/trigger", json={"trigger_type": "manual"})
    second = client.post("/api/datasets/10/trigger")

    assert first.status_code == 202
    job = first.json()["data"]
    assert job["status"] == "pending"
    assert job["action"] == "manual_sync"

    assert second.status_code == 409
    assert second.json()["detail"]["job_id"] == job["id"]


def test_trigger_unknown_dataset_is_404(client):
    assert client.post("/api/datasets/999/trigger").status_code == 404


def test_trigger_unknown_type_is_400(client):
    response = client.post("/api/datasets/10/trigger", json={"trigger_type": "sometimes"})
    assert response.status_code == 400
    assert "Unknown trigger type" in response.json()["detail"]


def test_trigger_missing_sync_with_ranges(client):
    response = client.post(
        "/api/datasets/10/trigger",
        json={"trigger_type": "missing_sync", "ranges": [{"start": 100, "end": 250}]},
    )

    assert response.status_code == 202
    job = response.json()["data"]
    assert job["action"] == "missing_sync"
    assert job["ranges"] == [{"start": 100, "end": 250}]


def test_trigger_new_records_with_after_id_and_limit(client):
    response = client.post(
        "/api/datasets/10/trigger",
        json={"trigger_type": "new", "after_id": 42, "row_limit": 1000},
    )

    assert response.status_code == 202
    job = response.json()["data"]
    assert (job["after_id"], job["row_limit"]) == (42, 1000)


def test_trigger_reversed_range_is_400(client):
    response = client.post(
        "/api/datasets/10/trigger",
        json={"trigger_type": "missing_sync", "ranges": [{"start": 9, "end": 1}]},
    )
    assert response.status_code == 400
    assert "start is after end" in response.json()["detail"]


def test_trigger_all(client):
    response = client.post("/api/etl/trigger-all")

    assert response.status_code == 202
    body = response.json()
    assert body["message"] == "1 dataset(s) queued"
    assert body["data"]["skipped"] == []


def test_job_lifecycle_endpoints(client, service):
    job_id = client.post("/api/datasets/10/trigger").json()["data"]["id"]

    assert client.get(f"/api/jobs/{job_id}").json()["data"]["status"] == "pending"
    assert client.get("/api/jobs", params={"status": "pending"}).json()["data"][0]["id"] == job_id
    assert client.get("/api/jobs", params={"status": "running"}).json()["data"] == []

    cancelled = client.post(f"/api/jobs/{job_id}/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["data"]["status"] == "cancelled"

    again = client.post(f"/api/jobs/{job_id}/cancel")
    assert again.status_code == 400


def test_missing_job_is_404(client):
    assert client.get("/api/jobs/12345").status_code == 404
    assert client.post("/api/jobs/12345/cancel").status_code == 404


def test_worker_endpoints(client):
    assert client.get("/api/worker/status").json()["data"]["status"] == "stopped"

    started = client.post("/api/worker/start").json()["data"]
    assert started["status"] == "running"
    assert started["worker_id"] == "test-worker"

    stopped = client.post("/api/worker/stop", json={"timeout": 5})
    assert stopped.json()["data"]["status"] == "stopped"


def test_lock_endpoints(client, service):
    service.locks.acquire(10, "someone")

    listed = client.get("/api/locks").json()["data"]
    assert listed[0]["dataset_id"] == 10
    assert listed[0]["holder"] == "someone"

    assert client.delete("/api/locks/10").status_code == 200
    assert client.delete("/api/locks/10").status_code == 404

    service.locks.acquire(10, "someone")
    assert client.delete("/api/locks").json()["data"] == {"cleared": 1}


def test_schedule_endpoints(client):
    created = client.put("/api/datasets/10/schedule", json={"interval": "15m"})
    assert created.status_code == 200
    schedule = created.json()["data"]
    assert schedule["cron_expression"] == "*/15 * * * *"
    assert schedule["is_active"] is True

    paused = client.put(f"/api/schedules/{schedule['id']}", json={"is_active": False})
    assert paused.json()["data"]["is_active"] is False

    assert client.get("/api/schedules").json()["data"][0]["interval"] == "15m"


def test_invalid_interval_is_400(client):
    assert client.put("/api/datasets/10/schedule", json={"interval": "every full moon"}).status_code == 400


def test_toggle_unknown_schedule_is_404(client):
    assert client.put("/api/schedules/77", json={"is_active": True}).status_code == 404


def test_health_endpoint(client):
    data = client.get("/api/health").json()["data"]
    assert data["healthy"] is True
    assert data["stuck_jobs"] == []
