import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from linkflow.api.v1 import deps
from linkflow.api.v1.router import v1_router
from linkflow.main import create_app

USER = {"X-User-Id": "user-1"}
OTHER = {"X-User-Id": "user-2"}


@pytest.fixture
def client(make_service):
    app = create_app(service=make_service(), start_workers=False)
    with TestClient(app) as test_client:
        yield test_client


def submit(client, n=1, **body):
    items = [{"url": f"https://example.com/{i}"} for i in range(n)]
    response = client.post("/api/v1/jobs", json={"items": items, **body}, headers=USER)
    assert response.status_code == 200, response.text
    return response.json()


def test_health(client) -> None:
    response = client.get("/api/v1/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["storage"] == "memory"
    assert body["workers"]["running"] is False
    assert body["workers"]["max_concurrent"] == 5


def test_service_unavailable_before_startup() -> None:
    deps.set_service(None)
    app = FastAPI()
    app.include_router(v1_router)

    response = TestClient(app).get("/api/v1/health")

    assert response.status_code == 503


def test_missing_user_header_is_unauthorized(client) -> None:
    response = client.post("/api/v1/jobs", json={"items": [{"url": "https://example.com"}]})
    assert response.status_code == 401


def test_submit_and_poll(client) -> None:
    created = submit(client, n=2, priority="high", settings={"max_tags": 2})
    assert created["type"] == "batch"
    assert created["status"] == "pending"
    assert created["queue_position"] == 1

    status = client.get(f"/api/v1/jobs/{created['job_id']}", headers=USER).json()
    assert status["priority"] == "high"
    assert status["progress"]["total"] == 2

    position = client.get(f"/api/v1/jobs/{created['job_id']}/position", headers=USER).json()
    assert position["jobs_ahead"] == 0
    assert position["estimated_start_time"] is not None


def test_submit_validation_errors(client) -> None:
    assert client.post("/api/v1/jobs", json={"items": []}, headers=USER).status_code == 400
    bad_priority = client.post(
        "/api/v1/jobs", json={"items": [{"url": "https://example.com"}], "priority": "asap"}, headers=USER
    )
    assert bad_priority.status_code == 400
    assert "Invalid priority" in bad_priority.json()["detail"]


def test_other_users_jobs_are_not_found(client) -> None:
    job_id = submit(client)["job_id"]

    assert client.get(f"/api/v1/jobs/{job_id}", headers=OTHER).status_code == 404
    assert client.post(f"/api/v1/jobs/{job_id}/cancel", headers=OTHER).status_code == 404
    assert client.get("/api/v1/jobs/does-not-exist", headers=USER).status_code == 404


def test_results_before_completion_conflict(client) -> None:
    job_id = submit(client)["job_id"]

    response = client.get(f"/api/v1/jobs/{job_id}/results", headers=USER)

    assert response.status_code == 409
    assert "not completed" in response.json()["detail"]


def test_cancel_then_cancel_again(client) -> None:
    job_id = submit(client)["job_id"]

    first = client.post(f"/api/v1/jobs/{job_id}/cancel", headers=USER)
    second = client.post(f"/api/v1/jobs/{job_id}/cancel", headers=USER)

    assert first.json()["status"] == "cancelled"
    assert second.status_code == 409


def test_list_jobs_pagination(client) -> None:
    for _ in range(3):
        submit(client)

    page = client.get("/api/v1/jobs", params={"limit": 2}, headers=USER).json()

    assert len(page["jobs"]) == 2
    assert page["pagination"] == {"total": 3, "limit": 2, "offset": 0, "has_more": True}
    assert client.get("/api/v1/jobs", params={"limit": 500}, headers=USER).status_code == 422


def test_manage_reports_partial_failures(client) -> None:
    job_id = submit(client)["job_id"]

    response = client.post(
        "/api/v1/queue/manage",
        json={"operation": "pause", "job_ids": [job_id, "missing"]},
        headers=USER,
    )

    body = response.json()
    assert response.status_code == 200
    assert body["affected_jobs"] == 1
    assert body["failed_operations"] == 1
    assert body["errors"] == ["Job missing not found"]
    assert client.get(f"/api/v1/jobs/{job_id}", headers=USER).json()["status"] == "paused"


def test_manage_rejects_unknown_operation(client) -> None:
    response = client.post("/api/v1/queue/manage", json={"operation": "explode", "job_ids": ["x"]}, headers=USER)
    assert response.status_code == 400


def test_queue_status_and_metrics(client) -> None:
    submit(client, priority="urgent")

    status = client.get("/api/v1/queue/status", headers=USER).json()
    assert status["queue_stats"]["pending"] == 1
    assert status["priority_queue"]["urgent"] == 1
    assert set(status["estimated_wait_times"]) == {"low", "normal", "high", "urgent"}

    metrics = client.get("/api/v1/queue/metrics", headers=USER).json()
    assert metrics["current"]["queue_stats"]["pending_jobs"] == 1
    assert len(metrics["history"]) == 1


def test_config_read_and_update(client) -> None:
    assert client.get("/api/v1/queue/config", headers=USER).json()["max_concurrent_jobs"] == 5

    updated = client.patch("/api/v1/queue/config", json={"max_concurrent_jobs": 2}, headers=USER)
    assert updated.status_code == 200
    assert updated.json()["config"]["max_concurrent_jobs"] == 2

    rejected = client.patch("/api/v1/queue/config", json={"max_concurrent_jobs": 500}, headers=USER)
    assert rejected.status_code == 400
    assert "max_concurrent_jobs" in rejected.json()["detail"]


def test_cleanup(client) -> None:
    job_id = submit(client)["job_id"]
    client.post(f"/api/v1/jobs/{job_id}/cancel", headers=USER)

    response = client.post(
        "/api/v1/queue/cleanup", json={"cleanup_type": "cancelled", "older_than_days": 0}, headers=USER
    )

    assert response.json()["removed_jobs"] == 1
    assert response.json()["remaining_jobs"] == 0
    assert client.post("/api/v1/queue/cleanup", json={"cleanup_type": "bogus"}, headers=USER).status_code == 400


def test_feedback(client) -> None:
    job_id = submit(client)["job_id"]

    saved = client.post(
        f"/api/v1/jobs/{job_id}/feedback", json={"feedback_type": "suggestion", "rating": 5}, headers=USER
    )
    listed = client.get(f"/api/v1/jobs/{job_id}/feedback", headers=USER).json()

    assert saved.status_code == 200
    assert listed["count"] == 1
    assert listed["feedback"][0]["id"] == saved.json()["feedback"]["id"]
