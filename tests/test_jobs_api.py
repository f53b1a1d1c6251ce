from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from training_worker.dependencies import get_repository, get_worker
from training_worker.main import app
from training_worker.services.repository import MetricSample
from training_worker.services.store import InMemoryJobStore
from training_worker.worker import Worker


@pytest.fixture
def worker(store: InMemoryJobStore, outcomes) -> Worker:
    return Worker(store, outcomes=outcomes, worker_id="worker-api", poll_interval_seconds=0.01)


@pytest.fixture
def api_client(store: InMemoryJobStore, worker: Worker) -> TestClient:
    app.dependency_overrides[get_repository] = lambda: store
    app.dependency_overrides[get_worker] = lambda: worker

    with TestClient(app) as client:
        yield client
        client.portal.call(worker.stop)
        client.portal.call(worker.join)

    app.dependency_overrides.clear()


def _wait_for_counts(client: TestClient, key: str, expected: int, timeout: float = 3.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        body = client.get("/jobs").json()
        if body["counts"][key] == expected or time.monotonic() > deadline:
            return body
        time.sleep(0.02)


def test_enqueue_persists_job(api_client: TestClient, store: InMemoryJobStore) -> None:
    response = api_client.post(
        "/jobs",
        json={
            "action": "enqueue",
            "type": "evaluate",
            "payload": {"evalGames": 40},
            "priority": 4,
            "sessionId": "session-1",
            "modelVersion": "v9",
        },
    )
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    job = body["job"]
    assert job["type"] == "evaluate"
    assert job["status"] == "queued"
    assert job["priority"] == 4
    assert job["attempts"] == 0
    assert job["max_attempts"] == 3
    assert job["session_id"] == "session-1"
    assert job["model_version"] == "v9"
    assert job["payload"] == {"evalGames": 40}
    assert list(store.jobs) == [job["id"]]


def test_enqueue_defaults_to_self_play(api_client: TestClient) -> None:
    response = api_client.post("/jobs", json={"action": "enqueue"})
    assert response.status_code == 200
    assert response.json()["job"]["type"] == "self_play"


def test_enqueue_reads_type_from_payload(api_client: TestClient) -> None:
    response = api_client.post("/jobs", json={"action": "enqueue", "payload": {"type": "checkpoint"}})
    assert response.status_code == 200
    assert response.json()["job"]["type"] == "checkpoint"


@pytest.mark.parametrize(
    ("action", "job_type"),
    [("enqueue_self_play", "self_play"), ("enqueue_eval", "evaluate")],
)
def test_fixed_type_enqueue_actions(api_client: TestClient, action: str, job_type: str) -> None:
    response = api_client.post("/jobs", json={"action": action, "type": "checkpoint"})
    assert response.status_code == 200
    assert response.json()["job"]["type"] == job_type


def test_enqueue_rejects_unknown_type(api_client: TestClient, store: InMemoryJobStore) -> None:
    response = api_client.post("/jobs", json={"action": "enqueue", "type": "train_network"})
    assert response.status_code == 422
    assert store.jobs == {}


@pytest.mark.parametrize("body", [{}, {"action": ""}, {"action": "restart"}])
def test_invalid_action_is_rejected_without_side_effects(
    api_client: TestClient,
    store: InMemoryJobStore,
    worker: Worker,
    body: dict,
) -> None:
    response = api_client.post("/jobs", json=body)
    assert response.status_code == 400
    assert response.json()["detail"] == "invalid action"
    assert store.jobs == {}
    assert store.workers == {}
    assert worker.running is False


def test_enqueue_rejects_out_of_range_priority(api_client: TestClient) -> None:
    response = api_client.post("/jobs", json={"action": "enqueue", "priority": 2**40})
    assert response.status_code == 422


def test_start_and_stop_are_idempotent(api_client: TestClient, store: InMemoryJobStore) -> None:
    first = api_client.post("/jobs", json={"action": "start"})
    second = api_client.post("/jobs", json={"action": "start"})
    assert first.status_code == 200
    assert first.json() == {"success": True, "running": True, "workerId": "worker-api"}
    assert second.json()["running"] is True
    assert list(store.workers) == ["worker-api"]

    stopped = api_client.post("/jobs", json={"action": "stop"})
    again = api_client.post("/jobs", json={"action": "stop"})
    assert stopped.json() == {"success": True, "running": False, "workerId": "worker-api"}
    assert again.json()["running"] is False
    assert store.workers["worker-api"]["status"] == "stopped"


def test_status_reports_counts_and_workers(api_client: TestClient) -> None:
    api_client.post("/jobs", json={"action": "enqueue", "type": "self_play"})

    idle = api_client.get("/jobs")
    assert idle.status_code == 200
    body = idle.json()
    assert body["running"] is False
    assert body["localRunning"] is False
    assert body["workerId"] == "worker-api"
    assert body["activeWorkers"] == []
    assert body["worker"] is None
    assert body["counts"] == {"queued": 1, "processing": 0, "failed": 0, "completed": 0}

    api_client.post("/jobs", json={"action": "start"})
    running = api_client.post("/jobs", json={"action": "status"}).json()
    assert running["running"] is True
    assert running["localRunning"] is True
    assert [row["worker_id"] for row in running["activeWorkers"]] == ["worker-api"]
    assert running["worker"]["worker_id"] == "worker-api"


def test_started_worker_drains_queue(api_client: TestClient, store: InMemoryJobStore) -> None:
    api_client.post("/jobs", json={"action": "enqueue_self_play", "payload": {"games": 20}})
    api_client.post("/jobs", json={"action": "enqueue_eval", "modelVersion": "v1"})
    api_client.post("/jobs", json={"action": "start"})

    body = _wait_for_counts(api_client, "completed", 2)
    assert body["counts"]["completed"] == 2
    assert body["counts"]["queued"] == 0
    assert "v1" in store.models


def test_reap_expired_endpoint(api_client: TestClient, store: InMemoryJobStore) -> None:
    api_client.post("/jobs", json={"action": "enqueue"})
    api_client.portal.call(store.claim_job, "worker-gone", 0)

    response = api_client.post("/jobs/reap-expired", params={"limit": 10})
    assert response.status_code == 200
    assert response.json() == {"requeued": 1, "failed": 0}
    assert api_client.get("/jobs").json()["counts"]["queued"] == 1


def test_reap_expired_validates_limit(api_client: TestClient) -> None:
    assert api_client.post("/jobs/reap-expired", params={"limit": 0}).status_code == 422


def test_alerts_report_failures_and_stalled_queue(api_client: TestClient, store: InMemoryJobStore) -> None:
    api_client.post("/jobs", json={"action": "enqueue"})
    api_client.post("/jobs", json={"action": "enqueue"})
    failed_id = next(iter(store.jobs))
    store.jobs[failed_id]["status"] = "failed"

    response = api_client.get("/system/alerts")
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert [alert["id"] for alert in body["alerts"]] == ["jobs_failed_1", "queue_stalled_1"]
    assert [alert["severity"] for alert in body["alerts"]] == ["error", "warning"]
    assert body["counts"]["failed"] == 1
    assert body["workers"] == []


def test_metrics_endpoint_filters_newest_first(api_client: TestClient, store: InMemoryJobStore) -> None:
    api_client.portal.call(
        store.append_metrics,
        [
            MetricSample("session-1", "v1", "win_rate", 0.5, 100),
            MetricSample("session-1", "v1", "avg_turns", 11.0, 100),
            MetricSample("session-2", "v1", "win_rate", 0.6, 50),
            MetricSample("session-1", "v1", "win_rate", 0.55, 200),
        ],
    )

    response = api_client.get("/metrics", params={"session_id": "session-1", "metric_name": "win_rate"})
    assert response.status_code == 200
    rows = response.json()
    assert [row["game_count"] for row in rows] == [200, 100]
    assert {row["metric_name"] for row in rows} == {"win_rate"}


def test_healthz_inside_lifespan(api_client: TestClient) -> None:
    assert api_client.get("/healthz").json() == {"status": "ok"}
