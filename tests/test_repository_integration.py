from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import pytest

from training_worker.services.repository import MetricSample, PostgresRepository, RepositoryConflictError
from training_worker.worker import Worker

T = TypeVar("T")

TABLES = "training_jobs, training_workers, performance_metrics, training_sessions, models, games"


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("TW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require TW_DATABASE_URL or DATABASE_URL")
    return url


def _with_repository(database_url: str, scenario: Callable[[PostgresRepository], Awaitable[T]]) -> T:
    async def run() -> T:
        repository = PostgresRepository(database_url, min_pool_size=1, max_pool_size=10, job_max_attempts=3)
        try:
            await repository.ensure_schema()
            pool = await repository._get_pool()
            await pool.execute(f"truncate table {TABLES} restart identity")
            return await scenario(repository)
        finally:
            await repository.close()

    return asyncio.run(run())


def test_concurrent_claims_never_share_a_job(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> list[Any]:
        for _ in range(3):
            await repository.enqueue_job(job_type="self_play", payload={})
        return await asyncio.gather(*(repository.claim_job(f"worker-{index}", 60) for index in range(8)))

    results = _with_repository(database_url, scenario)
    claimed = [job for job in results if job is not None]
    assert len(claimed) == 3
    assert len({job["id"] for job in claimed}) == 3
    assert all(job["attempts"] == 1 for job in claimed)


def test_claim_order_is_priority_then_fifo(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> tuple[list[str], list[str]]:
        low = await repository.enqueue_job(job_type="self_play", payload={"n": 1}, priority=0)
        first_high = await repository.enqueue_job(job_type="self_play", payload={"n": 2}, priority=5)
        second_high = await repository.enqueue_job(job_type="self_play", payload={"n": 3}, priority=5)
        order = []
        for _ in range(3):
            job = await repository.claim_job("worker-a", 60)
            order.append(job["id"])
        return order, [first_high["id"], second_high["id"], low["id"]]

    claimed, expected = _with_repository(database_url, scenario)
    assert claimed == expected


def test_failures_retry_until_attempts_are_exhausted(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> list[str]:
        await repository.enqueue_job(job_type="self_play", payload={}, max_attempts=2)
        statuses = []
        for _ in range(2):
            job = await repository.claim_job("worker-a", 60)
            failed = await repository.fail_job(job["id"], worker_id="worker-a", error="boom")
            statuses.append(failed["status"])
        statuses.append(str(await repository.claim_job("worker-a", 60)))
        return statuses

    assert _with_repository(database_url, scenario) == ["queued", "failed", "None"]


def test_complete_requires_the_holding_worker(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> dict[str, Any]:
        await repository.enqueue_job(job_type="checkpoint", payload={})
        job = await repository.claim_job("worker-a", 60)
        with pytest.raises(RepositoryConflictError):
            await repository.complete_job(job["id"], worker_id="worker-b", result={})
        return await repository.complete_job(job["id"], worker_id="worker-a", result={"handled": True})

    completed = _with_repository(database_url, scenario)
    assert completed["status"] == "completed"
    assert completed["result"] == {"handled": True}
    assert completed["lease_expires_at"] is None


def test_expired_leases_are_swept(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> tuple[dict[str, int], dict[str, Any]]:
        job = await repository.enqueue_job(job_type="self_play", payload={})
        await repository.claim_job("worker-a", 0)
        await asyncio.sleep(0.01)
        swept = await repository.requeue_expired_jobs(limit=10)
        return swept, await repository.get_job(job["id"])

    swept, job = _with_repository(database_url, scenario)
    assert swept == {"requeued": 1, "failed": 0}
    assert job["status"] == "queued"
    assert job["error"] == "lease expired"
    assert job["worker_id"] is None


def test_stale_and_stopped_workers_are_not_active(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> tuple[list[str], bool]:
        for worker_id in ("worker-live", "worker-frozen", "worker-stopped"):
            await repository.upsert_worker(worker_id, status="running", info={})
        pool = await repository._get_pool()
        await pool.execute(
            "update training_workers set last_heartbeat = now() - interval '30 seconds' where worker_id = 'worker-frozen'"
        )
        await repository.mark_worker_stopped("worker-stopped")
        refused = await repository.heartbeat("worker-stopped", status="running")
        active = await repository.list_active_workers(15)
        return [row["worker_id"] for row in active], refused

    active, refused = _with_repository(database_url, scenario)
    assert active == ["worker-live"]
    assert refused is False


def test_self_play_job_end_to_end(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> tuple[dict[str, Any], ...]:
        session = await repository.create_session(name="integration")
        job = await repository.enqueue_job(
            job_type="self_play",
            payload={"games": 40},
            session_id=session["id"],
            model_version="v1",
        )
        worker = Worker(repository, worker_id="worker-int")
        await worker.tick()
        await repository.enqueue_job(job_type="checkpoint", payload={}, model_version="v1")
        await worker.tick()
        metrics = await repository.list_metrics(session_id=session["id"], metric_name="win_rate")
        return (
            await repository.get_job(job["id"]),
            await repository.get_session(session["id"]),
            await repository.get_model("v1"),
            metrics,
        )

    job, session, model, metrics = _with_repository(database_url, scenario)
    assert job["status"] == "completed"
    assert job["result"]["game_count"] == 40
    assert session["games_completed"] == 40
    assert [row["game_count"] for row in metrics] == [40]
    assert model["status"] == "training"
    assert model["model_data"]["checkpoint_job_id"]


def test_metrics_are_append_only(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> list[dict[str, Any]]:
        sample = MetricSample("session-1", "v1", "win_rate", 0.5, 100)
        await repository.append_metrics([sample])
        await repository.append_metrics([sample])
        return await repository.list_metrics(session_id="session-1")

    rows = _with_repository(database_url, scenario)
    assert len(rows) == 2
    assert rows[0]["id"] != rows[1]["id"]
