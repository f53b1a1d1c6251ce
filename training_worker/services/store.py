from __future__ import annotations

import asyncio
import copy
import itertools
from collections.abc import Callable
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from training_worker.jobs.lease_reaper import LEASE_EXPIRED_ERROR, expired_lease_status, should_requeue
from training_worker.jobs.retry import resolve_failure_status
from training_worker.jobs.types import JOB_STATUS_VALUES, JobStatus, WorkerStatus
from training_worker.services.repository import (
    MetricSample,
    RepositoryConflictError,
    RepositoryNotFoundError,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryJobStore:
    """Process-local job store used when no database is configured.

    Mirrors ``PostgresRepository``. Every mutation runs under one lock, which
    gives claims the same mutual exclusion that ``for update skip locked``
    gives concurrent database transactions.
    """

    def __init__(self, *, job_max_attempts: int = 3, clock: Callable[[], datetime] | None = None) -> None:
        self.job_max_attempts = max(1, job_max_attempts)
        self.clock = clock or _utcnow
        self.jobs: dict[str, dict[str, Any]] = {}
        self.workers: dict[str, dict[str, Any]] = {}
        self.metrics: list[dict[str, Any]] = []
        self.sessions: dict[str, dict[str, Any]] = {}
        self.models: dict[str, dict[str, Any]] = {}
        self.games: list[dict[str, Any]] = []
        self._lock = asyncio.Lock()
        self._sequence = itertools.count(1)

    async def close(self) -> None:
        return None

    async def ensure_schema(self) -> None:
        return None

    async def enqueue_job(
        self,
        *,
        job_type: str,
        payload: dict[str, Any],
        priority: int = 0,
        session_id: str | None = None,
        model_version: str | None = None,
        max_attempts: int | None = None,
    ) -> dict[str, Any]:
        async with self._lock:
            now = self.clock()
            job = {
                "id": str(uuid4()),
                "type": job_type,
                "payload": copy.deepcopy(payload),
                "priority": priority,
                "status": JobStatus.QUEUED.value,
                "attempts": 0,
                "max_attempts": max(1, max_attempts or self.job_max_attempts),
                "session_id": session_id,
                "model_version": model_version,
                "worker_id": None,
                "error": None,
                "result": None,
                "lease_expires_at": None,
                "created_at": now,
                "started_at": None,
                "completed_at": None,
                "updated_at": now,
                "_seq": next(self._sequence),
            }
            self.jobs[job["id"]] = job
            return self._public(job)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        job = self.jobs.get(job_id)
        if not job:
            raise RepositoryNotFoundError("job not found")
        return self._public(job)

    async def claim_job(self, worker_id: str, lease_seconds: int) -> dict[str, Any] | None:
        async with self._lock:
            queued = [job for job in self.jobs.values() if job["status"] == JobStatus.QUEUED.value]
            if not queued:
                return None
            job = min(queued, key=lambda item: (-item["priority"], item["created_at"], item["_seq"]))
            now = self.clock()
            job["status"] = JobStatus.PROCESSING.value
            job["started_at"] = now
            job["worker_id"] = worker_id
            job["attempts"] += 1
            job["lease_expires_at"] = now + timedelta(seconds=lease_seconds)
            job["updated_at"] = now
            return self._public(job)

    async def complete_job(
        self,
        job_id: str,
        *,
        worker_id: str,
        result: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        async with self._lock:
            job = self._held_job(job_id, worker_id)
            now = self.clock()
            job["status"] = JobStatus.COMPLETED.value
            job["completed_at"] = now
            job["error"] = None
            job["result"] = copy.deepcopy(result)
            job["lease_expires_at"] = None
            job["updated_at"] = now
            return self._public(job)

    async def fail_job(self, job_id: str, *, worker_id: str, error: str) -> dict[str, Any]:
        async with self._lock:
            job = self._held_job(job_id, worker_id)
            job["status"] = resolve_failure_status(attempts=job["attempts"], max_attempts=job["max_attempts"])
            job["error"] = error
            job["worker_id"] = None
            job["started_at"] = None
            job["lease_expires_at"] = None
            job["updated_at"] = self.clock()
            return self._public(job)

    async def requeue_expired_jobs(self, limit: int) -> dict[str, int]:
        bounded_limit = max(1, min(limit, 1000))
        counts = {"requeued": 0, "failed": 0}
        async with self._lock:
            now = self.clock()
            expired = sorted(
                (job for job in self.jobs.values() if should_requeue(job, now=now)),
                key=lambda item: item["lease_expires_at"],
            )
            for job in expired[:bounded_limit]:
                job["status"] = expired_lease_status(job, default_max_attempts=self.job_max_attempts)
                job["error"] = LEASE_EXPIRED_ERROR
                job["worker_id"] = None
                job["started_at"] = None
                job["lease_expires_at"] = None
                job["updated_at"] = now
                counts["requeued" if job["status"] == JobStatus.QUEUED.value else "failed"] += 1
        return counts

    async def queue_counts(self) -> dict[str, int]:
        counts = {status: 0 for status in JOB_STATUS_VALUES}
        for job in self.jobs.values():
            counts[job["status"]] += 1
        return counts

    async def upsert_worker(self, worker_id: str, *, status: str, info: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            now = self.clock()
            worker = {
                "worker_id": worker_id,
                "status": status,
                "started_at": now,
                "stopped_at": None,
                "last_heartbeat": now,
                "info": copy.deepcopy(info),
            }
            self.workers[worker_id] = worker
            return dict(worker)

    async def heartbeat(self, worker_id: str, *, status: str) -> bool:
        async with self._lock:
            worker = self.workers.get(worker_id)
            if worker is None or worker["status"] == WorkerStatus.STOPPED.value:
                return False
            worker["last_heartbeat"] = self.clock()
            worker["status"] = status
            return True

    async def mark_worker_stopped(self, worker_id: str) -> None:
        async with self._lock:
            worker = self.workers.get(worker_id)
            if worker is not None:
                worker["status"] = WorkerStatus.STOPPED.value
                worker["stopped_at"] = self.clock()

    async def get_worker(self, worker_id: str) -> dict[str, Any] | None:
        worker = self.workers.get(worker_id)
        return dict(worker) if worker else None

    async def list_active_workers(self, freshness_seconds: int) -> list[dict[str, Any]]:
        cutoff = self.clock() - timedelta(seconds=freshness_seconds)
        active = [
            dict(worker)
            for worker in self.workers.values()
            if worker["last_heartbeat"] > cutoff and worker["status"] != WorkerStatus.STOPPED.value
        ]
        return sorted(active, key=lambda item: item["last_heartbeat"], reverse=True)

    async def append_metrics(self, samples: list[MetricSample]) -> list[dict[str, Any]]:
        inserted: list[dict[str, Any]] = []
        async with self._lock:
            for sample in samples:
                row = {"id": len(self.metrics) + 1, **asdict(sample), "timestamp": self.clock()}
                self.metrics.append(row)
                inserted.append(dict(row))
        return inserted

    async def list_metrics(
        self,
        *,
        session_id: str | None = None,
        model_version: str | None = None,
        metric_name: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        rows = [
            dict(row)
            for row in self.metrics
            if (session_id is None or row["session_id"] == session_id)
            and (model_version is None or row["model_version"] == model_version)
            and (metric_name is None or row["metric_name"] == metric_name)
        ]
        rows.sort(key=lambda item: (item["timestamp"], item["id"]), reverse=True)
        return rows[: max(1, min(limit, 1000))]

    async def create_session(self, *, name: str | None = None) -> dict[str, Any]:
        async with self._lock:
            now = self.clock()
            session = {
                "id": str(uuid4()),
                "name": name,
                "status": "running",
                "games_completed": 0,
                "win_rate": None,
                "created_at": now,
                "updated_at": now,
            }
            self.sessions[session["id"]] = session
            return dict(session)

    async def get_session(self, session_id: str) -> dict[str, Any]:
        session = self.sessions.get(session_id)
        if not session:
            raise RepositoryNotFoundError("session not found")
        return dict(session)

    async def record_session_progress(self, session_id: str, *, games_delta: int, win_rate: float) -> int | None:
        async with self._lock:
            session = self.sessions.get(session_id)
            if session is None:
                return None
            session["games_completed"] = (session["games_completed"] or 0) + games_delta
            session["win_rate"] = win_rate
            session["updated_at"] = self.clock()
            return session["games_completed"]

    async def ensure_model(self, model_version: str) -> bool:
        async with self._lock:
            if model_version in self.models:
                return False
            self.models[model_version] = {
                "version": model_version,
                "name": f"Model {model_version}",
                "description": "Auto-created by background worker",
                "architecture": "alphazero",
                "status": "training",
                "win_rate_vs_previous": None,
                "policy_accuracy": None,
                "value_accuracy": None,
                "model_data": {},
                "created_at": self.clock(),
            }
            return True

    async def get_model(self, model_version: str) -> dict[str, Any]:
        model = self.models.get(model_version)
        if not model:
            raise RepositoryNotFoundError("model not found")
        return copy.deepcopy(model)

    async def update_model_evaluation(
        self,
        model_version: str,
        *,
        win_rate_vs_previous: float,
        policy_accuracy: float,
        value_accuracy: float,
    ) -> None:
        async with self._lock:
            model = self.models.get(model_version)
            if model is None:
                return
            model["win_rate_vs_previous"] = win_rate_vs_previous
            model["policy_accuracy"] = policy_accuracy
            model["value_accuracy"] = value_accuracy

    async def merge_model_data(self, model_version: str, data: dict[str, Any]) -> None:
        async with self._lock:
            model = self.models.get(model_version)
            if model is not None:
                model["model_data"] = {**model["model_data"], **copy.deepcopy(data)}

    async def record_games(self, session_key: str, games: list[dict[str, Any]]) -> int:
        async with self._lock:
            for game in games:
                self.games.append({"session_id": session_key, **copy.deepcopy(game), "created_at": self.clock()})
        return len(games)

    def _held_job(self, job_id: str, worker_id: str) -> dict[str, Any]:
        job = self.jobs.get(job_id)
        if not job:
            raise RepositoryNotFoundError("job not found")
        if job["status"] != JobStatus.PROCESSING.value or job["worker_id"] != worker_id:
            raise RepositoryConflictError("job is not held by this worker")
        return job

    @staticmethod
    def _public(job: dict[str, Any]) -> dict[str, Any]:
        return {key: copy.deepcopy(value) for key, value in job.items() if not key.startswith("_")}
