from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import random
import secrets
import time
from collections.abc import Mapping
from typing import Any

from opentelemetry import trace

from training_worker.core.config import Settings
from training_worker.jobs.executor import JobHandler, build_handler_registry, execute_job
from training_worker.jobs.outcomes import OutcomeSource, RandomBaselineOutcomes
from training_worker.jobs.retry import describe_error, will_retry
from training_worker.jobs.types import JobType, WorkerStatus
from training_worker.services.repository import RepositoryConflictError, RepositoryNotFoundError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def generate_worker_id() -> str:
    return f"worker_{secrets.token_hex(5)}_{int(time.time() * 1000)}"


class Worker:
    """Polls the job store, one claimed job at a time.

    Each tick refreshes the heartbeat, sweeps expired leases when due, claims
    at most one job and runs it to completion. The next tick is scheduled
    ``poll_interval_seconds`` after the previous one finishes, so ticks never
    overlap. ``stop()`` only prevents further ticks; a job in flight runs to
    completion and ``join()`` waits for it. A ``start()`` that lands while
    that job is still running resumes the same loop instead of spawning a
    second one, and ``start()``/``stop()`` never interleave.
    """

    def __init__(
        self,
        repository: Any,
        *,
        outcomes: OutcomeSource | None = None,
        handlers: Mapping[JobType | str, JobHandler] | None = None,
        worker_id: str | None = None,
        poll_interval_seconds: float = 2.0,
        max_backoff_seconds: float = 15.0,
        job_timeout_seconds: float | None = 300.0,
        claim_lease_seconds: int = 600,
        lease_reaper_interval_seconds: float = 15.0,
        lease_reaper_batch_size: int = 100,
    ) -> None:
        self.repository = repository
        self.outcomes = outcomes or RandomBaselineOutcomes()
        self.handlers = build_handler_registry(handlers)
        self.worker_id = worker_id or generate_worker_id()
        self.poll_interval_seconds = poll_interval_seconds
        self.max_backoff_seconds = max(poll_interval_seconds, max_backoff_seconds)
        self.job_timeout_seconds = job_timeout_seconds
        self.claim_lease_seconds = claim_lease_seconds
        self.lease_reaper_interval_seconds = lease_reaper_interval_seconds
        self.lease_reaper_batch_size = lease_reaper_batch_size
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._stopping: asyncio.Event | None = None
        self._last_reap_at: float | None = None
        self._lifecycle = asyncio.Lock()

    @classmethod
    def from_settings(cls, repository: Any, settings: Settings, **kwargs: Any) -> Worker:
        kwargs.setdefault("outcomes", RandomBaselineOutcomes(seed=settings.outcome_seed))
        return cls(
            repository,
            poll_interval_seconds=settings.poll_interval_seconds,
            max_backoff_seconds=settings.max_backoff_seconds,
            job_timeout_seconds=settings.job_timeout_seconds,
            claim_lease_seconds=settings.claim_lease_seconds,
            lease_reaper_interval_seconds=settings.lease_reaper_interval_seconds,
            lease_reaper_batch_size=settings.lease_reaper_batch_size,
            **kwargs,
        )

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> bool:
        async with self._lifecycle:
            if self._running:
                return True

            await self.repository.upsert_worker(
                self.worker_id,
                status=WorkerStatus.RUNNING.value,
                info={"pid": os.getpid()},
            )
            self._running = True
            if self._task is not None and not self._task.done():
                # The previous loop is still finishing its last job; keep it.
                self._stopping.clear()
            else:
                self._stopping = asyncio.Event()
                self._task = asyncio.create_task(self._run(self._stopping), name=f"training-worker:{self.worker_id}")
            logger.info("worker started id=%s poll_interval=%.1fs", self.worker_id, self.poll_interval_seconds)
            return True

    async def stop(self) -> bool:
        async with self._lifecycle:
            if not self._running:
                return False

            self._running = False
            if self._stopping is not None:
                self._stopping.set()
            await self.repository.mark_worker_stopped(self.worker_id)
            logger.info("worker stopped id=%s", self.worker_id)
            return False

    async def join(self) -> None:
        task = self._task
        if task is not None and task is not asyncio.current_task():
            await task

    async def tick(self) -> dict[str, Any] | None:
        with tracer.start_as_current_span("worker.tick") as span:
            span.set_attribute("worker.id", self.worker_id)
            await self._heartbeat()
            await self._maybe_reap_expired_leases()

            job = await self.repository.claim_job(self.worker_id, self.claim_lease_seconds)
            if job is None:
                return None
            return await self.process_job(job)

    async def process_job(self, job: dict[str, Any]) -> dict[str, Any] | None:
        """Run ``job`` and record the outcome; returns the updated row.

        Returns ``None`` when the job is no longer held by this worker by the
        time the outcome is recorded (its lease was swept and reassigned).
        """
        with tracer.start_as_current_span("worker.process_job") as job_span:
            job_span.set_attribute("job.id", job["id"])
            job_span.set_attribute("job.type", str(job.get("type")))
            job_span.set_attribute("job.attempt", int(job.get("attempts") or 0))

            error: str | None = None
            result: dict[str, Any] | None = None
            try:
                result = await execute_job(
                    job,
                    repository=self.repository,
                    outcomes=self.outcomes,
                    handlers=self.handlers,
                    timeout_seconds=self.job_timeout_seconds,
                )
            except Exception as exc:
                error = describe_error(exc)
                job_span.record_exception(exc)
                logger.exception(
                    "job execution failed id=%s type=%s attempt=%s/%s retry=%s",
                    job["id"],
                    job.get("type"),
                    job.get("attempts"),
                    job.get("max_attempts"),
                    will_retry(attempts=int(job.get("attempts") or 0), max_attempts=int(job.get("max_attempts") or 1)),
                )

            try:
                if error is None:
                    updated = await self.repository.complete_job(job["id"], worker_id=self.worker_id, result=result)
                    logger.info("job completed id=%s type=%s", job["id"], job.get("type"))
                else:
                    updated = await self.repository.fail_job(job["id"], worker_id=self.worker_id, error=error)
            except (RepositoryConflictError, RepositoryNotFoundError) as exc:
                logger.warning("job outcome dropped id=%s worker=%s: %s", job["id"], self.worker_id, exc)
                return None

            job_span.set_attribute("job.status", updated["status"])
            return updated

    async def reap_expired_leases(self) -> dict[str, int]:
        swept = await self.repository.requeue_expired_jobs(limit=self.lease_reaper_batch_size)
        self._last_reap_at = time.monotonic()
        if swept.get("requeued") or swept.get("failed"):
            logger.info("swept expired leases: requeued=%s failed=%s", swept.get("requeued"), swept.get("failed"))
        return swept

    async def _heartbeat(self) -> None:
        status = WorkerStatus.RUNNING.value if self._running else WorkerStatus.IDLE.value
        updated = await self.repository.heartbeat(self.worker_id, status=status)
        if not updated and self._running:
            await self.repository.upsert_worker(self.worker_id, status=status, info={"pid": os.getpid()})

    async def _maybe_reap_expired_leases(self) -> None:
        now = time.monotonic()
        if self._last_reap_at is not None and now - self._last_reap_at < self.lease_reaper_interval_seconds:
            return
        await self.reap_expired_leases()

    async def _run(self, stopping: asyncio.Event) -> None:
        delay = self.poll_interval_seconds
        while not stopping.is_set():
            try:
                await self.tick()
                delay = self.poll_interval_seconds
            except Exception as exc:
                jitter = random.uniform(0.0, 0.5)
                delay = min(delay * (2.0 + jitter), self.max_backoff_seconds)
                logger.exception("worker tick failed: %s; retry in %.1fs", exc, delay)

            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stopping.wait(), timeout=delay)
