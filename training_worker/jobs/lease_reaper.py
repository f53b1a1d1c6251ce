from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from training_worker.jobs.retry import resolve_failure_status
from training_worker.jobs.types import JobStatus

LEASE_EXPIRED_ERROR = "lease expired"


def lease_expired(job: dict[str, Any], now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    lease = job.get("lease_expires_at")
    if not lease:
        return False

    if isinstance(lease, str):
        lease = datetime.fromisoformat(lease.replace("Z", "+00:00"))
    if lease.tzinfo is None:
        lease = lease.replace(tzinfo=timezone.utc)

    return lease <= now


def should_requeue(job: dict[str, Any], now: datetime | None = None) -> bool:
    return job.get("status") == JobStatus.PROCESSING.value and lease_expired(job, now=now)


def expired_lease_status(job: dict[str, Any], *, default_max_attempts: int = 3) -> str:
    attempts = int(job.get("attempts") or 0)
    max_attempts = int(job.get("max_attempts") or default_max_attempts)
    return resolve_failure_status(attempts=attempts, max_attempts=max_attempts)
