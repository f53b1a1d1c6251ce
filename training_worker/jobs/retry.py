from __future__ import annotations

from training_worker.jobs.types import JobStatus


def resolve_failure_status(*, attempts: int, max_attempts: int) -> str:
    """Status a failed job moves to.

    ``attempts`` is already incremented at claim time, so a job with
    ``max_attempts=3`` is retried after its first and second failure and
    fails terminally on the third.
    """
    if attempts < max(1, max_attempts):
        return JobStatus.QUEUED.value
    return JobStatus.FAILED.value


def will_retry(*, attempts: int, max_attempts: int) -> bool:
    return resolve_failure_status(attempts=attempts, max_attempts=max_attempts) == JobStatus.QUEUED.value


def describe_error(exc: BaseException) -> str:
    message = str(exc).strip()
    if message:
        return message
    return type(exc).__name__
