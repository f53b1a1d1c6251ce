from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from training_worker.jobs.checkpoint import execute_checkpoint
from training_worker.jobs.evaluate import execute_evaluate
from training_worker.jobs.outcomes import OutcomeSource
from training_worker.jobs.self_play import execute_self_play
from training_worker.jobs.types import JobTimeoutError, JobType, UnknownJobTypeError

JobHandler = Callable[..., Awaitable[dict[str, Any]]]

HANDLERS: dict[JobType, JobHandler] = {
    JobType.SELF_PLAY: execute_self_play,
    JobType.EVALUATE: execute_evaluate,
    JobType.CHECKPOINT: execute_checkpoint,
}


def build_handler_registry(overrides: Mapping[JobType | str, JobHandler] | None = None) -> dict[JobType, JobHandler]:
    """Default handlers with ``overrides`` applied.

    Override keys must name a known job type; anything else raises
    ``ValueError`` here rather than when a job is dispatched.
    """
    registry = dict(HANDLERS)
    for key, handler in (overrides or {}).items():
        registry[JobType(key)] = handler
    return registry


def resolve_job_type(raw: Any) -> JobType:
    try:
        return JobType(raw)
    except ValueError as exc:
        raise UnknownJobTypeError(f"Unknown job type: {raw}") from exc


async def execute_job(
    job: dict[str, Any],
    *,
    repository: Any,
    outcomes: OutcomeSource,
    handlers: Mapping[JobType, JobHandler] | None = None,
    timeout_seconds: float | None = None,
) -> dict[str, Any]:
    job_type = resolve_job_type(job.get("type"))
    registry = handlers if handlers is not None else HANDLERS
    handler = registry.get(job_type)
    if handler is None:
        raise UnknownJobTypeError(f"Unknown job type: {job_type.value}")

    call = handler(job, repository=repository, outcomes=outcomes)
    if timeout_seconds is None:
        return await call
    try:
        return await asyncio.wait_for(call, timeout=timeout_seconds)
    except asyncio.TimeoutError as exc:
        raise JobTimeoutError(f"job timed out after {timeout_seconds:g}s") from exc
