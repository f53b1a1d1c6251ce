from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from training_worker.jobs.outcomes import OutcomeSource
from training_worker.jobs.payloads import resolve_model_version


async def execute_checkpoint(
    job: dict[str, Any],
    *,
    repository: Any,
    outcomes: OutcomeSource,
    now: datetime | None = None,
) -> dict[str, Any]:
    model_version = resolve_model_version(job)
    if not model_version:
        return {
            "handled": True,
            "type": job.get("type"),
            "checkpointed": False,
            "reason": "missing_model_version",
        }

    checkpointed_at = (now or datetime.now(timezone.utc)).isoformat()
    await repository.ensure_model(model_version)
    await repository.merge_model_data(
        model_version,
        {"last_checkpoint": checkpointed_at, "checkpoint_job_id": job.get("id")},
    )
    return {
        "handled": True,
        "type": job.get("type"),
        "checkpointed": True,
        "model_version": model_version,
        "last_checkpoint": checkpointed_at,
    }
