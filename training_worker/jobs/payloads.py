from __future__ import annotations

from typing import Any

from training_worker.jobs.types import InvalidJobPayloadError


def job_payload(job: dict[str, Any]) -> dict[str, Any]:
    raw = job.get("payload")
    return raw if isinstance(raw, dict) else {}


def resolve_model_version(job: dict[str, Any]) -> str | None:
    payload = job_payload(job)
    for value in (job.get("model_version"), payload.get("modelVersion"), payload.get("model_version")):
        text = _as_text(value)
        if text:
            return text
    return None


def positive_int(payload: dict[str, Any], *keys: str, default: int) -> int:
    for key in keys:
        value = payload.get(key)
        if value is None:
            continue
        if isinstance(value, bool):
            raise InvalidJobPayloadError(f"{key} must be a positive integer")
        try:
            parsed = int(value)
        except (TypeError, ValueError) as exc:
            raise InvalidJobPayloadError(f"{key} must be a positive integer") from exc
        if parsed < 1:
            raise InvalidJobPayloadError(f"{key} must be a positive integer")
        return parsed
    return default


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)
