from __future__ import annotations

from typing import Any


def build_queue_alerts(
    counts: dict[str, int],
    active_workers: list[dict[str, Any]],
    *,
    freshness_seconds: int,
) -> list[dict[str, str]]:
    alerts: list[dict[str, str]] = []
    queued = int(counts.get("queued") or 0)
    failed = int(counts.get("failed") or 0)

    if failed > 0:
        alerts.append(
            {
                "id": f"jobs_failed_{failed}",
                "severity": "error",
                "title": "Training job failures",
                "message": f"{failed} job(s) have failed",
                "area": "training_jobs",
            }
        )

    if queued > 0 and not active_workers:
        alerts.append(
            {
                "id": f"queue_stalled_{queued}",
                "severity": "warning",
                "title": "Training queue stalled",
                "message": (
                    f"There are {queued} queued job(s) but no active workers in the last {freshness_seconds}s"
                ),
                "area": "workers",
            }
        )

    return alerts
