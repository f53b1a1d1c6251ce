from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, status

from training_worker.core.config import Settings, get_settings
from training_worker.dependencies import get_repository
from training_worker.schemas.alerts import AlertOut, AlertsOut
from training_worker.schemas.jobs import QueueCounts, WorkerOut
from training_worker.services.alerts import build_queue_alerts
from training_worker.services.repository import RepositoryUnavailableError

router = APIRouter()


@router.get("/alerts", response_model=AlertsOut)
async def get_alerts(
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> AlertsOut:
    try:
        counts = await repository.queue_counts()
        active_workers = await repository.list_active_workers(settings.heartbeat_freshness_seconds)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    alerts = build_queue_alerts(
        counts,
        active_workers,
        freshness_seconds=settings.heartbeat_freshness_seconds,
    )
    return AlertsOut(
        success=True,
        alerts=[AlertOut(**alert) for alert in alerts],
        counts=QueueCounts(**counts),
        workers=[WorkerOut(**row) for row in active_workers],
        timestamp=datetime.now(timezone.utc),
    )
