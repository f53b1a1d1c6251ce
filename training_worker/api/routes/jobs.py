from fastapi import APIRouter, Depends, HTTPException, Query, status

from training_worker.core.config import Settings, get_settings
from training_worker.dependencies import get_repository, get_worker
from training_worker.jobs.types import JobType
from training_worker.schemas.jobs import (
    EnqueueOut,
    JobControlRequest,
    JobOut,
    QueueCounts,
    ReapOut,
    WorkerControlOut,
    WorkerOut,
    WorkerStatusOut,
)
from training_worker.services.repository import RepositoryUnavailableError
from training_worker.worker import Worker

router = APIRouter()

FIXED_TYPE_ACTIONS = {
    "enqueue_self_play": JobType.SELF_PLAY,
    "enqueue_eval": JobType.EVALUATE,
}


@router.get("", response_model=WorkerStatusOut)
async def get_worker_status(
    repository=Depends(get_repository),
    worker: Worker = Depends(get_worker),
    settings: Settings = Depends(get_settings),
) -> WorkerStatusOut:
    try:
        return await _worker_status(repository, worker, settings)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.post("", response_model=None)
async def control_worker(
    payload: JobControlRequest,
    repository=Depends(get_repository),
    worker: Worker = Depends(get_worker),
    settings: Settings = Depends(get_settings),
) -> WorkerControlOut | EnqueueOut | WorkerStatusOut:
    action = (payload.action or "").strip()
    if action not in {"start", "stop", "enqueue", "status", *FIXED_TYPE_ACTIONS}:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid action")

    try:
        if action == "start":
            running = await worker.start()
            return WorkerControlOut(success=True, running=running, worker_id=worker.worker_id)
        if action == "stop":
            running = await worker.stop()
            return WorkerControlOut(success=True, running=running, worker_id=worker.worker_id)
        if action == "status":
            return await _worker_status(repository, worker, settings)

        job_type = FIXED_TYPE_ACTIONS.get(action) or _resolve_enqueue_type(payload)
        job = await repository.enqueue_job(
            job_type=job_type.value,
            payload=payload.payload or {},
            priority=payload.priority or 0,
            session_id=payload.session_id,
            model_version=payload.model_version,
            max_attempts=settings.job_max_attempts,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return EnqueueOut(success=True, job=JobOut(**job))


@router.post("/reap-expired", response_model=ReapOut)
async def reap_expired_jobs(
    repository=Depends(get_repository),
    limit: int = Query(default=100, ge=1, le=1000),
) -> ReapOut:
    try:
        swept = await repository.requeue_expired_jobs(limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ReapOut(**swept)


async def _worker_status(repository, worker: Worker, settings: Settings) -> WorkerStatusOut:
    counts = await repository.queue_counts()
    active_workers = await repository.list_active_workers(settings.heartbeat_freshness_seconds)
    local_worker = await repository.get_worker(worker.worker_id)
    return WorkerStatusOut(
        running=bool(active_workers),
        local_running=worker.running,
        worker_id=worker.worker_id,
        counts=QueueCounts(**counts),
        active_workers=[WorkerOut(**row) for row in active_workers],
        worker=WorkerOut(**local_worker) if local_worker else None,
    )


def _resolve_enqueue_type(payload: JobControlRequest) -> JobType:
    body = payload.payload or {}
    raw_type = payload.type or body.get("type") or JobType.SELF_PLAY.value
    try:
        return JobType(raw_type)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"unknown job type: {raw_type}",
        ) from exc
