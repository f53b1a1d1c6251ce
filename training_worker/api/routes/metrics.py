from fastapi import APIRouter, Depends, HTTPException, Query, status

from training_worker.dependencies import get_repository
from training_worker.schemas.jobs import MetricOut
from training_worker.services.repository import RepositoryUnavailableError

router = APIRouter()


@router.get("", response_model=list[MetricOut])
async def list_metrics(
    repository=Depends(get_repository),
    session_id: str | None = Query(default=None, min_length=1),
    model_version: str | None = Query(default=None, min_length=1),
    metric_name: str | None = Query(default=None, min_length=1),
    limit: int = Query(default=100, ge=1, le=1000),
) -> list[MetricOut]:
    try:
        rows = await repository.list_metrics(
            session_id=session_id,
            model_version=model_version,
            metric_name=metric_name,
            limit=limit,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [MetricOut(**row) for row in rows]
