from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

JobStatusValue = Literal["queued", "processing", "completed", "failed"]
WorkerStatusValue = Literal["running", "idle", "stopped"]


class JobOut(BaseModel):
    id: str
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    status: JobStatusValue
    attempts: int = 0
    max_attempts: int = 3
    session_id: str | None = None
    model_version: str | None = None
    worker_id: str | None = None
    error: str | None = None
    result: dict[str, Any] | None = None
    lease_expires_at: datetime | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime | None = None


class WorkerOut(BaseModel):
    worker_id: str
    status: WorkerStatusValue
    started_at: datetime | None = None
    stopped_at: datetime | None = None
    last_heartbeat: datetime
    info: dict[str, Any] = Field(default_factory=dict)


class QueueCounts(BaseModel):
    queued: int = 0
    processing: int = 0
    failed: int = 0
    completed: int = 0


class WorkerStatusOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    running: bool
    local_running: bool = Field(alias="localRunning")
    worker_id: str = Field(alias="workerId")
    counts: QueueCounts
    active_workers: list[WorkerOut] = Field(default_factory=list, alias="activeWorkers")
    worker: WorkerOut | None = None


class JobControlRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: str | None = None
    type: str | None = None
    payload: dict[str, Any] | None = None
    priority: int | None = Field(default=None, ge=-(2**31), le=2**31 - 1)
    session_id: str | None = Field(default=None, alias="sessionId")
    model_version: str | None = Field(default=None, alias="modelVersion")


class WorkerControlOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    running: bool
    worker_id: str = Field(alias="workerId")


class EnqueueOut(BaseModel):
    success: bool
    job: JobOut


class ReapOut(BaseModel):
    requeued: int
    failed: int


class MetricOut(BaseModel):
    id: int
    session_id: str | None = None
    model_version: str | None = None
    metric_name: str
    metric_value: float
    game_count: int
    timestamp: datetime
