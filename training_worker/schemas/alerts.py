from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from training_worker.schemas.jobs import QueueCounts, WorkerOut


class AlertOut(BaseModel):
    id: str
    severity: Literal["info", "warning", "error"]
    title: str
    message: str
    area: str


class AlertsOut(BaseModel):
    success: bool = True
    alerts: list[AlertOut] = Field(default_factory=list)
    counts: QueueCounts
    workers: list[WorkerOut] = Field(default_factory=list)
    timestamp: datetime
