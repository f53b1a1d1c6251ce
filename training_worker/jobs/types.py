from enum import Enum


class JobType(str, Enum):
    SELF_PLAY = "self_play"
    EVALUATE = "evaluate"
    CHECKPOINT = "checkpoint"


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkerStatus(str, Enum):
    RUNNING = "running"
    IDLE = "idle"
    STOPPED = "stopped"


JOB_STATUS_VALUES = tuple(status.value for status in JobStatus)


class JobExecutionError(Exception):
    """Base error for failures raised while running a claimed job."""


class UnknownJobTypeError(JobExecutionError):
    """Raised when a claimed job carries a type with no registered handler."""


class InvalidJobPayloadError(JobExecutionError):
    """Raised when a handler rejects the job payload."""


class JobTimeoutError(JobExecutionError):
    """Raised when a handler exceeds the configured execution timeout."""
