"""Scheduled job records and run history."""

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from content_engine.models import ContentBucket

JobHandler = Callable[[], Awaitable[Any]]


class JobStatus(str, Enum):
    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class RunTrigger(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


@dataclass
class JobRun:
    """One execution of a job."""

    job_id: str
    trigger: RunTrigger
    started_at: float
    finished_at: float
    succeeded: bool
    error: Optional[str] = None
    result: Any = None

    @property
    def duration(self) -> float:
        return self.finished_at - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "trigger": self.trigger.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration": self.duration,
            "succeeded": self.succeeded,
            "error": self.error,
        }


@dataclass
class ScheduledJob:
    """A recurring job.

    Attributes:
        id: Unique job id
        handler: Coroutine function run on each execution
        interval_seconds: Time between the end of one scheduled run and the next
        bucket: Content bucket the job refreshes, if any
        name: Human readable name
        last_run_at: Start time of the latest run
        next_run_at: Next scheduled tick; None while a scheduled run is in flight
        is_running: Whether an execution is in flight
    """

    id: str
    handler: JobHandler
    interval_seconds: float
    bucket: Optional[ContentBucket] = None
    name: Optional[str] = None
    last_run_at: Optional[float] = None
    next_run_at: Optional[float] = None
    is_running: bool = False
    status: JobStatus = JobStatus.SCHEDULED
    last_error: Optional[str] = None
    run_count: int = 0
    failure_count: int = 0
    history: Deque[JobRun] = field(default_factory=lambda: deque(maxlen=50))

    def is_due(self, now: float) -> bool:
        return self.next_run_at is not None and now >= self.next_run_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name or self.id,
            "interval_seconds": self.interval_seconds,
            "bucket": self.bucket.describe() if self.bucket else None,
            "last_run_at": self.last_run_at,
            "next_run_at": self.next_run_at,
            "is_running": self.is_running,
            "status": self.status.value,
            "last_error": self.last_error,
            "run_count": self.run_count,
            "failure_count": self.failure_count,
        }
