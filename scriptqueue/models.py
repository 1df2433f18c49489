"""Data types shared by the queue, its workers and its callers."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobPriority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"


class WorkerState(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    COOLDOWN = "cooldown"
    DISABLED = "disabled"


class WorkerEventType(str, Enum):
    """Status transitions a worker reports while it works."""

    PROCESSING = "processing"
    ATTEMPTING = "attempting"
    SUCCESS = "success"
    ERROR = "error"
    WAITING = "waiting"
    DISABLED = "disabled"
    COOLDOWN = "cooldown"
    IDLE = "idle"
    STOPPED = "stopped"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id(index: int = 0) -> str:
    """Build a unique job id: creation time, batch index and a random suffix."""
    timestamp = int(utcnow().timestamp() * 1000)
    return f"job-{timestamp}-{index}-{uuid.uuid4().hex[:9]}"


@dataclass
class Job:
    """A unit of generation work.

    `metadata` belongs to the caller and is passed through untouched.
    `attempts` only counts the attempts of the worker that finished the
    job; read `total_attempts` for the count across every worker.
    """

    id: str
    title: str
    prompt: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    status: JobStatus = JobStatus.QUEUED
    priority: JobPriority = JobPriority.NORMAL

    # Local attempts of the worker that finished the job
    attempts: int = 0
    # Worker-level attempts over the whole lifetime, failover included
    total_attempts: int = 0
    # Workers that already failed this job; only retry_failed_jobs resets it
    excluded_workers: List[str] = field(default_factory=list)

    worker_id: Optional[str] = None
    result: Optional[str] = None
    error: Optional[str] = None

    added_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    def exclude_worker(self, worker_id: str) -> None:
        if worker_id not in self.excluded_workers:
            self.excluded_workers.append(worker_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status.value,
            "priority": self.priority.value,
            "metadata": self.metadata,
            "attempts": self.attempts,
            "total_attempts": self.total_attempts,
            "excluded_workers": list(self.excluded_workers),
            "worker_id": self.worker_id,
            "result": self.result,
            "error": self.error,
            "added_at": self.added_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "failed_at": self.failed_at.isoformat() if self.failed_at else None,
        }


@dataclass
class WorkerResult:
    """Outcome of one worker executing one job."""

    success: bool
    worker_id: str
    attempts: int = 0
    result: Optional[str] = None
    error: Optional[str] = None
    # Another worker should try the job
    should_requeue: bool = False
    # Stopped by cancellation, not a failure
    cancelled: bool = False


@dataclass
class WorkerStats:
    """Monitoring counters; never consulted for scheduling."""

    processed: int = 0
    successful: int = 0
    failed: int = 0
    total_retries: int = 0

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "total_retries": self.total_retries,
        }


@dataclass
class WorkerStatusEvent:
    worker_id: str
    status: WorkerEventType
    message: str = ""
    job_id: Optional[str] = None
    timestamp: str = field(default_factory=lambda: utcnow().isoformat())
    info: Dict[str, Any] = field(default_factory=dict)


@dataclass
class JobTracking:
    """Cross-worker bookkeeping for a job that has not reached a terminal state."""

    workers_attempted: Set[str] = field(default_factory=set)
    total_failures: int = 0
    last_error: Optional[str] = None


@dataclass
class QueueStats:
    total_jobs: int = 0
    completed: int = 0
    failed: int = 0
    in_queue: int = 0
    processing: int = 0

    def to_dict(self) -> dict:
        return {
            "total_jobs": self.total_jobs,
            "completed": self.completed,
            "failed": self.failed,
            "in_queue": self.in_queue,
            "processing": self.processing,
        }
