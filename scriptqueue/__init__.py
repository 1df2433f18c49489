"""Distributed generation job queue for the script generator."""

from .log_routing import JobLogRegistry
from .models import Job, JobPriority, JobStatus, WorkerResult, WorkerStatusEvent
from .queue_manager import QueueManager
from .waiter import JobWaiter
from .worker import GenerationWorker

__all__ = [
    "GenerationWorker",
    "Job",
    "JobLogRegistry",
    "JobPriority",
    "JobStatus",
    "JobWaiter",
    "QueueManager",
    "WorkerResult",
    "WorkerStatusEvent",
]
