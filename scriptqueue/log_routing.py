"""Routing of worker status events to per-job log callbacks."""

import asyncio
from collections import OrderedDict
from typing import Callable, Dict, Optional

import structlog

from scriptqueue.config import settings
from scriptqueue.models import WorkerEventType, WorkerStatusEvent

logger = structlog.get_logger()

# log_callback(message, level) with level in info/error/success
LogCallback = Callable[[str, str], None]

FAILOVER_MESSAGE = "Attempt failed, looking for the next API key..."


class JobLogRegistry:
    """Maps job ids to caller log callbacks.

    Registrations are removed when the job's waiter finishes. As a
    safety net every registration also expires after `ttl` seconds, and
    the oldest entries are evicted if the mapping grows past `max_size`.
    """

    def __init__(
        self,
        max_size: Optional[int] = None,
        evict_count: Optional[int] = None,
        ttl: Optional[float] = None,
    ):
        self.max_size = max_size if max_size is not None else settings.LOG_REGISTRY_MAX_SIZE
        self.evict_count = evict_count if evict_count is not None else settings.LOG_REGISTRY_EVICT_COUNT
        self.ttl = ttl if ttl is not None else settings.LOG_REGISTRY_TTL
        self._callbacks: "OrderedDict[str, LogCallback]" = OrderedDict()
        self._expiry_handles: Dict[str, asyncio.TimerHandle] = {}

    def __len__(self) -> int:
        return len(self._callbacks)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._callbacks

    def get(self, job_id: str) -> Optional[LogCallback]:
        return self._callbacks.get(job_id)

    def register(self, job_id: str, callback: LogCallback) -> None:
        """Register the log callback of a job."""
        if len(self._callbacks) >= self.max_size:
            self._evict_oldest()

        self.unregister(job_id)
        self._callbacks[job_id] = callback

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._expiry_handles[job_id] = loop.call_later(self.ttl, self._expire, job_id)

    def unregister(self, job_id: str) -> None:
        self._callbacks.pop(job_id, None)
        handle = self._expiry_handles.pop(job_id, None)
        if handle is not None:
            handle.cancel()

    def clear(self) -> None:
        for handle in self._expiry_handles.values():
            handle.cancel()
        self._expiry_handles.clear()
        self._callbacks.clear()

    def _expire(self, job_id: str) -> None:
        self._expiry_handles.pop(job_id, None)
        if self._callbacks.pop(job_id, None) is not None:
            logger.info("Expired job log registration", job_id=job_id, ttl=self.ttl)

    def _evict_oldest(self) -> None:
        evicted = 0
        while self._callbacks and evicted < self.evict_count:
            job_id = next(iter(self._callbacks))
            self.unregister(job_id)
            evicted += 1
        logger.warning("Emergency eviction of job log registrations", evicted=evicted, max_size=self.max_size)

    def log(self, job_id: str, message: str, level: str = "info") -> None:
        """Send a message to the callback registered for a job, if any."""
        callback = self._callbacks.get(job_id)
        if callback is None:
            return
        try:
            callback(message, level)
        except Exception as e:
            logger.warning("Job log callback failed", job_id=job_id, error=str(e))

    def handle_worker_status(self, event: WorkerStatusEvent) -> None:
        """Translate a worker status event into a call on the job's log callback."""
        if not event.job_id or event.job_id not in self._callbacks:
            return

        if event.status in (WorkerEventType.ATTEMPTING, WorkerEventType.WAITING):
            self.log(event.job_id, event.message, "info")
        elif event.status == WorkerEventType.ERROR:
            self.log(event.job_id, event.message, "error")
        elif event.status == WorkerEventType.SUCCESS:
            self.log(event.job_id, event.message, "success")
        elif event.status == WorkerEventType.COOLDOWN:
            self.log(event.job_id, FAILOVER_MESSAGE, "info")
