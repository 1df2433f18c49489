"""Awaiting the terminal result of a queued job."""

import asyncio
import time
from typing import Optional

import structlog

from scriptqueue.config import settings
from scriptqueue.errors import JobFailedError, JobWaitTimeoutError, QueueNotActiveError
from scriptqueue.log_routing import JobLogRegistry, LogCallback
from scriptqueue.queue_manager import QueueManager

logger = structlog.get_logger()


class JobWaiter:
    """Polls a queue manager until a job completes, fails or times out."""

    def __init__(
        self,
        queue: QueueManager,
        registry: Optional[JobLogRegistry] = None,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize waiter.

        Args:
            queue: Queue manager holding the jobs
            registry: Log registry receiving per-job callbacks
            poll_interval: Seconds between checks
            timeout: Default seconds to wait for a job
        """
        self.queue = queue
        self.registry = registry if registry is not None else JobLogRegistry()
        self.poll_interval = poll_interval if poll_interval is not None else settings.WAITER_POLL_INTERVAL
        self.timeout = timeout if timeout is not None else settings.WAITER_TIMEOUT

    async def wait(
        self,
        job_id: str,
        timeout: Optional[float] = None,
        log_callback: Optional[LogCallback] = None,
    ) -> str:
        """Wait for a job and return its generated text.

        Args:
            job_id: Id returned by QueueManager.add_jobs
            timeout: Seconds to wait; defaults to the waiter's timeout
            log_callback: Receives the job's progress messages while waiting

        Returns:
            The job result

        Raises:
            QueueNotActiveError: If the queue is not running, or stops mid-wait
            JobFailedError: If the job ends in the failed list
            JobWaitTimeoutError: If the job is still pending after `timeout`
        """
        timeout = timeout if timeout is not None else self.timeout

        if log_callback is not None:
            self.registry.register(job_id, log_callback)

        try:
            return await self._poll(job_id, timeout, log_callback)
        finally:
            self.registry.unregister(job_id)

    async def _poll(self, job_id: str, timeout: float, log_callback: Optional[LogCallback]) -> str:
        if not self.queue.is_running:
            logger.error("Queue is not running", job_id=job_id)
            self._log(log_callback, "Queue system is not active", "error")
            raise QueueNotActiveError("Queue system is not active")

        start = time.monotonic()

        while True:
            completed = self.queue.find_completed(job_id)
            if completed is not None:
                logger.debug("Job result received", job_id=job_id)
                return completed.result

            failed = self.queue.find_failed(job_id)
            if failed is not None:
                logger.error("Waited job failed", job_id=job_id, error=failed.error)
                self._log(log_callback, f"Processing failed: {failed.error}", "error")
                raise JobFailedError(job_id, failed.error or "Unknown error")

            if not self.queue.is_running:
                logger.error("Queue stopped while waiting", job_id=job_id)
                self._log(log_callback, "Queue system is not active", "error")
                raise QueueNotActiveError("Queue system stopped while waiting for the job")

            elapsed = time.monotonic() - start
            if elapsed > timeout:
                logger.error("Timed out waiting for job", job_id=job_id, elapsed=round(elapsed, 1))
                self._log(
                    log_callback,
                    f"Timeout - processing took longer than {timeout:g} seconds",
                    "error",
                )
                raise JobWaitTimeoutError(job_id, timeout)

            await asyncio.sleep(self.poll_interval)

    @staticmethod
    def _log(log_callback: Optional[LogCallback], message: str, level: str) -> None:
        if log_callback is None:
            return
        try:
            log_callback(message, level)
        except Exception as e:
            logger.warning("Job log callback failed", error=str(e))
