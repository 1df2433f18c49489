"""Worker bound to one credential that executes generation jobs."""

import asyncio
import time
from typing import Awaitable, Callable, Optional

import structlog

from scriptqueue.config import settings
from scriptqueue.errors import (
    GenerationError,
    WorkerUnavailableError,
    categorize_error,
    is_cancellation_error,
    is_credential_error,
)
from scriptqueue.models import (
    Job,
    WorkerEventType,
    WorkerResult,
    WorkerState,
    WorkerStats,
    WorkerStatusEvent,
)

logger = structlog.get_logger()

# generate(credential, prompt, cancel_event) -> text
GenerateFn = Callable[[str, str, Optional[asyncio.Event]], Awaitable[str]]
StatusCallback = Callable[[WorkerStatusEvent], None]


class GenerationWorker:
    """Executes one job at a time against its own credential.

    Each job gets up to `max_retries` local attempts. When they are all
    used up the worker frees itself, rests for `cooldown_duration` and
    reports the job back so the queue can hand it to another worker.
    """

    def __init__(
        self,
        credential: str,
        worker_id: str,
        generate: GenerateFn,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        cooldown_duration: Optional[float] = None,
    ):
        """Initialize worker.

        Args:
            credential: API key used exclusively by this worker
            worker_id: Stable identifier, unique within the pool
            generate: Generation capability called for every attempt
            max_retries: Local attempts per job
            retry_delay: Seconds to wait before each attempt after the first
            cooldown_duration: Seconds to rest after giving up on a job
        """
        self.id = worker_id
        self.credential = credential
        self.generate = generate
        self.max_retries = max_retries if max_retries is not None else settings.WORKER_MAX_RETRIES
        self.retry_delay = retry_delay if retry_delay is not None else settings.WORKER_RETRY_DELAY
        self.cooldown_duration = (
            cooldown_duration if cooldown_duration is not None else settings.WORKER_COOLDOWN
        )

        self.is_active = True
        self.is_available = True
        self.current_job: Optional[Job] = None
        self.consecutive_failures = 0
        self.last_error: Optional[str] = None
        self.cooldown_until: Optional[float] = None  # Unix timestamp
        self.stats = WorkerStats()
        self.on_status_change: Optional[StatusCallback] = None

        # Why the worker is inactive: a graceful stop can be resumed, a rejected credential cannot
        self._stopped = False
        self._credential_rejected = False
        self._cooldown_handle: Optional[asyncio.TimerHandle] = None
        self.logger = logger.bind(worker_id=worker_id)

    @property
    def credential_rejected(self) -> bool:
        return self._credential_rejected

    def in_cooldown(self) -> bool:
        return self.cooldown_until is not None and time.time() < self.cooldown_until

    def is_ready_for_work(self) -> bool:
        """Check whether the worker can take a new job."""
        if not self.is_active:
            return False
        if not self.is_available:
            return False
        if self.in_cooldown():
            return False
        return True

    def begin(self, job: Job) -> None:
        """Claim the worker for a job.

        Synchronous so that the claim is visible to the scheduler before
        the execution task gets its first turn on the event loop.

        Raises:
            WorkerUnavailableError: If the worker is not ready for work
        """
        if not self.is_ready_for_work():
            raise WorkerUnavailableError(f"Worker {self.id} is not available")

        self.is_available = False
        self.current_job = job
        self.stats.processed += 1
        self._emit(WorkerEventType.PROCESSING, f"Processing: {job.title[:50]}...", job.id)

    async def execute(self, job: Job, cancel_event: Optional[asyncio.Event] = None) -> WorkerResult:
        """Claim the worker and run the job to a final outcome."""
        self.begin(job)
        return await self.run_attempts(job, cancel_event)

    async def run_attempts(
        self, job: Job, cancel_event: Optional[asyncio.Event] = None
    ) -> WorkerResult:
        """Run the local retry loop for a job already claimed with `begin`.

        Args:
            job: Job to generate
            cancel_event: Shared cancellation signal, checked before every attempt

        Returns:
            WorkerResult describing success, cancellation or a failure to requeue
        """
        attempts = 0
        last_error: Optional[Exception] = None

        while attempts < self.max_retries and self.is_active:
            if cancel_event is not None and cancel_event.is_set():
                return self._cancelled(job, attempts)

            if attempts > 0:
                if await self._sleep(self.retry_delay, cancel_event):
                    return self._cancelled(job, attempts)
                self.stats.total_retries += 1

            attempts += 1
            self._emit(
                WorkerEventType.ATTEMPTING,
                f"{job.title}: attempt {attempts}/{self.max_retries}...",
                job.id,
            )

            try:
                text = await self.generate(self.credential, job.prompt, cancel_event)
                if not text or not text.strip():
                    raise GenerationError("Empty response from generation backend")
            except Exception as e:
                last_error = e
                self.last_error = str(e)

                if is_cancellation_error(e) or (cancel_event is not None and cancel_event.is_set()):
                    self.logger.info("Generation cancelled", job_id=job.id, attempt=attempts)
                    return self._cancelled(job, attempts)

                self.logger.warning(
                    "Generation attempt failed",
                    job_id=job.id,
                    attempt=attempts,
                    error=str(e),
                    category=getattr(e, "category", categorize_error(str(e))).value,
                )
                self._emit(
                    WorkerEventType.ERROR,
                    f"{job.title}: attempt {attempts} failed ({e}).",
                    job.id,
                )

                if is_credential_error(e):
                    self.is_active = False
                    self._credential_rejected = True
                    self.logger.error("Worker disabled, credential rejected", job_id=job.id)
                    self._emit(WorkerEventType.DISABLED, "Invalid API key", job.id)
                    break

                if attempts < self.max_retries:
                    self._emit(
                        WorkerEventType.WAITING,
                        f"Waiting {self.retry_delay:g} seconds...",
                        job.id,
                    )
            else:
                self.stats.successful += 1
                self.consecutive_failures = 0
                self.last_error = None
                self.current_job = None
                self.is_available = True
                self._emit(WorkerEventType.SUCCESS, f"{job.title} generated successfully!", job.id)
                return WorkerResult(
                    success=True,
                    worker_id=self.id,
                    attempts=attempts,
                    result=text,
                )

        if not self.is_active and not self._credential_rejected:
            # Stopped while the job was running
            return self._cancelled(job, attempts)

        self.stats.failed += 1
        self.consecutive_failures += 1
        self.current_job = None
        self.is_available = True
        self.apply_cooldown(job.id)

        self.logger.warning(
            "Worker gave up on job",
            job_id=job.id,
            attempts=attempts,
            error=str(last_error) if last_error else None,
        )
        self._emit(
            WorkerEventType.ERROR,
            f"Failed {attempts}x - job released for another worker",
            job.id,
        )

        return WorkerResult(
            success=False,
            worker_id=self.id,
            attempts=attempts,
            error=str(last_error) if last_error else "Unknown error",
            should_requeue=True,
        )

    def apply_cooldown(self, job_id: Optional[str] = None) -> None:
        """Make the worker ineligible for `cooldown_duration` seconds.

        The same flat cooldown applies whatever the error was.
        """
        self.cooldown_until = time.time() + self.cooldown_duration
        self._emit(
            WorkerEventType.COOLDOWN,
            f"Worker cooling down for {self.cooldown_duration:g}s",
            job_id,
        )

        self._cancel_cooldown_timer()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to release us; is_ready_for_work still honours cooldown_until
            return
        self._cooldown_handle = loop.call_later(self.cooldown_duration, self._end_cooldown)

    def _end_cooldown(self) -> None:
        self._cooldown_handle = None
        if self.cooldown_until is not None:
            self.cooldown_until = None
            if self._credential_rejected:
                return
            self._emit(WorkerEventType.IDLE, "Cooldown finished - ready for work")

    def _cancel_cooldown_timer(self) -> None:
        if self._cooldown_handle is not None:
            self._cooldown_handle.cancel()
            self._cooldown_handle = None

    def _cancelled(self, job: Job, attempts: int) -> WorkerResult:
        self.current_job = None
        self.is_available = True
        self._emit(WorkerEventType.IDLE, f"{job.title}: cancelled", job.id)
        return WorkerResult(
            success=False,
            worker_id=self.id,
            attempts=attempts,
            error="Job cancelled",
            cancelled=True,
        )

    async def _sleep(self, delay: float, cancel_event: Optional[asyncio.Event]) -> bool:
        """Sleep for `delay` seconds. Returns True if cancellation cut it short."""
        if cancel_event is None:
            await asyncio.sleep(delay)
            return False
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    def stop(self) -> None:
        """Deactivate the worker (graceful shutdown)."""
        self.is_active = False
        self._stopped = True
        self._emit(WorkerEventType.STOPPED, "Worker stopped")

    def resume(self) -> None:
        """Reactivate after a graceful stop. Rejected credentials stay disabled."""
        if self._stopped and not self._credential_rejected:
            self.is_active = True
            self._stopped = False
            self._emit(WorkerEventType.IDLE, "Worker resumed")

    def restart(self) -> None:
        """Reset the worker to a fully eligible state."""
        self._cancel_cooldown_timer()
        self.is_active = True
        self.is_available = True
        self.consecutive_failures = 0
        self.cooldown_until = None
        self.last_error = None
        self._stopped = False
        self._credential_rejected = False
        self._emit(WorkerEventType.IDLE, "Worker restarted")

    def release(self) -> None:
        """Free the worker after its execution crashed."""
        self.current_job = None
        self.is_available = True

    def get_state(self) -> WorkerState:
        if not self.is_active:
            return WorkerState.DISABLED
        if self.in_cooldown():
            return WorkerState.COOLDOWN
        if not self.is_available:
            return WorkerState.BUSY
        return WorkerState.IDLE

    def get_info(self) -> dict:
        return {
            "id": self.id,
            "api_key": f"{self.credential[:10]}...",
            "status": self.get_state().value,
            "is_active": self.is_active,
            "is_available": self.is_available,
            "current_job": self.current_job.title if self.current_job else None,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
            "cooldown_until": self.cooldown_until,
            "stats": self.stats.to_dict(),
        }

    def _emit(self, status: WorkerEventType, message: str = "", job_id: Optional[str] = None) -> None:
        if not self.on_status_change:
            return
        if job_id is None and self.current_job is not None:
            job_id = self.current_job.id
        event = WorkerStatusEvent(
            worker_id=self.id,
            status=status,
            message=message,
            job_id=job_id,
            info=self.get_info(),
        )
        try:
            self.on_status_change(event)
        except Exception as e:
            self.logger.error("Status callback failed", status=status.value, error=str(e))
