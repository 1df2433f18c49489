"""Queue manager that schedules generation jobs across a pool of workers."""

import asyncio
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import structlog

from scriptqueue.config import settings
from scriptqueue.errors import NoWorkersError
from scriptqueue.models import (
    Job,
    JobPriority,
    JobStatus,
    JobTracking,
    QueueStats,
    WorkerResult,
    WorkerState,
    WorkerStatusEvent,
    new_job_id,
    utcnow,
)
from scriptqueue.worker import GenerateFn, GenerationWorker

logger = structlog.get_logger()

JobCallback = Callable[[Job, WorkerResult], None]
StatusListener = Callable[[WorkerStatusEvent], None]
QueueStatusListener = Callable[[dict], None]


class QueueManager:
    """Owns the pending queue, the worker pool and every job outcome.

    All bookkeeping runs in synchronous code on the event loop, so the
    queue, the in-flight map and the terminal lists are never mutated
    from two paths at once.
    """

    def __init__(
        self,
        generate: GenerateFn,
        max_unique_worker_attempts: Optional[int] = None,
        tick_interval: Optional[float] = None,
        worker_max_retries: Optional[int] = None,
        worker_retry_delay: Optional[float] = None,
        worker_cooldown: Optional[float] = None,
        status_log_cooldown: Optional[float] = None,
    ):
        """Initialize queue manager.

        Args:
            generate: Generation capability handed to every worker
            max_unique_worker_attempts: Distinct workers allowed to try a job
            tick_interval: Seconds between periodic scheduling ticks
            worker_max_retries: Local attempts per worker
            worker_retry_delay: Seconds between local attempts
            worker_cooldown: Seconds a worker rests after giving up
            status_log_cooldown: Seconds between identical availability logs
        """
        self.generate = generate
        self.max_unique_worker_attempts = (
            max_unique_worker_attempts
            if max_unique_worker_attempts is not None
            else settings.QUEUE_MAX_UNIQUE_WORKERS
        )
        self.tick_interval = tick_interval if tick_interval is not None else settings.QUEUE_TICK_INTERVAL
        self.worker_max_retries = worker_max_retries
        self.worker_retry_delay = worker_retry_delay
        self.worker_cooldown = worker_cooldown
        self.status_log_cooldown = (
            status_log_cooldown if status_log_cooldown is not None else settings.QUEUE_STATUS_LOG_COOLDOWN
        )

        self.queue: List[Job] = []
        self.workers: Dict[str, GenerationWorker] = {}
        self.processing: Dict[str, Job] = {}
        self.completed: List[Job] = []
        self.failed: List[Job] = []
        self.job_attempts: Dict[str, JobTracking] = {}
        self.stats = QueueStats()

        self.is_running = False
        self.max_concurrent = 1
        self._cancel_event: Optional[asyncio.Event] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._tasks: Dict[str, asyncio.Task] = {}

        self._worker_status_listeners: List[StatusListener] = []
        self._job_complete_listeners: List[JobCallback] = []
        self._job_failed_listeners: List[JobCallback] = []
        self._queue_status_listeners: List[QueueStatusListener] = []

        self._last_worker_status: Optional[str] = None
        self._last_status_log = 0.0

    # ------------------------------------------------------------------
    # Listener registration
    # ------------------------------------------------------------------

    def on_worker_status_change(self, callback: StatusListener) -> Callable[[], None]:
        """Subscribe to worker status events. Returns an unsubscribe function."""
        return self._subscribe(self._worker_status_listeners, callback)

    def on_job_complete(self, callback: JobCallback) -> Callable[[], None]:
        return self._subscribe(self._job_complete_listeners, callback)

    def on_job_failed(self, callback: JobCallback) -> Callable[[], None]:
        return self._subscribe(self._job_failed_listeners, callback)

    def on_queue_status_change(self, callback: QueueStatusListener) -> Callable[[], None]:
        return self._subscribe(self._queue_status_listeners, callback)

    @staticmethod
    def _subscribe(listeners: list, callback: Callable) -> Callable[[], None]:
        listeners.append(callback)

        def unsubscribe() -> None:
            if callback in listeners:
                listeners.remove(callback)

        return unsubscribe

    def _notify(self, listeners: list, *args: Any) -> None:
        for callback in list(listeners):
            try:
                callback(*args)
            except Exception as e:
                logger.error("Queue listener failed", error=str(e), exc_info=True)

    def _handle_worker_status(self, event: WorkerStatusEvent) -> None:
        self._notify(self._worker_status_listeners, event)

    # ------------------------------------------------------------------
    # Pool and job intake
    # ------------------------------------------------------------------

    def initialize_workers(self, credentials: Iterable[str]) -> None:
        """Replace the worker pool with one worker per credential.

        Blank and duplicate credentials are skipped: a credential is never
        shared by two workers.
        """
        for worker in self.workers.values():
            worker.on_status_change = None
            worker.stop()
        self.workers = {}

        seen = set()
        for index, credential in enumerate(credentials):
            credential = (credential or "").strip()
            if not credential:
                continue
            if credential in seen:
                logger.warning("Duplicate credential skipped", position=index + 1)
                continue
            seen.add(credential)

            worker = GenerationWorker(
                credential,
                f"worker-{index + 1}",
                self.generate,
                max_retries=self.worker_max_retries,
                retry_delay=self.worker_retry_delay,
                cooldown_duration=self.worker_cooldown,
            )
            worker.on_status_change = self._handle_worker_status
            self.workers[worker.id] = worker

        self.max_concurrent = max(1, len(self.workers))

        logger.info(
            "Workers initialized",
            worker_count=len(self.workers),
            worker_ids=list(self.workers.keys()),
            max_concurrent=self.max_concurrent,
        )
        self._emit_queue_status()

    def add_jobs(self, jobs: Iterable[Mapping[str, Any]]) -> List[str]:
        """Append jobs to the pending queue.

        Args:
            jobs: Job specs with `title`, `prompt` and optional `metadata`/`priority`

        Returns:
            The new job ids, in submission order
        """
        new_jobs = []
        for index, item in enumerate(jobs):
            priority = item.get("priority") or JobPriority.NORMAL
            new_jobs.append(
                Job(
                    id=new_job_id(index),
                    title=item["title"],
                    prompt=item["prompt"],
                    metadata=dict(item.get("metadata") or {}),
                    priority=JobPriority(priority),
                )
            )

        self.queue.extend(new_jobs)
        self.stats.total_jobs += len(new_jobs)
        self._update_stats()

        for job in new_jobs:
            logger.debug("Job queued", job_id=job.id, title=job.title)
        logger.info("Jobs added", count=len(new_jobs), queue_length=len(self.queue))
        self._emit_queue_status()

        return [job.id for job in new_jobs]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start scheduling. Must be called from a running event loop.

        Raises:
            NoWorkersError: If the pool is empty
        """
        if self.is_running:
            logger.warning("Queue manager already running")
            return

        if not self.workers:
            raise NoWorkersError("No workers available. Initialize the workers first.")

        for worker in self.workers.values():
            worker.resume()

        self.is_running = True
        self._cancel_event = asyncio.Event()
        self._loop_task = asyncio.create_task(self._run(), name="queue-scheduler")

        logger.info("Queue manager started", worker_count=len(self.workers))

        self.process_next_jobs()
        self._emit_queue_status()

    async def _run(self) -> None:
        """Periodic scheduling tick."""
        while self.is_running:
            await asyncio.sleep(self.tick_interval)
            if not self.is_running:
                break
            try:
                self.process_next_jobs()
            except Exception as e:
                logger.error("Scheduling tick failed", error=str(e), exc_info=True)

    def stop(self) -> None:
        """Stop scheduling, cancel in-flight work and stop every worker.

        Pending, completed and failed jobs are kept.
        """
        if not self.is_running:
            return

        self.is_running = False

        if self._cancel_event is not None:
            self._cancel_event.set()

        if self._loop_task is not None:
            self._loop_task.cancel()
            self._loop_task = None

        for worker in self.workers.values():
            worker.stop()

        logger.info(
            "Queue manager stopped",
            queue_length=len(self.queue),
            in_flight=len(self.processing),
        )
        self._emit_queue_status()

    async def drain(self) -> None:
        """Wait for every in-flight execution to return."""
        if self._tasks:
            logger.info("Waiting for in-flight jobs", count=len(self._tasks))
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    def clear(self) -> None:
        """Stop everything and forget every job."""
        self.stop()
        self.queue = []
        self.processing.clear()
        self.completed = []
        self.failed = []
        self.job_attempts.clear()
        self.stats = QueueStats()
        logger.info("Queue cleared")
        self._emit_queue_status()

    def discard_pending(self) -> int:
        """Drop queued and in-flight jobs, keeping completed and failed ones.

        Returns:
            Number of jobs dropped
        """
        dropped = [job.id for job in self.queue] + list(self.processing)
        for job_id in dropped:
            self.job_attempts.pop(job_id, None)

        self.queue = []
        self.processing.clear()
        if not self.is_running:
            for worker in self.workers.values():
                worker.release()

        self._update_stats()
        if dropped:
            logger.info("Pending jobs discarded", count=len(dropped))
        self._emit_queue_status()
        return len(dropped)

    def retry_failed_jobs(self) -> int:
        """Move every failed job back to the queue with a clean history.

        Returns:
            Number of jobs requeued
        """
        if not self.failed:
            return 0

        jobs_to_retry = self.failed
        self.failed = []

        for job in jobs_to_retry:
            job.status = JobStatus.QUEUED
            job.priority = JobPriority.NORMAL
            job.attempts = 0
            job.total_attempts = 0
            job.excluded_workers = []
            job.error = None
            job.failed_at = None
            job.worker_id = None
            job.started_at = None

        self.queue.extend(jobs_to_retry)
        self.stats.failed = 0
        self._update_stats()

        logger.info("Retrying failed jobs", count=len(jobs_to_retry))
        self._emit_queue_status()

        if self.is_running:
            self.process_next_jobs()
        return len(jobs_to_retry)

    def restart_workers(self) -> int:
        """Restart workers that are disabled or cooling down.

        Returns:
            Number of workers restarted
        """
        restarted = 0
        for worker in self.workers.values():
            if worker.get_state() in (WorkerState.DISABLED, WorkerState.COOLDOWN):
                worker.restart()
                restarted += 1

        logger.info("Workers restarted", count=restarted)
        if self.is_running:
            self.process_next_jobs()
        return restarted

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def process_next_jobs(self) -> int:
        """Assign queued jobs to every eligible worker.

        Returns:
            Number of jobs assigned in this tick
        """
        if not self.is_running:
            return 0

        available_workers = [w for w in self.workers.values() if w.is_ready_for_work()]

        if self._should_log_worker_status(len(available_workers)):
            logger.debug(
                "Worker availability",
                available=len(available_workers),
                total=len(self.workers),
                states={w.id: w.get_state().value for w in self.workers.values()},
            )

        if not available_workers or not self.queue:
            if not available_workers and self.queue:
                logger.debug("Jobs waiting for a free worker", queue_length=len(self.queue))
            return 0

        max_can_process = min(len(available_workers), len(self.queue))

        # High priority first; sorted() is stable so arrival order is kept otherwise
        ordered = sorted(self.queue, key=lambda j: 0 if j.priority == JobPriority.HIGH else 1)

        claimed = set()
        for worker in available_workers:
            if len(claimed) >= max_can_process:
                break

            job = next(
                (
                    j
                    for j in ordered
                    if j.id not in claimed and worker.id not in j.excluded_workers
                ),
                None,
            )
            if job is None:
                continue

            claimed.add(job.id)
            self.queue = [j for j in self.queue if j.id != job.id]

            job.status = JobStatus.PROCESSING
            job.worker_id = worker.id
            job.started_at = utcnow()
            self.processing[job.id] = job

            worker.begin(job)
            logger.info(
                "Job assigned",
                job_id=job.id,
                worker_id=worker.id,
                title=job.title[:40],
            )

            self._tasks[job.id] = asyncio.create_task(
                self._process_job_with_worker(job, worker),
                name=f"job-{job.id}",
            )

        self._update_stats()
        if claimed:
            self._emit_queue_status()
        return len(claimed)

    async def _process_job_with_worker(self, job: Job, worker: GenerationWorker) -> None:
        tracking = self.job_attempts.setdefault(job.id, JobTracking())

        try:
            result = await worker.run_attempts(job, self._cancel_event)
        except Exception as e:
            logger.error(
                "Unexpected error processing job",
                job_id=job.id,
                worker_id=worker.id,
                error=str(e),
                exc_info=True,
            )
            worker.release()
            if self.processing.pop(job.id, None) is not None:
                tracking.workers_attempted.add(worker.id)
                self._requeue_job(job, worker.id)
            else:
                self.job_attempts.pop(job.id, None)
        else:
            self._handle_result(job, worker, result, tracking)
        finally:
            self._tasks.pop(job.id, None)

        self._update_stats()
        self._emit_queue_status()

        # Freed worker picks up new work right away
        self.process_next_jobs()

    def _handle_result(
        self,
        job: Job,
        worker: GenerationWorker,
        result: WorkerResult,
        tracking: JobTracking,
    ) -> None:
        if self.processing.pop(job.id, None) is None:
            self.job_attempts.pop(job.id, None)
            logger.debug("Discarding outcome for a job no longer in flight", job_id=job.id)
            return

        job.total_attempts += result.attempts

        if result.success:
            self._complete_job(job, result)

        elif result.cancelled:
            job.status = JobStatus.QUEUED
            job.worker_id = None
            job.started_at = None
            self.queue.insert(0, job)
            logger.info("Cancelled job returned to queue", job_id=job.id, worker_id=worker.id)

        elif result.should_requeue:
            # Only a worker that actually failed the job counts toward the ceiling
            tracking.workers_attempted.add(worker.id)
            tracking.total_failures += 1
            tracking.last_error = result.error
            tried = len(tracking.workers_attempted)

            logger.info(
                "Job failed on worker",
                job_id=job.id,
                worker_id=worker.id,
                workers_tried=tried,
                max_workers=self.max_unique_worker_attempts,
                error=result.error,
            )

            if tried < self.max_unique_worker_attempts:
                self._requeue_job(job, worker.id)
            else:
                job.exclude_worker(worker.id)
                message = f"Failed after attempts on {tried} workers: {tracking.last_error}"
                self._fail_job(
                    job,
                    WorkerResult(
                        success=False,
                        worker_id=worker.id,
                        attempts=result.attempts,
                        error=message,
                    ),
                )

        else:
            self._fail_job(job, result)

    def _complete_job(self, job: Job, result: WorkerResult) -> None:
        job.status = JobStatus.COMPLETED
        job.result = result.result
        job.completed_at = utcnow()
        job.attempts = result.attempts
        job.worker_id = result.worker_id

        self.completed.append(job)
        self.stats.completed += 1
        self.job_attempts.pop(job.id, None)

        logger.info(
            "Job completed",
            job_id=job.id,
            worker_id=result.worker_id,
            attempts=result.attempts,
        )
        self._notify(self._job_complete_listeners, job, result)

    def _fail_job(self, job: Job, result: WorkerResult) -> None:
        job.status = JobStatus.FAILED
        job.error = result.error
        job.attempts = result.attempts
        job.failed_at = utcnow()

        self.failed.append(job)
        self.stats.failed += 1
        self.job_attempts.pop(job.id, None)

        logger.error("Job failed permanently", job_id=job.id, title=job.title, error=result.error)
        self._notify(self._job_failed_listeners, job, result)

    def _requeue_job(self, job: Job, exclude_worker_id: str) -> None:
        """Put a job back at the front of the queue, away from the worker that failed it."""
        job.exclude_worker(exclude_worker_id)
        job.status = JobStatus.QUEUED
        job.priority = JobPriority.HIGH
        job.worker_id = None
        job.started_at = None

        self.queue.insert(0, job)
        self._update_stats()

        eligible = [
            w
            for w in self.workers.values()
            if w.is_ready_for_work() and w.id not in job.excluded_workers
        ]
        logger.info(
            "Job requeued",
            job_id=job.id,
            excluded_workers=list(job.excluded_workers),
            eligible_workers=len(eligible),
        )

    def _should_log_worker_status(self, available_count: int) -> bool:
        now = time.monotonic()
        current = f"{available_count}/{len(self.workers)}"
        if current != self._last_worker_status or now - self._last_status_log > self.status_log_cooldown:
            self._last_worker_status = current
            self._last_status_log = now
            return True
        return False

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _update_stats(self) -> None:
        self.stats.in_queue = len(self.queue)
        self.stats.processing = len(self.processing)

    def _emit_queue_status(self) -> None:
        if self._queue_status_listeners:
            self._notify(self._queue_status_listeners, self.get_status())

    def get_status(self) -> dict:
        """Get queue status."""
        return {
            "is_running": self.is_running,
            "workers": [w.get_info() for w in self.workers.values()],
            "queue": len(self.queue),
            "processing": len(self.processing),
            "completed": len(self.completed),
            "failed": len(self.failed),
            "stats": self.stats.to_dict(),
            "next_jobs": [
                {"id": job.id, "title": job.title, "status": job.status.value}
                for job in self.queue[:5]
            ],
        }

    def get_job(self, job_id: str) -> Optional[Job]:
        """Find a job in whichever collection currently holds it."""
        if job_id in self.processing:
            return self.processing[job_id]
        for collection in (self.queue, self.completed, self.failed):
            for job in collection:
                if job.id == job_id:
                    return job
        return None

    def find_completed(self, job_id: str) -> Optional[Job]:
        return next((job for job in self.completed if job.id == job_id), None)

    def find_failed(self, job_id: str) -> Optional[Job]:
        return next((job for job in self.failed if job.id == job_id), None)

    def get_completed_results(self) -> List[dict]:
        return [
            {
                "id": job.id,
                "title": job.title,
                "result": job.result,
                "metadata": job.metadata,
                "completed_at": job.completed_at,
                "attempts": job.attempts,
            }
            for job in self.completed
        ]

    def get_failed_jobs(self) -> List[dict]:
        return [
            {
                "id": job.id,
                "title": job.title,
                "error": job.error,
                "metadata": job.metadata,
                "failed_at": job.failed_at,
                "attempts": job.attempts,
            }
            for job in self.failed
        ]
