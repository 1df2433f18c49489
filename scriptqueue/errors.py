"""Exceptions and error classification for the generation queue."""

from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    """Coarse classification of generation errors, used for logging."""

    RETRY_EXHAUSTED = "RETRY_EXHAUSTED"
    AUTH_ERROR = "AUTH_ERROR"
    QUOTA_ERROR = "QUOTA_ERROR"
    RATE_LIMIT = "RATE_LIMIT"
    NETWORK_ERROR = "NETWORK_ERROR"
    SAFETY_FILTER = "SAFETY_FILTER"
    SERVER_ERROR = "SERVER_ERROR"
    CANCELLED = "CANCELLED"
    OTHER = "OTHER"


CREDENTIAL_KEYWORDS = ("api key", "unauthorized", "invalid key", "forbidden")


def categorize_error(message: str) -> ErrorCategory:
    """Categorize an error message.

    Order matters: a message can match several categories and the first
    match wins.
    """
    message = (message or "").lower()

    if "failed after" in message:
        return ErrorCategory.RETRY_EXHAUSTED
    if "api key" in message or "unauthorized" in message:
        return ErrorCategory.AUTH_ERROR
    if "empty response" in message or "quota" in message:
        return ErrorCategory.QUOTA_ERROR
    if "rate limit" in message or "429" in message:
        return ErrorCategory.RATE_LIMIT
    if "timeout" in message or "timed out" in message or "network" in message:
        return ErrorCategory.NETWORK_ERROR
    if "safety" in message or "blocked" in message:
        return ErrorCategory.SAFETY_FILTER
    if "500" in message or "502" in message or "503" in message:
        return ErrorCategory.SERVER_ERROR
    if "cancel" in message:
        return ErrorCategory.CANCELLED
    return ErrorCategory.OTHER


class QueueError(Exception):
    """Base class for queue and waiter errors."""

    pass


class NoWorkersError(QueueError):
    """Raised when the queue is started without any worker."""

    pass


class WorkerUnavailableError(QueueError):
    """Raised when a job is handed to a worker that is not ready for work."""

    pass


class QueueNotActiveError(QueueError):
    """Raised when waiting on a job while the queue is not running."""

    pass


class JobWaitTimeoutError(QueueError):
    """Raised when a job did not reach a terminal state in time.

    The job itself keeps its place in the queue and may still complete.
    """

    def __init__(self, job_id: str, timeout: float):
        super().__init__(f"Timed out after {timeout:g}s waiting for job {job_id}")
        self.job_id = job_id
        self.timeout = timeout


class JobFailedError(QueueError):
    """Raised when a waited-on job ends in the failed list."""

    def __init__(self, job_id: str, error: str):
        super().__init__(error)
        self.job_id = job_id
        self.error = error


class GenerationError(Exception):
    """Raised by the generation capability for a failed call."""

    def __init__(
        self,
        message: str,
        category: Optional[ErrorCategory] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.category = category or categorize_error(message)
        self.status_code = status_code


class InvalidCredentialError(GenerationError):
    """Raised when the backend rejects the credential."""

    def __init__(self, message: str = "Invalid API key", status_code: Optional[int] = None):
        super().__init__(message, ErrorCategory.AUTH_ERROR, status_code)


class GenerationCancelledError(GenerationError):
    """Raised when a generation call observed cancellation."""

    def __init__(self, message: str = "Job cancelled"):
        super().__init__(message, ErrorCategory.CANCELLED)


def is_credential_error(error: BaseException) -> bool:
    """Check whether an error means the credential itself is unusable."""
    if isinstance(error, InvalidCredentialError):
        return True
    message = str(error).lower()
    return any(keyword in message for keyword in CREDENTIAL_KEYWORDS)


def is_cancellation_error(error: BaseException) -> bool:
    """Check whether an error was caused by cancellation."""
    if isinstance(error, GenerationCancelledError):
        return True
    return "cancel" in str(error).lower()
