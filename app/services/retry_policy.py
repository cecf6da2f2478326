"""
Retry / backoff policy shared by all job kinds
"""
from dataclasses import dataclass

from app.core.config import settings
from app.core.exceptions import QueueError

EXPONENTIAL = "exponential"
FIXED = "fixed"


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Decides whether a failed attempt is retried and how long the job waits.

    exponential: delay_ms * 2 ** (attempts_made - 1), so 2000ms before the
    second attempt and 4000ms before the third with the defaults.
    """
    type: str = EXPONENTIAL
    delay_ms: int = 2000
    max_attempts: int = 3

    def __post_init__(self):
        if self.type not in (EXPONENTIAL, FIXED):
            raise ValueError(f"Unknown backoff type: '{self.type}'")
        if self.delay_ms < 0:
            raise ValueError("Backoff delay must not be negative")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_settings(cls) -> "BackoffPolicy":
        return cls(
            type=settings.JOB_BACKOFF_TYPE,
            delay_ms=settings.JOB_BACKOFF_DELAY_MS,
            max_attempts=settings.JOB_MAX_ATTEMPTS,
        )

    @classmethod
    def for_job(cls, job) -> "BackoffPolicy":
        """The policy stored on a job row at enqueue time."""
        return cls(type=job.backoff_type, delay_ms=job.backoff_delay_ms, max_attempts=job.max_attempts)

    def delay_for(self, attempts_made: int) -> int:
        """Milliseconds to wait after the ``attempts_made``-th failed attempt."""
        if self.type == FIXED:
            return self.delay_ms
        return self.delay_ms * 2 ** max(attempts_made - 1, 0)

    def should_retry(self, attempts_made: int, error: BaseException = None) -> bool:
        if isinstance(error, QueueError) and not error.retryable:
            return False
        return attempts_made < self.max_attempts
