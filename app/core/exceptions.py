"""
Queue error taxonomy
"""
from typing import Optional


class QueueError(Exception):
    """Base class for all job queue errors"""

    #: whether the worker pool may re-attempt a job that failed with this error
    retryable: bool = True


class QueueUnavailable(QueueError):
    """The queue store could not be reached"""

    def __init__(self, message: str = "Queue store is unavailable"):
        super().__init__(message)


class UnknownJobKind(QueueError):
    """No handler is registered for the job kind"""

    retryable = False

    def __init__(self, kind: str, available: Optional[list] = None):
        self.kind = kind
        self.available = list(available or [])
        message = f"No handler registered for job kind: '{kind}'"
        if self.available:
            message += f". Available kinds: {', '.join(self.available)}"
        super().__init__(message)


class InvalidJobPayload(QueueError):
    """The payload does not match the handler's payload model"""

    retryable = False


class AlreadyProcessing(QueueError):
    """The advisory lock for the entity is held by someone else"""

    def __init__(self, lock_key: str):
        self.lock_key = lock_key
        super().__init__(f"Entity is already being processed (lock '{lock_key}')")


class HandlerExecutionError(QueueError):
    """Any other exception raised inside a handler"""

    def __init__(self, kind: str, original: BaseException):
        self.kind = kind
        self.original = original
        super().__init__(f"{kind} handler failed: {type(original).__name__}: {original}")


class PoolConnectivityError(QueueError):
    """The worker pool lost its connection to the queue store"""
