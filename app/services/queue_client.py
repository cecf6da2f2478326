"""
Enqueue API

QueueClient is built once at start-up and handed to every producer (request
handlers, the event ingestion adapter). When the queue store was unreachable
at start-up a disabled client is used instead, so producers keep working and
only lose background processing.
"""
import asyncio
import json
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError

from app.constants.job_kinds import JobKind, default_priority
from app.core.exceptions import QueueUnavailable, UnknownJobKind
from app.core.logger import info, error
from app.core.setup_logger import queue_logger
from app.db.database import Database
from app.repositories.job_repository import JobRepository
from app.schemas.job_schemas import JobResponse
from app.services.retry_policy import BackoffPolicy

# errors meaning "the store is not there", as opposed to a bad request
STORE_UNAVAILABLE_ERRORS = (
    OperationalError,
    InterfaceError,
    DisconnectionError,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
)


@dataclass
class SubmitResult:
    """Outcome of ``try_submit``: either a job or the unavailability error."""
    job: Optional[JobResponse] = None
    error: Optional[QueueUnavailable] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _serializable_payload(payload: Any) -> Dict[str, Any]:
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    if not isinstance(payload, Mapping):
        raise ValueError(f"Job payload must be an object, got {type(payload).__name__}")
    payload = dict(payload)
    try:
        json.dumps(payload)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Job payload is not JSON serializable: {e}") from e
    return payload


class QueueClient:

    def __init__(
            self,
            database: Optional[Database],
            registered_kinds: Optional[Iterable[str]] = None,
            policy: Optional[BackoffPolicy] = None,
            job_repository: Optional[JobRepository] = None,
    ):
        """
        Args:
            database: connected database, or None for a disabled client
            registered_kinds: kinds accepted by ``submit``; None accepts any kind
            policy: default retry policy stamped on new jobs
        """
        self.database = database
        self.registered_kinds = set(registered_kinds) if registered_kinds is not None else None
        self.policy = policy or BackoffPolicy.from_settings()
        self.job_repository = job_repository or JobRepository()

    @classmethod
    def disabled(cls) -> "QueueClient":
        return cls(None)

    @property
    def enabled(self) -> bool:
        return self.database is not None and self.database.is_connected

    def _require_store(self):
        if not self.enabled:
            raise QueueUnavailable("Queue is disabled: the queue store was not reachable at start-up")

    async def submit(
            self,
            kind: str,
            payload: Any,
            *,
            priority: Optional[int] = None,
            delay: int = 0,
            max_attempts: Optional[int] = None,
    ) -> JobResponse:
        """
        Persist a new waiting job and return it.

        Raises:
            UnknownJobKind: kind is not registered with this client
            ValueError: payload is not a JSON object or delay is negative
            QueueUnavailable: the queue store could not be reached
        """
        if self.registered_kinds is not None and kind not in self.registered_kinds:
            raise UnknownJobKind(kind, sorted(self.registered_kinds))
        if delay < 0:
            raise ValueError("Job delay must not be negative")
        payload = _serializable_payload(payload)

        self._require_store()

        try:
            async with self.database.session() as db:
                job = await self.job_repository.enqueue_job(
                    db,
                    kind=kind,
                    payload=payload,
                    priority=default_priority(kind) if priority is None else priority,
                    delay_ms=delay,
                    max_attempts=max_attempts or self.policy.max_attempts,
                    backoff_type=self.policy.type,
                    backoff_delay_ms=self.policy.delay_ms,
                )
                await db.commit()
                response = JobResponse.model_validate(job)
        except STORE_UNAVAILABLE_ERRORS as e:
            error(queue_logger, "Failed to add job to queue", context={
                "kind": kind,
                "error": str(e),
                "error_type": type(e).__name__,
            })
            raise QueueUnavailable(f"Queue store is unavailable: {e}") from e

        info(queue_logger, "Job added to queue", context={
            "job_id": response.id,
            "kind": kind,
            "priority": response.priority,
            "delay_ms": delay,
        })
        return response

    async def try_submit(self, kind: str, payload: Any, **options) -> SubmitResult:
        """Like ``submit`` but returns queue unavailability instead of raising it."""
        try:
            return SubmitResult(job=await self.submit(kind, payload, **options))
        except QueueUnavailable as e:
            return SubmitResult(error=e)

    async def submit_appointment(self, appointment: Any, **options) -> SubmitResult:
        return await self.try_submit(JobKind.process_appointment.value, appointment, **options)

    async def submit_notification(self, notification: Any, **options) -> SubmitResult:
        return await self.try_submit(JobKind.send_notification.value, notification, **options)

    async def get_job(self, job_id: int) -> Optional[JobResponse]:
        self._require_store()
        try:
            async with self.database.session() as db:
                job = await self.job_repository.get(db, job_id)
                return JobResponse.model_validate(job) if job else None
        except STORE_UNAVAILABLE_ERRORS as e:
            raise QueueUnavailable(f"Queue store is unavailable: {e}") from e

    async def list_jobs(
            self,
            state: Optional[str] = None,
            kind: Optional[str] = None,
            skip: int = 0,
            limit: int = 50,
    ) -> List[JobResponse]:
        self._require_store()
        try:
            async with self.database.session() as db:
                jobs = await self.job_repository.list_jobs(db, state=state, kind=kind, skip=skip, limit=limit)
                return [JobResponse.model_validate(job) for job in jobs]
        except STORE_UNAVAILABLE_ERRORS as e:
            raise QueueUnavailable(f"Queue store is unavailable: {e}") from e
