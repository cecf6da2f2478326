from typing import List, Optional

from fastapi import HTTPException

from app.constants.job_state import JobState
from app.core.exceptions import QueueUnavailable, UnknownJobKind
from app.core.logger import error
from app.core.setup_logger import api_logger
from app.schemas import (
    ChangeEvent,
    JobCreate,
    JobResponse,
    QueueStats,
    QueueStatsByKind,
    StaleJobsReset,
    WebhookResponse,
)
from app.services.event_ingestion import EventIngestionAdapter
from app.services.queue_client import QueueClient
from app.services.queue_inspector import QueueInspector


class JobService:
    """
    HTTP-facing operations; translates queue errors into HTTP errors.
    """

    def __init__(self, queue: QueueClient, inspector: QueueInspector, ingestion: EventIngestionAdapter):
        self.queue = queue
        self.inspector = inspector
        self.ingestion = ingestion

    @staticmethod
    def _unavailable(e: QueueUnavailable) -> HTTPException:
        error(api_logger, "Queue unavailable", context={"error": str(e)})
        return HTTPException(status_code=503, detail=str(e))

    async def create_job(self, job_data: JobCreate) -> JobResponse:
        try:
            return await self.queue.submit(
                job_data.kind,
                job_data.payload,
                priority=job_data.priority,
                delay=job_data.delay,
            )
        except UnknownJobKind as e:
            raise HTTPException(status_code=422, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except QueueUnavailable as e:
            raise self._unavailable(e)

    async def list_jobs(
            self,
            state: Optional[JobState],
            kind: Optional[str],
            skip: int,
            limit: int,
    ) -> List[JobResponse]:
        """
        List jobs with optional filtering.

        Filter by state or kind. Supports pagination.
        """
        try:
            return await self.queue.list_jobs(
                state=state.value if state else None,
                kind=kind,
                skip=skip,
                limit=limit,
            )
        except QueueUnavailable as e:
            raise self._unavailable(e)

    async def get_job(self, job_id: int) -> JobResponse:
        """
        Get a specific job by ID.
        """
        try:
            job = await self.queue.get_job(job_id)
        except QueueUnavailable as e:
            raise self._unavailable(e)
        if not job:
            raise HTTPException(status_code=404, detail="Job not found")
        return job

    async def get_queue_stats(self) -> QueueStats:
        try:
            return await self.inspector.stats()
        except QueueUnavailable as e:
            raise self._unavailable(e)

    async def get_stats_by_kind(self) -> QueueStatsByKind:
        try:
            return await self.inspector.stats_by_kind()
        except QueueUnavailable as e:
            raise self._unavailable(e)

    # Admin endpoints
    async def reset_stale_jobs(self, timeout_seconds: int) -> StaleJobsReset:
        """
        Requeue active jobs older than the timeout.

        Useful for recovering from worker crashes.
        """
        try:
            return await self.inspector.reset_stale_jobs(timeout_seconds)
        except QueueUnavailable as e:
            raise self._unavailable(e)

    async def handle_webhook(self, event: ChangeEvent) -> WebhookResponse:
        jobs = await self.ingestion.handle_change_event(event)
        return WebhookResponse(
            success=True,
            message="Webhook processed successfully",
            job_ids=[job.id for job in jobs],
        )
