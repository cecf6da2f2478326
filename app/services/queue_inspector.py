"""
Queue Inspector: read-only counts of jobs per state
"""
from typing import Optional

from app.core.exceptions import QueueUnavailable
from app.db.database import Database
from app.repositories.job_repository import JobRepository
from app.schemas.job_schemas import QueueStats, QueueStatsByKind, StaleJobsReset
from app.services.queue_client import STORE_UNAVAILABLE_ERRORS


class QueueInspector:
    """
    Counts come from one grouped query; they are a snapshot, jobs moving
    between states during the read may be counted in either state.
    """

    def __init__(self, database: Optional[Database], job_repository: Optional[JobRepository] = None):
        self.database = database
        self.job_repository = job_repository or JobRepository()

    def _require_store(self):
        if self.database is None or not self.database.is_connected:
            raise QueueUnavailable("Queue is disabled: the queue store was not reachable at start-up")

    async def stats(self) -> QueueStats:
        self._require_store()
        try:
            async with self.database.session() as db:
                counts = await self.job_repository.count_by_state(db)
        except STORE_UNAVAILABLE_ERRORS as e:
            raise QueueUnavailable(f"Queue store is unavailable: {e}") from e
        return QueueStats(**counts)

    async def stats_by_kind(self) -> QueueStatsByKind:
        self._require_store()
        try:
            async with self.database.session() as db:
                per_kind = await self.job_repository.count_by_kind(db)
        except STORE_UNAVAILABLE_ERRORS as e:
            raise QueueUnavailable(f"Queue store is unavailable: {e}") from e

        kinds = {kind: QueueStats(**counts) for kind, counts in per_kind.items()}
        total = QueueStats(**{
            field: sum(getattr(stats, field) for stats in kinds.values())
            for field in QueueStats.model_fields
        })
        return QueueStatsByKind(total=total, kinds=kinds)

    async def reset_stale_jobs(self, stale_timeout_seconds: int) -> StaleJobsReset:
        """Reclaim jobs stuck in ``active`` for longer than the timeout."""
        self._require_store()
        try:
            async with self.database.session() as db:
                counts = await self.job_repository.reset_stale_jobs(db, stale_timeout_seconds)
                await db.commit()
        except STORE_UNAVAILABLE_ERRORS as e:
            raise QueueUnavailable(f"Queue store is unavailable: {e}") from e
        return StaleJobsReset(**counts)
