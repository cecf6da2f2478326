from typing import Any, Dict, Iterable, List, Optional
from datetime import datetime, timedelta
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func, and_
from sqlalchemy.exc import SQLAlchemyError

from app.constants.job_state import JobState
from app.models.base_model import utcnow
from app.models.jobs_model import Jobs
from app.repositories.base_repository import AsyncBaseRepository

STALE_ERROR_MESSAGE = "stale: worker lost while job was active"


class JobRepository(AsyncBaseRepository[Jobs]):
    """
    Queue store operations on the ``jobs`` table.

    The session is always passed in; committing is the caller's job.
    """

    # a claim that loses the race on one row moves on to the next candidate
    MAX_CLAIM_RACES = 5

    def __init__(self):
        super().__init__(Jobs)

    async def enqueue_job(
            self,
            db: AsyncSession,
            *,
            kind: str,
            payload: Dict[str, Any],
            priority: int,
            delay_ms: int = 0,
            max_attempts: int = 3,
            backoff_type: str = "exponential",
            backoff_delay_ms: int = 2000,
            now: Optional[datetime] = None,
    ) -> Jobs:
        """
        Enqueue a new job in ``waiting`` state, eligible after ``delay_ms``.
        """
        now = now or utcnow()

        job_data = {
            "kind": kind,
            "payload": payload,
            "priority": priority,
            "delay_ms": delay_ms,
            "run_at": now + timedelta(milliseconds=delay_ms),
            "state": JobState.waiting.value,
            "attempts_made": 0,
            "max_attempts": max_attempts,
            "backoff_type": backoff_type,
            "backoff_delay_ms": backoff_delay_ms,
            "created_at": now,
            "updated_at": now,
        }

        return await self.create(db, obj_in=job_data)

    async def claim_next_job(
            self,
            db: AsyncSession,
            worker_id: str,
            now: Optional[datetime] = None,
    ) -> Optional[Jobs]:
        """
        Claim the next eligible job: lowest priority, then creation order,
        among waiting jobs whose due time has passed.

        The candidate is picked with FOR UPDATE SKIP LOCKED (where the database
        supports it) and taken with an UPDATE guarded on ``state = 'waiting'``,
        so exactly one puller wins a given row.
        """
        now = now or utcnow()

        candidate = (
            select(Jobs.id)
            .where(and_(
                Jobs.state == JobState.waiting.value,
                Jobs.run_at <= now,
            ))
            .order_by(Jobs.priority.asc(), Jobs.id.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )

        try:
            for _ in range(self.MAX_CLAIM_RACES):
                job_id = (await db.execute(candidate)).scalar_one_or_none()
                if job_id is None:
                    return None

                result = await db.execute(
                    update(Jobs)
                    .where(and_(Jobs.id == job_id, Jobs.state == JobState.waiting.value))
                    .values(
                        state=JobState.active.value,
                        attempts_made=Jobs.attempts_made + 1,
                        worker_id=worker_id,
                        started_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    return await self.get(db, job_id, refresh=True)

            return None

        except SQLAlchemyError:
            await db.rollback()
            raise

    @staticmethod
    def _active_claim(job_id: int, attempts_made: Optional[int] = None):
        condition = and_(Jobs.id == job_id, Jobs.state == JobState.active.value)
        if attempts_made is not None:
            condition = and_(condition, Jobs.attempts_made == attempts_made)
        return condition

    async def touch_active_job(
            self,
            db: AsyncSession,
            job_id: int,
            attempts_made: int,
            now: Optional[datetime] = None,
    ) -> bool:
        """
        Heartbeat for a running job: bump ``updated_at`` so the stale sweep
        keeps its hands off. False when the claim is no longer ours.
        """
        result = await db.execute(
            update(Jobs)
            .where(self._active_claim(job_id, attempts_made))
            .values(updated_at=now or utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_job_completed(
            self,
            db: AsyncSession,
            job_id: int,
            result_data: Optional[Dict[str, Any]] = None,
            attempts_made: Optional[int] = None,
            now: Optional[datetime] = None,
    ) -> Optional[Jobs]:
        """
        Mark an active job as completed and store the handler result.

        With ``attempts_made`` only the claim that produced the result may
        complete the job; a later claim of the same row is left alone.
        """
        now = now or utcnow()
        result = await db.execute(
            update(Jobs)
            .where(self._active_claim(job_id, attempts_made))
            .values(
                state=JobState.completed.value,
                result=result_data,
                last_error=None,
                finished_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return await self.get(db, job_id, refresh=True)

    async def mark_job_failed(
            self,
            db: AsyncSession,
            job_id: int,
            error_message: str,
            retry_delay_ms: Optional[int] = None,
            attempts_made: Optional[int] = None,
            now: Optional[datetime] = None,
    ) -> Optional[Jobs]:
        """
        Record a failed attempt of an active job.

        With ``retry_delay_ms`` the job goes back to ``waiting`` and becomes
        eligible after that delay; without it the job is failed for good.
        """
        now = now or utcnow()

        if retry_delay_ms is not None:
            values = {
                "state": JobState.waiting.value,
                "run_at": now + timedelta(milliseconds=retry_delay_ms),
            }
        else:
            values = {
                "state": JobState.failed.value,
                "finished_at": now,
            }

        result = await db.execute(
            update(Jobs)
            .where(self._active_claim(job_id, attempts_made))
            .values(last_error=error_message, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return await self.get(db, job_id, refresh=True)

    async def list_jobs(
            self,
            db: AsyncSession,
            state: Optional[str] = None,
            kind: Optional[str] = None,
            skip: int = 0,
            limit: int = 50,
    ) -> List[Jobs]:
        """
        Newest first, optionally filtered by state and kind.
        """
        return await self.get_by_condition(
            db,
            {"state": state, "kind": kind},
            skip=skip,
            limit=limit,
            order_by=Jobs.id.desc(),
        )

    async def count_by_state(self, db: AsyncSession) -> Dict[str, int]:
        """
        Count jobs per state; states without jobs report 0.
        """
        stmt = select(Jobs.state, func.count(Jobs.id)).group_by(Jobs.state)
        result = await db.execute(stmt)

        counts = {state.value: 0 for state in JobState}
        for state, count in result:
            counts[state] = count
        return counts

    async def count_by_kind(self, db: AsyncSession) -> Dict[str, Dict[str, int]]:
        """
        Count jobs per kind and state.
        """
        stmt = select(Jobs.kind, Jobs.state, func.count(Jobs.id)).group_by(Jobs.kind, Jobs.state)
        result = await db.execute(stmt)

        counts: Dict[str, Dict[str, int]] = {}
        for kind, state, count in result:
            counts.setdefault(kind, {s.value: 0 for s in JobState})[state] = count
        return counts

    async def prune_finished_jobs(
            self,
            db: AsyncSession,
            keep_completed: int = 10,
            keep_failed: int = 5,
    ) -> int:
        """
        Delete completed and failed jobs beyond the newest ``keep_*`` of each.
        """
        deleted = 0
        for state, keep in ((JobState.completed, keep_completed), (JobState.failed, keep_failed)):
            stmt = (
                select(Jobs.id)
                .where(Jobs.state == state.value)
                .order_by(Jobs.finished_at.desc(), Jobs.id.desc())
                .offset(max(keep, 0))
            )
            ids = list((await db.execute(stmt)).scalars().all())
            deleted += await self.hard_delete_many(db, ids=ids)
        return deleted

    async def reset_stale_jobs(
            self,
            db: AsyncSession,
            stale_timeout_seconds: int = 300,
            now: Optional[datetime] = None,
            exclude_ids: Iterable[int] = (),
    ) -> Dict[str, int]:
        """
        Reclaim jobs whose worker has gone quiet: active, and no heartbeat
        (``updated_at``) for longer than the timeout. That happens when a
        worker crashes or is killed mid-job.

        Jobs with attempts left go back to ``waiting``; the rest are failed.
        ``exclude_ids`` are jobs the caller is running right now.
        """
        now = now or utcnow()
        cutoff_time = now - timedelta(seconds=stale_timeout_seconds)
        stale = and_(Jobs.state == JobState.active.value, Jobs.updated_at < cutoff_time)
        exclude_ids = list(exclude_ids)
        if exclude_ids:
            stale = and_(stale, Jobs.id.notin_(exclude_ids))

        try:
            requeued = await db.execute(
                update(Jobs)
                .where(and_(stale, Jobs.attempts_made < Jobs.max_attempts))
                .values(
                    state=JobState.waiting.value,
                    run_at=now,
                    last_error=STALE_ERROR_MESSAGE,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            failed = await db.execute(
                update(Jobs)
                .where(and_(stale, Jobs.attempts_made >= Jobs.max_attempts))
                .values(
                    state=JobState.failed.value,
                    finished_at=now,
                    last_error=STALE_ERROR_MESSAGE,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return {"requeued": requeued.rowcount, "failed": failed.rowcount}

        except SQLAlchemyError:
            await db.rollback()
            raise
