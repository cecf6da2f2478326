"""
Worker Pool
Claims jobs from the queue store and runs them through the handler registry,
with a bounded number of concurrent slots
"""
import asyncio
import inspect
import os
import signal
import socket
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional

from app.core.config import settings
from app.core.exceptions import HandlerExecutionError, PoolConnectivityError, QueueError
from app.core.logger import info, debug, warning, error, critical
from app.core.setup_logger import worker_logger
from app.db.database import Database
from app.models.jobs_model import Jobs
from app.repositories.job_repository import JobRepository
from app.schemas.job_schemas import JobResponse
from app.services.queue_client import STORE_UNAVAILABLE_ERRORS
from app.services.retry_policy import BackoffPolicy
from app.workers.handlers import HandlerRegistry

EVENTS = ("completed", "failed", "error")


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class WorkerPool:
    """
    Background job worker pool with exponential backoff polling.

    Each claimed job runs in its own asyncio task; at most ``concurrency``
    tasks are in flight. Claiming is atomic in the store, so several pools
    (in one or many processes) can share the same queue.
    """

    def __init__(
            self,
            database: Database,
            registry: HandlerRegistry,
            worker_id: Optional[str] = None,
            concurrency: int = 5,
            poll_interval: float = 1.0,
            max_poll_interval: float = 30.0,
            backoff_factor: float = 1.5,
            shutdown_grace_period: float = 30.0,
            stale_job_timeout: int = 300,
            heartbeat_interval: Optional[float] = None,
            reaper_interval: float = 60.0,
            keep_completed: int = 10,
            keep_failed: int = 5,
            job_repository: Optional[JobRepository] = None,
    ):
        """
        Args:
            worker_id: Unique identifier for this pool, stored on claimed jobs
            concurrency: Number of jobs executed at the same time
            poll_interval: Initial polling interval in seconds
            max_poll_interval: Maximum polling interval in seconds
            backoff_factor: Backoff multiplier when no jobs found
            shutdown_grace_period: Seconds in-flight jobs get to finish on stop
            stale_job_timeout: Seconds without a heartbeat after which an active
                job is reclaimed
            heartbeat_interval: Seconds between heartbeats of a running job
                (default: a third of ``stale_job_timeout``)
            reaper_interval: Seconds between stale job sweeps
            keep_completed / keep_failed: retention of finished jobs
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        self.database = database
        self.registry = registry
        self.worker_id = worker_id or default_worker_id()
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.max_poll_interval = max_poll_interval
        self.backoff_factor = backoff_factor
        self.shutdown_grace_period = shutdown_grace_period
        self.stale_job_timeout = stale_job_timeout
        self.heartbeat_interval = heartbeat_interval or max(stale_job_timeout / 3, 0.1)
        self.reaper_interval = reaper_interval
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self.job_repository = job_repository or JobRepository()

        #track active jobs
        self.active_jobs: set = set()
        # ids of jobs whose handler is running in this pool
        self.running_job_ids: set = set()

        # Current polling interval (starts at poll_interval, increases with backoff)
        self.current_poll_interval = poll_interval

        self.should_shutdown = False
        self._stop_event = asyncio.Event()
        self._last_reap: Optional[float] = None
        self._listeners: Dict[str, List[Callable]] = {event: [] for event in EVENTS}

        # Statistics
        self.jobs_processed = 0
        self.jobs_failed = 0
        self.jobs_succeeded = 0

        info(worker_logger, "Worker pool initialized", context={
            "worker_id": self.worker_id,
            "concurrency": self.concurrency,
            "kinds": self.registry.kinds(),
            "poll_interval": self.poll_interval,
            "max_poll_interval": self.max_poll_interval,
        })

    @classmethod
    def from_settings(cls, database: Database, registry: HandlerRegistry, **overrides) -> "WorkerPool":
        options = dict(
            worker_id=settings.WORKER_ID,
            concurrency=settings.WORKER_CONCURRENCY,
            poll_interval=settings.POLL_INTERVAL,
            max_poll_interval=settings.MAX_POLL_INTERVAL,
            backoff_factor=settings.BACKOFF_FACTOR,
            shutdown_grace_period=settings.SHUTDOWN_GRACE_PERIOD,
            stale_job_timeout=settings.STALE_JOB_TIMEOUT_SECONDS,
            heartbeat_interval=settings.HEARTBEAT_INTERVAL_SECONDS,
            reaper_interval=settings.REAPER_INTERVAL_SECONDS,
            keep_completed=settings.KEEP_COMPLETED_JOBS,
            keep_failed=settings.KEEP_FAILED_JOBS,
        )
        options.update(overrides)
        return cls(database, registry, **options)

    # events

    def on(self, event: str, listener: Callable) -> None:
        """
        Subscribe to pool events:
            completed(job), failed(job, error), error(error)
        ``failed`` fires on every failed attempt; ``job.state`` tells whether
        it was requeued or failed for good. Listeners may be coroutines.
        """
        if event not in self._listeners:
            raise ValueError(f"Unknown event '{event}', expected one of {', '.join(EVENTS)}")
        self._listeners[event].append(listener)

    async def _emit(self, event: str, *args) -> None:
        for listener in self._listeners[event]:
            try:
                outcome = listener(*args)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                error(worker_logger, "Event listener raised", context={
                    "event": event,
                    "error": str(e),
                    "error_type": type(e).__name__,
                })

    # lifecycle

    def setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown"""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            warning(worker_logger, f"Received {signal.Signals(signum).name} signal, initiating graceful shutdown...")
            self.request_stop()

        for signum in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(signum, signal_handler, signum)

        info(worker_logger, "Signal handlers registered (SIGTERM, SIGINT)")

    async def start(self, install_signal_handlers: bool = False):
        """
        Run the pool until ``stop()`` is called (or a signal arrives when
        ``install_signal_handlers`` is set)
        """
        info(worker_logger, "Worker pool starting...", context={
            "worker_id": self.worker_id,
            "concurrency": self.concurrency,
        })

        try:
            if install_signal_handlers:
                self.setup_signal_handlers()

            await self._processing_loop()

        except Exception as e:
            critical(worker_logger, "Worker pool crashed with unexpected error", context={
                "worker_id": self.worker_id,
                "error": str(e),
                "error_type": type(e).__name__
            }, exc_info=True)
            raise
        finally:
            await self._drain_active_jobs()
            await self._shutdown()

    def request_stop(self):
        self.should_shutdown = True
        self._stop_event.set()

    async def stop(self):
        """
        Stop the pool gracefully
        Can be called programmatically to stop the pool
        """
        warning(worker_logger, "Stop requested", context={
            "worker_id": self.worker_id
        })
        self.request_stop()

    # main loop

    async def _processing_loop(self):
        """
        Main loop for processing jobs
        Continuously polls for jobs and process them
        """
        info(worker_logger, "Entering main processing loop...", context={
            "concurrency": self.concurrency,
        })

        while not self.should_shutdown:
            try:
                # Cleanup completed tasks to free up slots
                self._cleanup_completed_tasks()

                await self._maybe_reclaim_stale_jobs()

                available = self._available_slots()

                if available <= 0:
                    debug(worker_logger, "All slots are occupied, waiting...", context={
                        "active_jobs": len(self.active_jobs),
                        "concurrency": self.concurrency,
                    })
                    await asyncio.wait(
                        self.active_jobs,
                        timeout=self.poll_interval,
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                    continue

                job = await self._claim()

                if job:
                    info(worker_logger, "Job claimed, creating background task", context={
                        "job_id": job.id,
                        "kind": job.kind,
                        "attempt": job.attempts_made,
                        "available_slots": available - 1,
                    })
                    self.active_jobs.add(asyncio.create_task(self._run_job_task(job)))

                    # Reset poll interval since we've found a job
                    self.current_poll_interval = self.poll_interval

                elif not self.active_jobs:
                    # Only apply exponential backoff if NO jobs are running
                    await self._apply_backoff()
                else:
                    await self._sleep(self.poll_interval)

            except PoolConnectivityError as e:
                error(worker_logger, "Lost connection to queue store, retrying", context={
                    "error": str(e),
                    "worker_id": self.worker_id,
                    "active_jobs": len(self.active_jobs),
                })
                await self._emit("error", e)
                await self._sleep(self.poll_interval)

            except Exception as e:
                error(worker_logger, "Unexpected error in processing loop", context={
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "worker_id": self.worker_id,
                    "active_jobs": len(self.active_jobs),
                }, exc_info=True)
                await self._emit("error", e)
                await self._sleep(self.poll_interval)

        info(worker_logger, "Exiting main processing loop")

    async def run_once(self, now: Optional[datetime] = None) -> Optional[JobResponse]:
        """
        Claim one eligible job and process it inline.

        Returns the job after processing (completed, requeued or failed), or
        None when nothing was eligible.
        """
        job = await self._claim(now)
        if job is None:
            return None
        return await self._process_job(job)

    # job lifecycle

    async def _claim(self, now: Optional[datetime] = None) -> Optional[Jobs]:
        try:
            async with self.database.session() as db:
                job = await self.job_repository.claim_next_job(db, worker_id=self.worker_id, now=now)
                await db.commit()
                return job
        except STORE_UNAVAILABLE_ERRORS as e:
            raise PoolConnectivityError(f"Could not claim job: {e}") from e

    async def _run_job_task(self, job: Jobs):
        try:
            await self._process_job(job)
        except PoolConnectivityError as e:
            # the job stays active in the store until the stale job sweep
            error(worker_logger, "Could not record job outcome", context={
                "job_id": job.id,
                "error": str(e),
            })
            await self._emit("error", e)
        except Exception as e:
            error(worker_logger, "Unexpected error in job task", context={
                "job_id": job.id,
                "error": str(e),
                "error_type": type(e).__name__,
            }, exc_info=True)
            await self._emit("error", e)

    async def _process_job(self, job: Jobs) -> Optional[JobResponse]:
        """
        Run the handler for a claimed job and record the outcome
        """
        start_time = time.monotonic()

        info(worker_logger, "Processing job", context={
            "job_id": job.id,
            "kind": job.kind,
            "attempt": job.attempts_made,
            "max_attempts": job.max_attempts,
        })

        self.running_job_ids.add(job.id)
        heartbeat = asyncio.create_task(self._heartbeat(job))
        failure = None
        try:
            result = await self.registry.dispatch(job.kind, job.payload)
        except Exception as e:
            failure = e
        finally:
            self.running_job_ids.discard(job.id)
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

        if failure is not None:
            return await self._record_failure(job, failure, time.monotonic() - start_time)
        return await self._record_success(job, result, time.monotonic() - start_time)

    async def _heartbeat(self, job: Jobs):
        """Keep ``updated_at`` of a running job fresh so it is not reclaimed as stale."""
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                async with self.database.session() as db:
                    still_ours = await self.job_repository.touch_active_job(db, job.id, job.attempts_made)
                    await db.commit()
            except STORE_UNAVAILABLE_ERRORS as e:
                warning(worker_logger, "Heartbeat failed", context={"job_id": job.id, "error": str(e)})
                continue

            if not still_ours:
                warning(worker_logger, "Job claim lost while running", context={
                    "job_id": job.id,
                    "attempt": job.attempts_made,
                })
                return

    async def _record_success(self, job: Jobs, result, duration: float) -> Optional[JobResponse]:
        try:
            async with self.database.session() as db:
                updated = await self.job_repository.mark_job_completed(
                    db, job.id, result, attempts_made=job.attempts_made
                )
                await self.job_repository.prune_finished_jobs(db, self.keep_completed, self.keep_failed)
                await db.commit()
        except STORE_UNAVAILABLE_ERRORS as e:
            raise PoolConnectivityError(f"Could not mark job {job.id} completed: {e}") from e

        self.jobs_processed += 1

        if updated is None:
            warning(worker_logger, "Job was no longer active when it completed", context={"job_id": job.id})
            return None

        self.jobs_succeeded += 1
        response = JobResponse.model_validate(updated)

        info(worker_logger, "Job completed successfully", context={
            "job_id": job.id,
            "kind": job.kind,
            "duration_seconds": round(duration, 2),
            "attempts": updated.attempts_made,
            "result": result,
        })
        await self._emit("completed", response)
        return response

    async def _record_failure(self, job: Jobs, exc: Exception, duration: float) -> Optional[JobResponse]:
        failure = exc if isinstance(exc, QueueError) else HandlerExecutionError(job.kind, exc)
        if failure is not exc:
            failure.__cause__ = exc

        policy = BackoffPolicy.for_job(job)
        retry_delay_ms = None
        if policy.should_retry(job.attempts_made, failure):
            retry_delay_ms = policy.delay_for(job.attempts_made)

        try:
            async with self.database.session() as db:
                updated = await self.job_repository.mark_job_failed(
                    db,
                    job_id=job.id,
                    error_message=str(failure),
                    retry_delay_ms=retry_delay_ms,
                    attempts_made=job.attempts_made,
                )
                if retry_delay_ms is None:
                    await self.job_repository.prune_finished_jobs(db, self.keep_completed, self.keep_failed)
                await db.commit()
        except STORE_UNAVAILABLE_ERRORS as e:
            raise PoolConnectivityError(f"Could not record failure of job {job.id}: {e}") from e

        self.jobs_processed += 1
        self.jobs_failed += 1

        context = {
            "job_id": job.id,
            "kind": job.kind,
            "error": str(failure),
            "error_type": type(failure).__name__,
            "duration_seconds": round(duration, 2),
            "attempts": job.attempts_made,
            "max_attempts": job.max_attempts,
        }
        if retry_delay_ms is not None:
            warning(worker_logger, "Job failed, scheduled for retry", context={**context, "retry_in_ms": retry_delay_ms})
        else:
            error(worker_logger, "Job failed permanently", context=context)

        if updated is None:
            warning(worker_logger, "Job was no longer active when it failed", context={"job_id": job.id})
            return None

        response = JobResponse.model_validate(updated)
        await self._emit("failed", response, failure)
        return response

    # housekeeping

    async def _maybe_reclaim_stale_jobs(self):
        now = time.monotonic()
        if self._last_reap is not None and now - self._last_reap < self.reaper_interval:
            return
        self._last_reap = now
        await self.reclaim_stale_jobs()

    async def reclaim_stale_jobs(self) -> Dict[str, int]:
        """
        Requeue (or fail) jobs left active by a crashed worker. Jobs running in
        this pool are never touched, however long their handler takes.
        """
        try:
            async with self.database.session() as db:
                counts = await self.job_repository.reset_stale_jobs(
                    db, self.stale_job_timeout, exclude_ids=self.running_job_ids
                )
                await db.commit()
        except STORE_UNAVAILABLE_ERRORS as e:
            raise PoolConnectivityError(f"Could not reclaim stale jobs: {e}") from e

        if counts["requeued"] or counts["failed"]:
            warning(worker_logger, "Reclaimed stale active jobs", context={
                **counts,
                "stale_job_timeout": self.stale_job_timeout,
            })
        return counts

    async def _sleep(self, seconds: float):
        """Sleep that ends early when a stop is requested"""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _apply_backoff(self):
        """
        Apply exponential backoff when no jobs are available
        Gradually increases wait time up to max_poll_interval
        """
        old_interval = self.current_poll_interval

        self.current_poll_interval = min(
            self.current_poll_interval * self.backoff_factor,
            self.max_poll_interval
        )

        debug(worker_logger, "Applying backoff", context={
            "old_interval": round(old_interval, 2),
            "new_interval": round(self.current_poll_interval, 2),
            "max_interval": self.max_poll_interval
        })

        await self._sleep(self.current_poll_interval)

    async def _drain_active_jobs(self):
        """
        Give in-flight jobs the grace period to finish, then cancel the rest.
        Cancelled jobs stay active in the store and are reclaimed later.
        """
        self._cleanup_completed_tasks()
        if not self.active_jobs:
            return

        warning(worker_logger, f"Waiting for {len(self.active_jobs)} active jobs to complete", context={
            "grace_period": self.shutdown_grace_period,
        })
        await asyncio.wait(self.active_jobs, timeout=self.shutdown_grace_period)

        remaining_jobs = [task for task in self.active_jobs if not task.done()]
        if remaining_jobs:
            warning(worker_logger, f"Forcefully cancelling {len(remaining_jobs)} remaining jobs after timeout")
            for task in remaining_jobs:
                task.cancel()
            await asyncio.gather(*remaining_jobs, return_exceptions=True)

        self.active_jobs.clear()

    async def _shutdown(self):
        """
        Log final statistics
        """
        info(worker_logger, "Worker pool statistics", context={
            "worker_id": self.worker_id,
            "jobs_processed": self.jobs_processed,
            "jobs_succeeded": self.jobs_succeeded,
            "jobs_failed": self.jobs_failed,
            "success_rate": f"{(self.jobs_succeeded / self.jobs_processed * 100) if self.jobs_processed > 0 else 0:.2f}%"
        })

        info(worker_logger, "Worker pool stopped gracefully", context={
            "worker_id": self.worker_id
        })

    def _available_slots(self) -> int:
        """
        Number of slots available (0 if all slots are full)
        """
        return self.concurrency - len(self.active_jobs)

    def _cleanup_completed_tasks(self):
        """
        Remove finished tasks from active_jobs to free their slots.
        Task errors are already handled inside ``_run_job_task``.
        """
        completed = {task for task in self.active_jobs if task.done()}

        if completed:
            debug(worker_logger, f"Cleaning up {len(completed)} completed tasks", context={
                "completed_count": len(completed),
                "remaining_active": len(self.active_jobs) - len(completed)
            })
            self.active_jobs -= completed
