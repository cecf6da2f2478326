"""Tests for the worker pool: claiming, retries, terminal states, events."""
import asyncio
from datetime import timedelta

import pytest

from app.constants.job_state import JobState
from app.models.base_model import utcnow
from app.repositories.job_repository import STALE_ERROR_MESSAGE, JobRepository
from app.services.queue_client import QueueClient
from app.services.retry_policy import BackoffPolicy
from app.workers.handlers import HandlerRegistry
from app.workers.job_handlers import AppointmentHandler, BaseJobHandler, NotificationHandler

from conftest import AnyPayload, FailingHandler, RecordingSink, drain


class SlowHandler(BaseJobHandler):
    """Sleeps; tracks how many executions overlap."""

    payload_model = AnyPayload

    def __init__(self, seconds: float):
        super().__init__()
        self.seconds = seconds
        self.calls = 0
        self.running = 0
        self.max_running = 0

    @property
    def kind(self) -> str:
        return "slow"

    async def execute(self, payload):
        self.calls += 1
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await asyncio.sleep(self.seconds)
        finally:
            self.running -= 1
        return {"slept": self.seconds}


async def wait_until(predicate, timeout: float = 5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        if await predicate():
            return
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


class TestClaimOrder:
    @pytest.mark.asyncio
    async def test_priority_then_creation_order(self, queue, registry, make_pool):
        first_notification = await queue.submit("send-notification", {"type": "a", "recipient": "x"})
        appointment = await queue.submit("process-appointment", {"id": "A1"})
        second_notification = await queue.submit("send-notification", {"type": "b", "recipient": "y"})

        processed = await drain(make_pool(registry))

        assert [job.id for job in processed] == [appointment.id, first_notification.id, second_notification.id]

    @pytest.mark.asyncio
    async def test_delayed_job_not_eligible_before_due(self, queue, registry, make_pool):
        job = await queue.submit("send-notification", {"type": "a"}, delay=60_000)
        pool = make_pool(registry)

        assert await pool.run_once() is None

        done = await pool.run_once(now=utcnow() + timedelta(minutes=2))
        assert done.id == job.id
        assert done.state == JobState.completed

    @pytest.mark.asyncio
    async def test_empty_queue(self, registry, make_pool):
        assert await make_pool(registry).run_once() is None


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_success_stores_result(self, queue, registry, make_pool, sink):
        job = await queue.submit("send-notification", {"id": 5, "type": "user_created", "recipient": "a@b.c"})

        done = await make_pool(registry).run_once()

        assert done.id == job.id
        assert done.state == JobState.completed
        assert done.attempts_made == 1
        assert done.result["status"] == "sent"
        assert done.finished_at is not None
        assert len(sink.delivered) == 1

    @pytest.mark.asyncio
    async def test_always_failing_job_attempted_exactly_max_attempts(self, queue, make_pool):
        handler = FailingHandler()
        pool = make_pool(HandlerRegistry([handler]))
        job = await queue.submit("always-fails", {})

        processed = await drain(pool)

        assert handler.calls == 3
        assert [p.state for p in processed] == [JobState.waiting, JobState.waiting, JobState.failed]
        final = await queue.get_job(job.id)
        assert final.state == JobState.failed
        assert final.attempts_made == final.max_attempts == 3
        assert "boom #3" in final.last_error

        # never attempted again
        assert await pool.run_once(now=utcnow() + timedelta(days=1)) is None
        assert handler.calls == 3

    @pytest.mark.asyncio
    async def test_notification_succeeds_on_third_attempt(self, queue, make_pool):
        sink = RecordingSink(failures=2)
        pool = make_pool(HandlerRegistry([NotificationHandler(sink)]))
        job = await queue.submit("send-notification", {"id": 1, "type": "appointment_created", "recipient": "a@b.c"})

        await drain(pool)

        final = await queue.get_job(job.id)
        assert final.state == JobState.completed
        assert final.attempts_made == 3
        assert sink.attempts == 3

    @pytest.mark.asyncio
    async def test_unknown_kind_fails_without_retry(self, queue, registry, make_pool):
        job = await queue.submit("unknown", {"anything": True})

        done = await make_pool(registry).run_once()

        assert done.id == job.id
        assert done.state == JobState.failed
        assert done.attempts_made == 1
        assert "No handler registered" in done.last_error

    @pytest.mark.asyncio
    async def test_invalid_payload_fails_without_retry(self, queue, registry, make_pool):
        await queue.submit("send-notification", {"id": 1})

        done = await make_pool(registry).run_once()

        assert done.state == JobState.failed
        assert done.attempts_made == 1


class TestBackoff:
    @pytest.mark.asyncio
    async def test_retry_delays_grow_exponentially(self, database, make_pool):
        queue = QueueClient(database, policy=BackoffPolicy())
        pool = make_pool(HandlerRegistry([FailingHandler()]))
        await queue.submit("always-fails", {})

        after_first = await pool.run_once()
        assert after_first.state == JobState.waiting
        assert after_first.run_at - after_first.updated_at == timedelta(milliseconds=2000)

        # not eligible until the backoff has elapsed
        assert await pool.run_once() is None

        after_second = await pool.run_once(now=utcnow() + timedelta(seconds=3))
        assert after_second.state == JobState.waiting
        assert after_second.run_at - after_second.updated_at == timedelta(milliseconds=4000)

        after_third = await pool.run_once(now=utcnow() + timedelta(seconds=10))
        assert after_third.state == JobState.failed


class TestAdvisoryLockContention:
    @pytest.mark.asyncio
    async def test_same_appointment_processed_by_one_worker_at_a_time(self, queue, lock_service, make_pool):
        registry = HandlerRegistry([AppointmentHandler(lock_service, processing_seconds=0.5)])
        first_pool = make_pool(registry, worker_id="worker-1")
        second_pool = make_pool(registry, worker_id="worker-2")
        await queue.submit("process-appointment", {"id": "A1"})
        await queue.submit("process-appointment", {"id": "A1"})

        outcomes = await asyncio.gather(first_pool.run_once(), second_pool.run_once())

        states = sorted(job.state.value for job in outcomes)
        assert states == ["completed", "waiting"]
        winner = next(job for job in outcomes if job.state == JobState.completed)
        loser = next(job for job in outcomes if job.state == JobState.waiting)
        assert winner.result["entity_id"] == "A1"
        assert winner.result["status"] == "processed"
        assert "already being processed" in loser.last_error

        # the lock is free again by the time the retry runs
        retried = await first_pool.run_once()
        assert retried.id == loser.id
        assert retried.state == JobState.completed
        assert retried.attempts_made == 2
        assert retried.result["entity_id"] == "A1"


class TestEvents:
    @pytest.mark.asyncio
    async def test_completed_and_failed_events(self, queue, sink, lock_service, make_pool):
        registry = HandlerRegistry([NotificationHandler(sink), FailingHandler()])
        pool = make_pool(registry)
        completed, failed = [], []
        pool.on("completed", completed.append)

        async def on_failed(job, error):
            failed.append((job.state, type(error).__name__))

        pool.on("failed", on_failed)

        await queue.submit("send-notification", {"type": "a"})
        await queue.submit("always-fails", {}, max_attempts=1)
        await drain(pool)

        assert [job.kind for job in completed] == ["send-notification"]
        assert failed == [(JobState.failed, "HandlerExecutionError")]

    @pytest.mark.asyncio
    async def test_listener_errors_do_not_break_the_pool(self, queue, registry, make_pool):
        pool = make_pool(registry)

        def broken(job):
            raise RuntimeError("metrics backend down")

        pool.on("completed", broken)
        await queue.submit("send-notification", {"type": "a"})

        done = await pool.run_once()
        assert done.state == JobState.completed

    @pytest.mark.asyncio
    async def test_unknown_event_rejected(self, registry, make_pool):
        with pytest.raises(ValueError):
            make_pool(registry).on("progress", print)


class TestRetention:
    @pytest.mark.asyncio
    async def test_keeps_only_newest_finished_jobs(self, queue, inspector, make_pool, sink):
        registry = HandlerRegistry([NotificationHandler(sink), FailingHandler()])
        pool = make_pool(registry, keep_completed=2, keep_failed=1)

        for n in range(4):
            await queue.submit("send-notification", {"id": n, "type": "a"})
        for _ in range(3):
            await queue.submit("always-fails", {}, max_attempts=1)

        await drain(pool)

        stats = await inspector.stats()
        assert stats.completed == 2
        assert stats.failed == 1
        remaining = await queue.list_jobs(state="completed")
        assert sorted(job.payload["id"] for job in remaining) == [2, 3]


class TestStaleJobs:
    @pytest.mark.asyncio
    async def test_stale_active_jobs_are_reclaimed(self, database, queue, registry, make_pool):
        retry_left = await queue.submit("send-notification", {"type": "a"})
        exhausted = await queue.submit("send-notification", {"type": "b"}, max_attempts=1)

        # a worker claims both and dies
        repository = JobRepository()
        async with database.session() as db:
            await repository.claim_next_job(db, worker_id="crashed")
            await repository.claim_next_job(db, worker_id="crashed")
            await db.commit()

        await asyncio.sleep(0.01)
        pool = make_pool(registry, stale_job_timeout=0)
        counts = await pool.reclaim_stale_jobs()

        assert counts == {"requeued": 1, "failed": 1}
        assert (await queue.get_job(retry_left.id)).state == JobState.waiting
        assert (await queue.get_job(exhausted.id)).state == JobState.failed
        assert (await queue.get_job(exhausted.id)).last_error == STALE_ERROR_MESSAGE

        done = await pool.run_once()
        assert done.id == retry_left.id
        assert done.state == JobState.completed
        assert done.attempts_made == 2


class TestProcessingLoop:
    @pytest.mark.asyncio
    async def test_runs_jobs_concurrently_until_stopped(self, queue, inspector, lock_service, make_pool, sink):
        registry = HandlerRegistry([
            AppointmentHandler(lock_service, processing_seconds=0.2),
            NotificationHandler(sink),
        ])
        pool = make_pool(registry, concurrency=3)
        for n in range(3):
            await queue.submit("process-appointment", {"id": f"A{n}"})
        await queue.submit("send-notification", {"type": "a"})

        task = asyncio.create_task(pool.start())

        async def all_done():
            return (await inspector.stats()).completed == 4

        await wait_until(all_done)
        await pool.stop()
        await asyncio.wait_for(task, timeout=5)

        assert pool.jobs_succeeded == 4
        assert pool.active_jobs == set()

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_jobs(self, queue, inspector, lock_service, make_pool):
        registry = HandlerRegistry([AppointmentHandler(lock_service, processing_seconds=0.3)])
        pool = make_pool(registry)
        await queue.submit("process-appointment", {"id": "A1"})

        task = asyncio.create_task(pool.start())

        async def picked_up():
            return (await inspector.stats()).active == 1

        await wait_until(picked_up)
        await pool.stop()
        await asyncio.wait_for(task, timeout=5)

        stats = await inspector.stats()
        assert stats.completed == 1
        assert stats.active == 0

    @pytest.mark.asyncio
    async def test_grace_period_expiry_leaves_job_active(self, queue, inspector, lock_service, make_pool):
        registry = HandlerRegistry([AppointmentHandler(lock_service, processing_seconds=5)])
        pool = make_pool(registry, shutdown_grace_period=0.1)
        await queue.submit("process-appointment", {"id": "A1"})

        task = asyncio.create_task(pool.start())

        async def picked_up():
            return (await inspector.stats()).active == 1

        await wait_until(picked_up)
        await pool.stop()
        await asyncio.wait_for(task, timeout=5)

        # left for the stale job sweep
        assert (await inspector.stats()).active == 1


class TestLongRunningJobs:
    @pytest.mark.asyncio
    async def test_sweep_skips_jobs_running_in_this_pool(self, queue, inspector, make_pool):
        handler = SlowHandler(2.5)
        pool = make_pool(
            HandlerRegistry([handler]),
            concurrency=2,
            stale_job_timeout=1,
            reaper_interval=0.2,
            heartbeat_interval=30,
        )
        job = await queue.submit("slow", {})

        task = asyncio.create_task(pool.start())

        async def finished():
            return (await inspector.stats()).completed == 1

        await wait_until(finished, timeout=10)
        await pool.stop()
        await asyncio.wait_for(task, timeout=5)

        assert handler.calls == 1
        assert handler.max_running == 1
        final = await queue.get_job(job.id)
        assert final.state == JobState.completed
        assert final.attempts_made == 1

    @pytest.mark.asyncio
    async def test_heartbeat_keeps_job_from_other_sweepers(self, queue, inspector, make_pool):
        handler = SlowHandler(2.0)
        registry = HandlerRegistry([handler])
        pool = make_pool(registry, stale_job_timeout=1, heartbeat_interval=0.2)
        other_process = make_pool(registry, worker_id="other-process", stale_job_timeout=1)
        job = await queue.submit("slow", {})

        task = asyncio.create_task(pool.start())

        async def picked_up():
            return (await inspector.stats()).active == 1

        await wait_until(picked_up)
        for _ in range(8):
            assert await other_process.reclaim_stale_jobs() == {"requeued": 0, "failed": 0}
            await asyncio.sleep(0.2)

        async def finished():
            return (await inspector.stats()).completed == 1

        await wait_until(finished, timeout=10)
        await pool.stop()
        await asyncio.wait_for(task, timeout=5)

        assert handler.calls == 1
        assert (await queue.get_job(job.id)).attempts_made == 1

    @pytest.mark.asyncio
    async def test_outdated_claim_cannot_finish_a_newer_one(self, database, queue):
        repository = JobRepository()
        job = await queue.submit("slow", {})

        async with database.session() as db:
            first = await repository.claim_next_job(db, worker_id="w1")
            first_attempt = first.attempts_made
            await db.commit()
        await asyncio.sleep(0.01)
        async with database.session() as db:
            await repository.reset_stale_jobs(db, 0)
            await repository.claim_next_job(db, worker_id="w2")
            await db.commit()

        async with database.session() as db:
            assert await repository.mark_job_completed(db, job.id, {}, attempts_made=first_attempt) is None
            assert not await repository.touch_active_job(db, job.id, first_attempt)
            await db.commit()

        current = await queue.get_job(job.id)
        assert current.state == JobState.active
        assert current.attempts_made == 2
        assert current.worker_id == "w2"
