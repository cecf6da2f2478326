"""Shared test fixtures: a SQLite file database per test, queue client, pools."""
import os

# before any app import: console-only logging, fast start-up failure
os.environ.setdefault("LOG_DIR", "")
os.environ.setdefault("QUEUE_CONNECT_RETRIES", "1")
os.environ.setdefault("QUEUE_CONNECT_TIMEOUT", "2")

from typing import Any, Dict, Optional

import pytest
import pytest_asyncio
from pydantic import BaseModel, ConfigDict

from app.db import Database
from app.schemas import NotificationPayload
from app.services.advisory_lock import TableAdvisoryLockService
from app.services.queue_client import QueueClient
from app.services.queue_inspector import QueueInspector
from app.services.retry_policy import BackoffPolicy
from app.workers.handlers import HandlerRegistry
from app.workers.job_handlers import AppointmentHandler, BaseJobHandler, NotificationHandler
from app.workers.worker import WorkerPool


def sqlite_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}"


class AnyPayload(BaseModel):
    model_config = ConfigDict(extra="allow")


class FailingHandler(BaseJobHandler):
    """Always raises; counts its calls."""

    payload_model = AnyPayload

    def __init__(self, kind: str = "always-fails"):
        super().__init__()
        self._kind = kind
        self.calls = 0

    @property
    def kind(self) -> str:
        return self._kind

    async def execute(self, payload) -> Dict[str, Any]:
        self.calls += 1
        raise RuntimeError(f"boom #{self.calls}")


class RecordingSink:
    """Notification sink that fails the first ``failures`` deliveries."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.attempts = 0
        self.delivered = []

    async def deliver(self, notification: NotificationPayload) -> None:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConnectionError(f"smtp down (attempt {self.attempts})")
        self.delivered.append(notification)


@pytest_asyncio.fixture
async def database(tmp_path):
    db = Database(sqlite_url(tmp_path))
    await db.connect(retries=1, timeout=5)
    await db.create_tables()
    yield db
    await db.close()


@pytest.fixture
def fast_policy() -> BackoffPolicy:
    """Retries become eligible immediately."""
    return BackoffPolicy(delay_ms=0, max_attempts=3)


@pytest.fixture
def queue(database, fast_policy) -> QueueClient:
    return QueueClient(database, policy=fast_policy)


@pytest.fixture
def inspector(database) -> QueueInspector:
    return QueueInspector(database)


@pytest.fixture
def lock_service(database) -> TableAdvisoryLockService:
    return TableAdvisoryLockService(database, ttl_seconds=60)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def registry(lock_service, sink) -> HandlerRegistry:
    return HandlerRegistry([
        AppointmentHandler(lock_service, processing_seconds=0),
        NotificationHandler(sink),
    ])


@pytest.fixture
def make_pool(database):
    def _make(registry: HandlerRegistry, **overrides) -> WorkerPool:
        options = dict(
            worker_id="test-worker",
            concurrency=5,
            poll_interval=0.01,
            max_poll_interval=0.05,
            shutdown_grace_period=2,
        )
        options.update(overrides)
        return WorkerPool(database, registry, **options)

    return _make


async def drain(pool: WorkerPool, limit: int = 50, now=None) -> Optional[list]:
    """Run ``run_once`` until nothing is eligible; returns processed jobs."""
    processed = []
    for _ in range(limit):
        job = await pool.run_once(now=now)
        if job is None:
            break
        processed.append(job)
    return processed
