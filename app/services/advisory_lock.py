"""
Advisory Lock Service

Named, non-blocking mutual exclusion shared by every worker process that uses
the same database. Two backends:

* PostgreSQL: ``pg_try_advisory_lock`` on a connection held for the critical
  section. A failed or interrupted unlock invalidates that connection, so the
  server ends the session and the key is never wedged.
* Anything else: a row in ``advisory_locks`` keyed by the lock name, with an
  expiry after which the next caller may take it over.
"""
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

from sqlalchemy import text

from app.core.config import settings
from app.core.logger import debug, warning
from app.core.setup_logger import queue_logger
from app.db.database import Database
from app.repositories.lock_repository import AdvisoryLockRepository


@dataclass
class LockResult:
    key: str
    locked: bool
    owner: Optional[str] = None
    # backend specific state needed for release (e.g. the held connection)
    handle: Any = field(default=None, repr=False, compare=False)


class AdvisoryLockService(ABC):

    @abstractmethod
    async def try_acquire(self, key: str) -> LockResult:
        """Single atomic attempt; never waits for the current holder."""

    @abstractmethod
    async def release(self, lock: LockResult) -> None:
        """Release a lock returned by ``try_acquire``; no-op if not locked."""

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[LockResult]:
        """
        Try the lock for the duration of the block. Callers must check
        ``locked``; the lock is released on every exit path.
        """
        lock = await self.try_acquire(key)
        try:
            yield lock
        finally:
            await self.release(lock)


class PostgresAdvisoryLockService(AdvisoryLockService):
    """
    Session-level advisory locks keyed by a 64-bit hash of the name.

    The lock lives on a pooled connection. Returning that connection to the
    pool does not end the server session, so any path where the unlock is not
    confirmed invalidates the connection instead; the server then drops the
    session and its locks with it.
    """

    ACQUIRE_SQL = text("SELECT pg_try_advisory_lock(hashtextextended(:key, 0))")
    RELEASE_SQL = text("SELECT pg_advisory_unlock(hashtextextended(:key, 0))")

    def __init__(self, database: Database):
        self.database = database

    @staticmethod
    async def _discard(conn) -> None:
        try:
            await conn.invalidate()
        finally:
            await conn.close()

    async def try_acquire(self, key: str) -> LockResult:
        conn = await self.database.engine.connect()
        try:
            locked = bool((await conn.execute(self.ACQUIRE_SQL, {"key": key})).scalar())
            await conn.commit()
        except BaseException:
            # the lock may have been granted before the failure
            await self._discard(conn)
            raise

        if not locked:
            await conn.close()
            debug(queue_logger, "Advisory lock busy", context={"key": key})
            return LockResult(key=key, locked=False)

        debug(queue_logger, "Advisory lock acquired", context={"key": key})
        return LockResult(key=key, locked=True, handle=conn)

    async def release(self, lock: LockResult) -> None:
        if not lock.locked or lock.handle is None:
            return
        conn = lock.handle
        lock.handle = None
        lock.locked = False

        released = False
        try:
            released = bool((await conn.execute(self.RELEASE_SQL, {"key": lock.key})).scalar())
            await conn.commit()
        finally:
            if released:
                await conn.close()
            else:
                warning(queue_logger, "Advisory lock not confirmed released, dropping connection", context={
                    "key": lock.key,
                })
                await self._discard(conn)


class TableAdvisoryLockService(AdvisoryLockService):
    """Conditional-insert locks with a TTL."""

    def __init__(self, database: Database, ttl_seconds: int = 300,
                 repository: Optional[AdvisoryLockRepository] = None):
        self.database = database
        self.ttl_seconds = ttl_seconds
        self.repository = repository or AdvisoryLockRepository()

    async def try_acquire(self, key: str) -> LockResult:
        owner = uuid.uuid4().hex
        async with self.database.session() as db:
            locked = await self.repository.try_insert(db, key=key, owner=owner, ttl_seconds=self.ttl_seconds)
            if locked:
                await db.commit()

        debug(queue_logger, "Advisory lock acquired" if locked else "Advisory lock busy", context={"key": key})
        return LockResult(key=key, locked=locked, owner=owner if locked else None)

    async def release(self, lock: LockResult) -> None:
        if not lock.locked:
            return
        async with self.database.session() as db:
            released = await self.repository.delete(db, key=lock.key, owner=lock.owner)
            await db.commit()
        lock.locked = False
        if not released:
            warning(queue_logger, "Advisory lock expired before release", context={"key": lock.key})


def create_lock_service(database: Database, ttl_seconds: Optional[int] = None) -> AdvisoryLockService:
    """Pick the lock backend matching the connected database."""
    if database.dialect_name == "postgresql":
        return PostgresAdvisoryLockService(database)
    return TableAdvisoryLockService(
        database,
        ttl_seconds=ttl_seconds if ttl_seconds is not None else settings.ADVISORY_LOCK_TTL_SECONDS,
    )
