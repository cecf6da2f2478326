from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.advisory_lock_model import AdvisoryLocks
from app.models.base_model import utcnow


class AdvisoryLockRepository:
    """Table-backed advisory locks: one row per held key, with an expiry."""

    async def try_insert(
            self,
            db: AsyncSession,
            *,
            key: str,
            owner: str,
            ttl_seconds: int,
            now: Optional[datetime] = None,
    ) -> bool:
        """
        Insert the lock row, taking over an expired one. Returns False when a
        live row for ``key`` already exists.
        """
        now = now or utcnow()

        await db.execute(
            delete(AdvisoryLocks)
            .where(and_(AdvisoryLocks.key == key, AdvisoryLocks.expires_at <= now))
            .execution_options(synchronize_session=False)
        )
        db.add(AdvisoryLocks(
            key=key,
            owner=owner,
            acquired_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        ))
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            return False
        return True

    async def delete(self, db: AsyncSession, *, key: str, owner: str) -> bool:
        result = await db.execute(
            delete(AdvisoryLocks)
            .where(and_(AdvisoryLocks.key == key, AdvisoryLocks.owner == owner))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
