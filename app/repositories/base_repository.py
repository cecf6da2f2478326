from typing import Generic, TypeVar, Type, List, Optional, Any, Dict
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete, and_
from sqlalchemy.exc import SQLAlchemyError
from app.db import Base

ModelType = TypeVar("ModelType", bound=Base)


class AsyncBaseRepository(Generic[ModelType]):
    def __init__(self, model: Type[ModelType]):
        self.model = model

    def _where(self, stmt, condition: Optional[Dict[str, Any]]):
        """
        Apply equality (or IN for list values) filters for known columns.
        """
        where_conditions = []
        for attr, value in (condition or {}).items():
            if value is None or not hasattr(self.model, attr):
                continue
            column = getattr(self.model, attr)
            if isinstance(value, (list, tuple, set)):
                where_conditions.append(column.in_(list(value)))
            else:
                where_conditions.append(column == value)

        if where_conditions:
            stmt = stmt.where(and_(*where_conditions))
        return stmt

    async def create(self, db: AsyncSession, *, obj_in: Dict[str, Any]) -> ModelType:
        """
        Create a new record.
        """
        try:
            db_obj = self.model(**obj_in)
            db.add(db_obj)
            await db.flush()  # Get ID without committing transaction
            await db.refresh(db_obj)
            return db_obj
        except SQLAlchemyError:
            await db.rollback()
            raise

    async def get(self, db: AsyncSession, id: Any, refresh: bool = False) -> Optional[ModelType]:
        """
        Get a record by id.

        ``refresh`` reloads the row even if the session already holds the object.
        """
        return await db.get(self.model, id, populate_existing=refresh)

    async def get_by_condition(
            self,
            db: AsyncSession,
            condition: Dict[str, Any],
            skip: int = 0,
            limit: Optional[int] = None,
            order_by=None,
    ) -> List[ModelType]:
        """
        Get records based on conditions.
        """
        stmt = self._where(select(self.model), condition)

        if order_by is not None:
            stmt = stmt.order_by(order_by)
        if skip:
            stmt = stmt.offset(skip)
        if limit:
            stmt = stmt.limit(limit)

        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def hard_delete_many(self, db: AsyncSession, *, ids: List[Any]) -> int:
        """
        Permanently delete records by ids.
        """
        if not ids:
            return 0
        try:
            result = await db.execute(
                delete(self.model).where(self.model.id.in_(ids)).execution_options(synchronize_session=False)
            )
            return result.rowcount
        except SQLAlchemyError:
            await db.rollback()
            raise
