"""Shared repository helpers for the tradeflow tables."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Generic, List, Optional, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel

ModelType = TypeVar("ModelType", bound=SQLModel)


class BaseRepository(Generic[ModelType]):
    """Single-table access bound to one session.

    Writes commit immediately; callers open one short session per operation,
    so a repository never holds rows across commits.
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        self.model = model
        self.session = session

    async def get(self, key: Any) -> Optional[ModelType]:
        return await self.session.get(self.model, key)

    async def first_where(self, *criteria: Any) -> Optional[ModelType]:
        result = await self.session.execute(select(self.model).where(*criteria))
        return result.scalars().first()

    async def list_where(self, *criteria: Any, order_by: Any = None) -> List[ModelType]:
        statement = select(self.model).where(*criteria)
        if order_by is not None:
            statement = statement.order_by(order_by)
        result = await self.session.execute(statement)
        return list(result.scalars().all())

    async def create(self, obj_in: ModelType) -> ModelType:
        """Insert ``obj_in`` and return it refreshed.

        Raises:
            sqlalchemy.exc.IntegrityError: On a unique-key clash; the session
                is rolled back first so the caller can keep using it
        """
        self.session.add(obj_in)
        try:
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        await self.session.refresh(obj_in)
        return obj_in

    async def update(self, *, db_obj: ModelType, obj_in: dict[str, Any]) -> ModelType:
        """Apply ``obj_in`` to known columns and stamp ``updated_at`` where present."""
        for field, value in obj_in.items():
            if hasattr(db_obj, field):
                setattr(db_obj, field, value)
        if hasattr(db_obj, "updated_at") and "updated_at" not in obj_in:
            db_obj.updated_at = datetime.utcnow()

        self.session.add(db_obj)
        await self.session.commit()
        await self.session.refresh(db_obj)
        return db_obj
