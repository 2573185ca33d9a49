"""Simple base repository for CRUD operations."""

from typing import Any, Generic, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import BaseModel

T = TypeVar("T", bound=BaseModel)


class BaseRepository(Generic[T]):
    """Base repository providing basic CRUD operations over one ORM class."""

    model_class: type[T]

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, id: UUID) -> T | None:
        """Get a record by ID."""
        return await self.session.get(self.model_class, id)

    async def list_where(self, *conditions: Any, order_by: Any = None, limit: int = 100) -> list[T]:
        """List records matching all conditions."""
        stmt = select(self.model_class)
        if conditions:
            stmt = stmt.where(*conditions)
        if order_by is not None:
            stmt = stmt.order_by(order_by)
        result = await self.session.execute(stmt.limit(limit))
        return list(result.scalars().all())

    async def add(self, entity: T) -> T:
        """Persist a new record and refresh server-side defaults."""
        self.session.add(entity)
        await self.session.flush()
        await self.session.refresh(entity)
        return entity

    async def delete(self, id: UUID) -> bool:
        """Delete a record by ID."""
        record = await self.session.get(self.model_class, id)
        if record is None:
            return False

        await self.session.delete(record)
        await self.session.flush()
        return True
