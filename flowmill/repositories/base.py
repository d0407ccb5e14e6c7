"""Base repository with common CRUD operations."""

from collections.abc import Sequence
from typing import Any, Generic, TypeAlias, TypeVar

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.sql import Select
from sqlmodel import SQLModel, select

from flowmill.exceptions import EntityNotFoundError

FilterValueT: TypeAlias = str | int | float

ModelT = TypeVar("ModelT", bound=SQLModel)


class BaseRepository(Generic[ModelT]):
    """Base repository providing common database operations."""

    def __init__(self, session: AsyncSession, model_class: type[ModelT]):
        """Initialize repository with session and model class.

        Args:
            session: Database session
            model_class: SQLModel class this repository operates on
        """
        self.session = session
        self.model_class = model_class

    def _not_found(self, id: Any) -> EntityNotFoundError:
        return EntityNotFoundError(f"{self.model_class.__name__} with ID {id} not found")

    async def get(self, id: Any) -> ModelT:
        """Get entity by ID or raise.

        Args:
            id: Entity ID

        Returns:
            Found entity

        Raises:
            EntityNotFoundError: If entity doesn't exist
        """
        entity = await self.session.get(self.model_class, id)
        if not entity:
            raise self._not_found(id)
        return entity

    async def get_optional(self, id: Any) -> ModelT | None:
        """Get entity by ID or return None."""
        return await self.session.get(self.model_class, id)

    def _apply_filters(self, statement: Select, filters: dict[str, FilterValueT]) -> Select:
        for field, value in filters.items():
            if hasattr(self.model_class, field):
                statement = statement.where(getattr(self.model_class, field) == value)
        return statement

    async def get_by(self, **filters: FilterValueT) -> ModelT | None:
        """Get single entity by filters.

        Args:
            **filters: Field-value pairs to filter by

        Returns:
            Found entity or None
        """
        statement = self._apply_filters(select(self.model_class), filters)
        result = await self.session.execute(statement)
        return result.scalars().first()

    async def exists(self, **filters: FilterValueT) -> bool:
        """Check if entity exists with given filters."""
        return await self.count(**filters) > 0

    async def count(self, **filters: FilterValueT) -> int:
        """Count entities matching filters.

        Args:
            **filters: Field-value pairs to filter by

        Returns:
            Number of matching entities
        """
        statement = self._apply_filters(select(func.count()).select_from(self.model_class), filters)
        result = await self.session.execute(statement)
        return result.scalar() or 0

    async def create(self, entity: ModelT) -> ModelT:
        """Create new entity.

        Args:
            entity: Entity to create

        Returns:
            Created entity with refreshed data
        """
        self.session.add(entity)
        await self.session.commit()
        await self.session.refresh(entity)
        return entity

    async def update(
        self, entity: ModelT, update_data: dict[str, Any], exclude_unset: bool = True
    ) -> ModelT:
        """Update entity with given data.

        JSON columns are always written as whole values and flagged as
        modified, so callers may pass a map they mutated in place.

        Args:
            entity: Entity to update
            update_data: Dictionary with fields to update
            exclude_unset: Whether to skip ``None`` values

        Returns:
            Updated entity
        """
        for field, value in update_data.items():
            if exclude_unset and value is None:
                continue
            if hasattr(entity, field):
                setattr(entity, field, value)
                if isinstance(value, dict | list):
                    flag_modified(entity, field)

        await self.session.commit()
        await self.session.refresh(entity)
        return entity

    async def delete(self, entity: ModelT) -> None:
        """Delete entity."""
        await self.session.delete(entity)
        await self.session.commit()

    async def delete_by_id(self, id: Any) -> bool:
        """Delete entity by ID.

        Returns:
            True if entity was deleted, False if not found
        """
        entity = await self.get_optional(id)
        if entity:
            await self.delete(entity)
            return True
        return False

    async def execute_query(self, query: Select) -> Sequence[ModelT]:
        """Execute a custom query."""
        result = await self.session.execute(query)
        return result.scalars().all()

    async def refresh(self, entity: ModelT) -> ModelT:
        await self.session.refresh(entity)
        return entity
