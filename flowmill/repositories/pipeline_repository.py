"""Repository for Pipeline rows."""

from collections.abc import Sequence
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from flowmill.exceptions import PipelineNotFoundError
from flowmill.models import Pipeline, utcnow

from .base import BaseRepository


class PipelineRepository(BaseRepository[Pipeline]):
    """CRUD over pipelines."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, Pipeline)

    def _not_found(self, id: Any) -> PipelineNotFoundError:
        return PipelineNotFoundError(id)

    async def list_paginated(self, offset: int = 0, limit: int = 20) -> Sequence[Pipeline]:
        """Pipelines ordered by id."""
        statement = (
            select(Pipeline).order_by(col(Pipeline.pipeline_id)).offset(offset).limit(limit)
        )
        return await self.execute_query(statement)

    async def save_config(
        self, pipeline: Pipeline, pipeline_config: dict[str, dict[str, Any]]
    ) -> Pipeline:
        """Write back the whole step map of a pipeline."""
        return await self.update(
            pipeline, {"pipeline_config": pipeline_config, "updated_at": utcnow()}
        )
