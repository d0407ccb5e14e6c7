"""Repository for Flow rows."""

from collections.abc import Sequence
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from flowmill.exceptions import FlowNotFoundError, FlowStepNotFoundError
from flowmill.models import Flow

from .base import BaseRepository


class FlowRepository(BaseRepository[Flow]):
    """CRUD over flows plus flow-step lookups."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, Flow)

    def _not_found(self, id: Any) -> FlowNotFoundError:
        return FlowNotFoundError(id)

    async def list_for_pipeline(
        self, pipeline_id: int, offset: int = 0, limit: int | None = None
    ) -> Sequence[Flow]:
        """Flows of a pipeline ordered by id.

        Args:
            pipeline_id: Owning pipeline
            offset: Number of flows to skip
            limit: Maximum number of flows, or None for all

        Returns:
            Flows of the pipeline
        """
        statement = (
            select(Flow)
            .where(Flow.pipeline_id == pipeline_id)
            .order_by(col(Flow.flow_id))
            .offset(offset)
        )
        if limit is not None:
            statement = statement.limit(limit)
        return await self.execute_query(statement)

    async def count_for_pipeline(self, pipeline_id: int) -> int:
        return await self.count(pipeline_id=pipeline_id)

    async def list_all_ordered(self) -> Sequence[Flow]:
        return await self.execute_query(select(Flow).order_by(col(Flow.flow_id)))

    async def get_flow_step(self, flow_step_id: str) -> tuple[Flow, dict[str, Any]]:
        """Resolve a flow step id to its flow and step config.

        The flow id is the suffix after the last underscore.

        Raises:
            FlowStepNotFoundError: If the id is malformed or the step is absent
        """
        _, _, suffix = flow_step_id.rpartition("_")
        if not suffix.isdigit():
            raise FlowStepNotFoundError(flow_step_id)

        flow = await self.get_optional(int(suffix))
        if flow is None or flow_step_id not in flow.flow_config:
            raise FlowStepNotFoundError(flow_step_id)
        return flow, flow.flow_config[flow_step_id]

    async def save_config(self, flow: Flow, flow_config: dict[str, dict[str, Any]]) -> Flow:
        """Write back the whole step map of a flow.

        Concurrent writers to the same flow are last-writer-wins.
        """
        return await self.update(flow, {"flow_config": flow_config})

    async def save_scheduling(self, flow: Flow, scheduling_config: dict[str, Any]) -> Flow:
        return await self.update(flow, {"scheduling_config": scheduling_config})
