"""Repository for processed-item (dedup) records."""

from collections.abc import Sequence
from typing import Any

from sqlalchemy import CursorResult, delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col

from flowmill.models import ProcessedItem

from .base import BaseRepository


class ProcessedItemRepository(BaseRepository[ProcessedItem]):
    """Tracks source items already handled by a flow step."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, ProcessedItem)

    async def has_been_processed(
        self, flow_step_id: str, source_type: str, item_identifier: str
    ) -> bool:
        return await self.exists(
            flow_step_id=flow_step_id, source_type=source_type, item_identifier=item_identifier
        )

    async def get_record(
        self, flow_step_id: str, source_type: str, item_identifier: str
    ) -> ProcessedItem | None:
        return await self.get_by(
            flow_step_id=flow_step_id, source_type=source_type, item_identifier=item_identifier
        )

    async def add(
        self, flow_step_id: str, source_type: str, item_identifier: str, job_id: int
    ) -> bool:
        """Record an item; returns False when it was already recorded."""
        if await self.has_been_processed(flow_step_id, source_type, item_identifier):
            return False
        await self.create(
            ProcessedItem(
                flow_step_id=flow_step_id,
                source_type=source_type,
                item_identifier=item_identifier,
                job_id=job_id,
            )
        )
        return True

    async def _delete_where(self, *conditions: Any) -> int:
        result: CursorResult[Any] = await self.session.execute(  # type: ignore[assignment]
            delete(ProcessedItem).where(*conditions)
        )
        await self.session.commit()
        return result.rowcount

    async def delete_for_jobs(self, job_ids: Sequence[int]) -> int:
        """Remove records produced by the given jobs."""
        if not job_ids:
            return 0
        return await self._delete_where(col(ProcessedItem.job_id).in_(list(job_ids)))

    async def delete_for_flow_step(self, flow_step_id: str) -> int:
        return await self._delete_where(ProcessedItem.flow_step_id == flow_step_id)

    async def delete_for_flow(self, flow_id: int) -> int:
        """Remove records of every step of a flow (flow step ids end in ``_{flow_id}``)."""
        step_id = col(ProcessedItem.flow_step_id)
        return await self._delete_where(
            step_id.like(f"%\\_{flow_id}", escape="\\"),
            step_id.not_like("ephemeral\\_%", escape="\\"),
        )
