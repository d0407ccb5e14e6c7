"""Repository for the durable timer queue."""

from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import CursorResult, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from flowmill.models import ActionStatus, ScheduledAction, args_key

from .base import BaseRepository


class ScheduledActionRepository(BaseRepository[ScheduledAction]):
    """Stores, matches and claims scheduled actions."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, ScheduledAction)

    def _matching(self, hook: str, args: dict[str, Any] | None, group: str | None) -> Any:
        statement = (
            select(ScheduledAction)
            .where(ScheduledAction.hook == hook)
            .where(ScheduledAction.status == ActionStatus.pending)
        )
        if args is not None:
            statement = statement.where(ScheduledAction.args_key == args_key(args))
        if group:
            statement = statement.where(ScheduledAction.group == group)
        return statement

    async def list_pending(
        self, hook: str, args: dict[str, Any] | None = None, group: str | None = None
    ) -> Sequence[ScheduledAction]:
        """Pending actions for a hook, earliest first."""
        statement = self._matching(hook, args, group).order_by(col(ScheduledAction.scheduled_at))
        return await self.execute_query(statement)

    async def cancel_pending(
        self, hook: str, args: dict[str, Any] | None = None, group: str | None = None
    ) -> int:
        """Cancel every pending or running action matching hook, args and group.

        A running recurring action that is canceled is not re-armed by the
        dispatcher.
        """
        statement = (
            update(ScheduledAction)
            .where(col(ScheduledAction.hook) == hook)
            .where(col(ScheduledAction.status).in_([ActionStatus.pending, ActionStatus.running]))
        )
        if args is not None:
            statement = statement.where(col(ScheduledAction.args_key) == args_key(args))
        if group:
            statement = statement.where(col(ScheduledAction.group) == group)
        result: CursorResult[Any] = await self.session.execute(  # type: ignore[assignment]
            statement.values(status=ActionStatus.canceled)
        )
        await self.session.commit()
        return result.rowcount

    async def due(self, now: datetime, limit: int) -> Sequence[ScheduledAction]:
        """Pending actions whose time has come, earliest first."""
        statement = (
            select(ScheduledAction)
            .where(ScheduledAction.status == ActionStatus.pending)
            .where(col(ScheduledAction.scheduled_at) <= now)
            .order_by(col(ScheduledAction.scheduled_at), col(ScheduledAction.action_id))
            .limit(limit)
        )
        return await self.execute_query(statement)

    async def claim(self, action: ScheduledAction) -> bool:
        """Atomically move a pending action to running.

        Returns:
            False when another dispatcher claimed or canceled it first
        """
        result: CursorResult[Any] = await self.session.execute(  # type: ignore[assignment]
            update(ScheduledAction)
            .where(col(ScheduledAction.action_id) == action.action_id)
            .where(col(ScheduledAction.status) == ActionStatus.pending)
            .values(status=ActionStatus.running, attempts=ScheduledAction.attempts + 1)
        )
        await self.session.commit()
        if result.rowcount != 1:
            return False
        await self.session.refresh(action)
        return True
