"""
Scheduling bridge: the durable timer queue used to chain job steps.

:class:`SchedulingBridge` is the contract the engine depends on.
:class:`ActionScheduler` implements it on top of the ``scheduled_action``
table; :class:`~flowmill.services.scheduling.dispatcher.ActionDispatcher`
turns due rows into broker tasks.
"""

from datetime import datetime
from typing import Protocol, TypeAlias

from sqlalchemy.exc import SQLAlchemyError

from flowmill.exceptions import SchedulingError, ValidationError
from flowmill.models import ScheduledAction, args_key, to_utc, utcnow
from flowmill.repositories import ScheduledActionRepository
from flowmill.types import ActionArgs
from flowmill.utils.logger import logger

# Callback names understood by the worker
EXECUTE_STEP = "execute_step"
RUN_FLOW_NOW = "run_flow_now"

# Action groups
JOB_GROUP = "flowmill-jobs"
FLOW_GROUP = "flowmill-flows"

Timestamp: TypeAlias = datetime | int | float


class SchedulingBridge(Protocol):
    """Persistent, at-least-once delayed task mechanism."""

    async def schedule_single_action(
        self, timestamp: Timestamp | None, callback_name: str, args: ActionArgs, group: str = ""
    ) -> int: ...

    async def schedule_recurring_action(
        self,
        timestamp: Timestamp | None,
        interval_seconds: int,
        callback_name: str,
        args: ActionArgs,
        group: str = "",
    ) -> int: ...

    async def unschedule_all_actions(
        self, callback_name: str, args: ActionArgs | None = None, group: str = ""
    ) -> int: ...

    async def next_scheduled_time(
        self, callback_name: str, args: ActionArgs | None = None, group: str = ""
    ) -> datetime | None: ...


def _run_at(timestamp: Timestamp | None) -> datetime:
    """Resolve a requested time; past or missing timestamps mean now."""
    now = utcnow()
    if timestamp is None:
        return now
    return max(to_utc(timestamp), now)


class ActionScheduler:
    """Database-backed implementation of :class:`SchedulingBridge`."""

    def __init__(self, actions: ScheduledActionRepository):
        self.actions = actions

    async def _store(
        self,
        timestamp: Timestamp | None,
        callback_name: str,
        args: ActionArgs,
        group: str,
        interval_seconds: int | None = None,
    ) -> int:
        action = ScheduledAction(
            hook=callback_name,
            args=args,
            args_key=args_key(args),
            group=group,
            scheduled_at=_run_at(timestamp),
            interval_seconds=interval_seconds,
        )
        try:
            action = await self.actions.create(action)
        except SQLAlchemyError as e:
            raise SchedulingError(f"Failed to schedule '{callback_name}': {e}") from e

        logger.debug(
            f"Scheduled '{callback_name}' {args} at {action.scheduled_at.isoformat()} "
            f"(action={action.action_id}, every={interval_seconds or '-'}s)"
        )
        return action.action_id  # type: ignore[return-value]

    async def schedule_single_action(
        self, timestamp: Timestamp | None, callback_name: str, args: ActionArgs, group: str = ""
    ) -> int:
        """Run ``callback_name(**args)`` once at ``timestamp`` (or now).

        Returns:
            Id of the stored action

        Raises:
            SchedulingError: If the action could not be stored
        """
        return await self._store(timestamp, callback_name, args, group)

    async def schedule_recurring_action(
        self,
        timestamp: Timestamp | None,
        interval_seconds: int,
        callback_name: str,
        args: ActionArgs,
        group: str = "",
    ) -> int:
        """Run ``callback_name(**args)`` every ``interval_seconds`` starting at ``timestamp``.

        Raises:
            ValidationError: If the interval is not positive
            SchedulingError: If the action could not be stored
        """
        if interval_seconds <= 0:
            raise ValidationError("Recurring interval must be a positive number of seconds")
        return await self._store(timestamp, callback_name, args, group, interval_seconds)

    async def unschedule_all_actions(
        self, callback_name: str, args: ActionArgs | None = None, group: str = ""
    ) -> int:
        """Cancel every pending action for the callback (optionally narrowed by args/group)."""
        try:
            canceled = await self.actions.cancel_pending(callback_name, args, group)
        except SQLAlchemyError as e:
            raise SchedulingError(f"Failed to unschedule '{callback_name}': {e}") from e
        if canceled:
            logger.debug(f"Unscheduled {canceled} pending '{callback_name}' action(s) {args or ''}")
        return canceled

    async def next_scheduled_time(
        self, callback_name: str, args: ActionArgs | None = None, group: str = ""
    ) -> datetime | None:
        pending = await self.actions.list_pending(callback_name, args, group)
        return pending[0].scheduled_at if pending else None
