"""
Background service turning due scheduled actions into broker tasks.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, TypeAlias

from flowmill.exceptions import SchedulingError
from flowmill.models import ActionStatus, ScheduledAction, utcnow
from flowmill.repositories import ScheduledActionRepository
from flowmill.settings import settings
from flowmill.utils.logger import logger

if TYPE_CHECKING:
    from taskiq import AsyncBroker

    from .middleware import SessionContextFactory

DispatchFunc: TypeAlias = Callable[[ScheduledAction], Awaitable[None]]


def next_occurrence(action: ScheduledAction, now: datetime) -> datetime:
    """Next run of a recurring action strictly after ``now``; missed ticks are skipped."""
    interval = timedelta(seconds=action.interval_seconds or 0)
    next_run = action.scheduled_at + interval
    if next_run <= now:
        missed = (now - next_run) // interval + 1
        next_run += interval * missed
    return next_run


class ActionDispatcher:
    """Polls the timer queue and dispatches due actions."""

    def __init__(
        self,
        broker: AsyncBroker | None = None,
        session_context: SessionContextFactory | None = None,
        poll_interval: float | None = None,
        batch_size: int | None = None,
        dispatch: DispatchFunc | None = None,
    ):
        """Initialize the dispatcher.

        Args:
            broker: Broker whose registered tasks receive the actions
            session_context: Factory of database sessions
            poll_interval: Seconds between polls
            batch_size: Maximum actions claimed per poll
            dispatch: Replacement for broker dispatch, mainly for tests
        """
        self.broker = broker
        self.session_context = session_context
        self.poll_interval = poll_interval or settings.scheduler_poll_interval
        self.batch_size = batch_size or settings.scheduler_batch_size
        self.dispatch = dispatch or self._kiq
        self.is_running = False
        self._task: asyncio.Task | None = None

    def _sessions(self) -> SessionContextFactory:
        if self.session_context is not None:
            return self.session_context
        from flowmill.utils.db_manager import db_manager

        return db_manager.get_async_session_context

    async def start(self) -> None:
        """Start the dispatch loop."""
        if self.is_running:
            logger.warning("Action dispatcher already running")
            return

        self.is_running = True
        self._task = asyncio.create_task(self._dispatch_loop())
        logger.info("Action dispatcher started")

    async def stop(self) -> None:
        """Stop the dispatch loop."""
        self.is_running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        logger.info("Action dispatcher stopped")

    async def _dispatch_loop(self) -> None:
        while self.is_running:
            try:
                dispatched = await self.run_once()
                if dispatched < self.batch_size:
                    await asyncio.sleep(self.poll_interval)
            except Exception as e:
                logger.error(f"Error in action dispatcher: {e}")
                await asyncio.sleep(max(self.poll_interval, 5))

    async def _kiq(self, action: ScheduledAction) -> None:
        if self.broker is None:
            raise SchedulingError("No broker configured for the action dispatcher")
        task = self.broker.find_task(action.hook)
        if task is None:
            raise SchedulingError(f"No task registered for '{action.hook}'")

        labels = {key: str(value) for key, value in action.args.items() if key != "args"}
        await task.kicker().with_labels(**labels).kiq(**action.args)

    async def run_once(self, now: datetime | None = None) -> int:
        """Dispatch every action due at ``now``.

        Returns:
            Number of actions dispatched successfully
        """
        now = now or utcnow()
        dispatched = 0

        async with self._sessions()() as session:
            actions = ScheduledActionRepository(session)
            for action in await actions.due(now, self.batch_size):
                if not await actions.claim(action):
                    continue

                error: str | None = None
                try:
                    await self.dispatch(action)
                    dispatched += 1
                except Exception as e:
                    error = str(e)
                    logger.error(f"Failed to dispatch '{action.hook}' {action.args}: {e}")

                await self._finish(actions, action, error, now)

        if dispatched:
            logger.debug(f"Dispatched {dispatched} scheduled action(s)")
        return dispatched

    @staticmethod
    async def _finish(
        actions: ScheduledActionRepository,
        action: ScheduledAction,
        error: str | None,
        now: datetime,
    ) -> None:
        await actions.refresh(action)
        if action.status == ActionStatus.canceled:
            return
        if action.is_recurring:
            update = {
                "status": ActionStatus.pending,
                "scheduled_at": next_occurrence(action, now),
                "last_error": error,
            }
        elif error is not None:
            update = {"status": ActionStatus.failed, "last_error": error}
        else:
            update = {"status": ActionStatus.complete}
        await actions.update(action, update, exclude_unset=False)
