"""
TaskIQ middlewares for step tasks.

StepLoggingMiddleware logs task lifecycle events with the job and step they
belong to.

JobFailureMiddleware fails the job of a step task that errored permanently,
so a crashed worker never leaves the job processing.
"""

from __future__ import annotations

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from typing import TYPE_CHECKING, Any, TypeAlias

from sqlalchemy.ext.asyncio import AsyncSession
from taskiq import TaskiqMiddleware

from flowmill.utils.logger import logger

from .bridge import EXECUTE_STEP

if TYPE_CHECKING:
    from taskiq import TaskiqMessage, TaskiqResult

SessionContextFactory: TypeAlias = Callable[[], AbstractAsyncContextManager[AsyncSession]]


def _log_prefix(message: TaskiqMessage) -> str:
    job_id = message.labels.get("job_id", "")
    flow_step_id = message.labels.get("flow_step_id", "")
    if job_id and flow_step_id:
        return f"[job={job_id} step={flow_step_id}] "
    if job_id:
        return f"[job={job_id}] "
    return ""


class StepLoggingMiddleware(TaskiqMiddleware):
    """Logs task send/complete events."""

    async def pre_send(self, message: TaskiqMessage) -> TaskiqMessage:
        """Log before a task message is sent to the broker.

        Args:
            message: The outgoing task message.

        Returns:
            The message unchanged.
        """
        logger.debug(
            f"{_log_prefix(message)}Sending task '{message.task_name}' (id={message.task_id})"
        )
        return message

    async def post_execute(self, message: TaskiqMessage, result: TaskiqResult[Any]) -> None:
        """Log after task execution completes.

        Args:
            message: The executed task message.
            result: The task execution result.
        """
        prefix = _log_prefix(message)

        if result.is_err:
            logger.error(
                f"{prefix}Task '{message.task_name}' (id={message.task_id}) failed: {result.error}"
            )
        else:
            logger.info(
                f"{prefix}Task '{message.task_name}' (id={message.task_id}) "
                f"completed in {result.execution_time:.3f}s"
            )


class JobFailureMiddleware(TaskiqMiddleware):
    """Fails the job of a step task whose retries are exhausted.

    SmartRetryMiddleware sets ``result.error = NoResultError()`` when it
    schedules a retry; any other error on an ``execute_step`` task is final.

    Args:
        session_context: Factory of database sessions; defaults to the
            application's ``db_manager``.
    """

    def __init__(self, session_context: SessionContextFactory | None = None) -> None:
        super().__init__()
        self._session_context = session_context

    def _sessions(self) -> SessionContextFactory:
        if self._session_context is not None:
            return self._session_context
        from flowmill.utils.db_manager import db_manager

        return db_manager.get_async_session_context

    async def post_execute(self, message: TaskiqMessage, result: TaskiqResult[Any]) -> None:
        """Mark the job failed when a step task failed for good.

        Args:
            message: The executed task message.
            result: The task execution result.
        """
        if not result.is_err or message.task_name != EXECUTE_STEP:
            return

        from taskiq.exceptions import NoResultError

        if isinstance(result.error, NoResultError):
            return  # retry scheduled

        job_id = message.kwargs.get("job_id")
        if job_id is None:
            return
        await self._fail_job(int(job_id), f"Step task failed: {result.error}")

    async def _fail_job(self, job_id: int, reason: str) -> None:
        from flowmill.repositories import JobRepository, ProcessedItemRepository
        from flowmill.services.job_manager import JobManager

        try:
            async with self._sessions()() as session:
                manager = JobManager(JobRepository(session), ProcessedItemRepository(session))
                job = await manager.jobs.get_optional(job_id)
                if job is None or job.status.is_terminal:
                    return
                await manager.fail(job, reason)
        except Exception as e:
            logger.error(f"[job={job_id}] Failed to record step task failure: {e}")
