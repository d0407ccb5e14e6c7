"""
Background service failing jobs that stopped making progress.

A job is stuck when it has been ``processing`` (or ``pending``) for longer
than ``settings.stuck_job_timeout_minutes`` and no step of it is waiting in
the timer queue.
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from flowmill.models import JobStatus, utcnow
from flowmill.repositories import JobRepository, ProcessedItemRepository, ScheduledActionRepository
from flowmill.services.job_manager import JobManager
from flowmill.services.scheduling.bridge import EXECUTE_STEP, JOB_GROUP
from flowmill.settings import settings
from flowmill.utils.logger import logger

if TYPE_CHECKING:
    from flowmill.services.scheduling.middleware import SessionContextFactory


class StuckJobReaper:
    """Background service failing stuck jobs."""

    def __init__(
        self,
        session_context: SessionContextFactory | None = None,
        timeout_minutes: int | None = None,
        sweep_interval: int | None = None,
        batch_size: int = 100,
    ):
        """Initialize the reaper.

        Args:
            session_context: Factory of database sessions
            timeout_minutes: Age after which a job without progress is failed
            sweep_interval: Interval between sweeps in seconds
            batch_size: Maximum jobs inspected per status and sweep
        """
        self.session_context = session_context
        self.timeout_minutes = timeout_minutes or settings.stuck_job_timeout_minutes
        self.sweep_interval = sweep_interval or settings.stuck_job_sweep_interval
        self.batch_size = batch_size
        self.is_running = False
        self._task: asyncio.Task | None = None

    def _sessions(self) -> SessionContextFactory:
        if self.session_context is not None:
            return self.session_context
        from flowmill.utils.db_manager import db_manager

        return db_manager.get_async_session_context

    async def start(self) -> None:
        """Start the reaper."""
        if self.is_running:
            logger.warning("Stuck job reaper already running")
            return

        self.is_running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("Stuck job reaper started")

    async def stop(self) -> None:
        """Stop the reaper."""
        self.is_running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        logger.info("Stuck job reaper stopped")

    async def _sweep_loop(self) -> None:
        while self.is_running:
            try:
                await self.sweep_once()
                await asyncio.sleep(self.sweep_interval)
            except Exception as e:
                logger.error(f"Error in stuck job sweep: {e}")
                await asyncio.sleep(60)

    async def sweep_once(self, now: datetime | None = None) -> int:
        """Fail every stuck job once.

        Returns:
            Number of jobs failed
        """
        cutoff = (now or utcnow()) - timedelta(minutes=self.timeout_minutes)
        failed = 0

        async with self._sessions()() as session:
            jobs = JobRepository(session)
            manager = JobManager(jobs, ProcessedItemRepository(session))
            waiting = await self._jobs_waiting_in_queue(ScheduledActionRepository(session))

            for status in (JobStatus.processing, JobStatus.pending):
                for job in await jobs.list_stale(status, cutoff, self.batch_size):
                    if job.job_id in waiting:
                        continue
                    await manager.fail(
                        job,
                        f"Job made no progress for {self.timeout_minutes} minutes "
                        f"while {status.value}",
                    )
                    failed += 1

        if failed:
            logger.warning(f"Stuck job sweep failed {failed} job(s)")
        else:
            logger.debug("Stuck job sweep found nothing to do")
        return failed

    @staticmethod
    async def _jobs_waiting_in_queue(actions: ScheduledActionRepository) -> set[int]:
        pending = await actions.list_pending(EXECUTE_STEP, group=JOB_GROUP)
        return {int(action.args["job_id"]) for action in pending if "job_id" in action.args}
