"""Repository for Job rows.

Status changes go through :meth:`JobRepository.transition`, which enforces
the job transition table and stamps ``started_at`` / ``completed_at``.
"""

from collections.abc import Sequence
from datetime import datetime
from typing import Any, Literal

from sqlalchemy import CursorResult, delete, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import flag_modified
from sqlmodel import col, select

from flowmill.exceptions import (
    EngineDataLockedError,
    InvalidStatusTransitionError,
    JobNotFoundError,
)
from flowmill.models import DeleteCriteria, Job, JobStatus, can_transition, utcnow

from .base import BaseRepository


class JobRepository(BaseRepository[Job]):
    """Persistence and state machine guard for jobs."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, Job)

    def _not_found(self, id: Any) -> JobNotFoundError:
        return JobNotFoundError(id)

    async def create_job(
        self, flow_id: int | str, pipeline_id: int | str, engine_data: dict[str, Any] | None = None
    ) -> Job:
        """Insert a pending job."""
        job = Job(
            flow_id=str(flow_id),
            pipeline_id=str(pipeline_id),
            status=JobStatus.pending,
            engine_data=engine_data or {},
        )
        return await self.create(job)

    async def transition(
        self,
        job: Job,
        status: JobStatus,
        engine_data: dict[str, Any] | None = None,
    ) -> Job:
        """Move a job to a new status.

        Args:
            job: Job to update
            status: Requested status
            engine_data: Optional engine data written in the same commit

        Returns:
            Updated job

        Raises:
            InvalidStatusTransitionError: If the transition table forbids the change
        """
        if not can_transition(job.status, status):
            raise InvalidStatusTransitionError(job.job_id, job.status.value, status.value)

        if engine_data is not None:
            job.engine_data = engine_data
            flag_modified(job, "engine_data")

        now = utcnow()
        if status == JobStatus.processing:
            job.started_at = now
        if status.is_terminal:
            job.completed_at = now
        job.status = status

        await self.session.commit()
        await self.session.refresh(job)
        return job

    async def store_engine_data(self, job: Job, engine_data: dict[str, Any]) -> Job:
        """Replace the engine data of a running job.

        Raises:
            EngineDataLockedError: If the job already reached a terminal status
        """
        if job.status.is_terminal:
            raise EngineDataLockedError(job.job_id, job.status.value)
        return await self.update(job, {"engine_data": engine_data})

    def _filtered(
        self,
        statement: Any,
        flow_id: int | str | None,
        pipeline_id: int | str | None,
        status: JobStatus | None,
    ) -> Any:
        if flow_id is not None:
            statement = statement.where(Job.flow_id == str(flow_id))
        if pipeline_id is not None:
            statement = statement.where(Job.pipeline_id == str(pipeline_id))
        if status is not None:
            statement = statement.where(Job.status == status)
        return statement

    async def list_jobs(
        self,
        flow_id: int | str | None = None,
        pipeline_id: int | str | None = None,
        status: JobStatus | None = None,
        offset: int = 0,
        limit: int = 50,
        order: Literal["asc", "desc"] = "desc",
    ) -> Sequence[Job]:
        """List jobs with optional filters, newest first by default."""
        order_by = col(Job.job_id).desc() if order == "desc" else col(Job.job_id).asc()
        statement = self._filtered(select(Job), flow_id, pipeline_id, status)
        statement = statement.order_by(order_by).offset(offset).limit(limit)
        return await self.execute_query(statement)

    async def count_jobs(
        self,
        flow_id: int | str | None = None,
        pipeline_id: int | str | None = None,
        status: JobStatus | None = None,
    ) -> int:
        statement = self._filtered(
            select(func.count()).select_from(Job), flow_id, pipeline_id, status
        )
        result = await self.session.execute(statement)
        return result.scalar() or 0

    async def get_latest_jobs_by_flow_ids(self, flow_ids: Sequence[int]) -> dict[int, Job]:
        """Most recent job of each flow.

        Args:
            flow_ids: Flows to look up

        Returns:
            Mapping of flow id to its newest job; flows without jobs are absent
        """
        if not flow_ids:
            return {}

        latest = (
            select(func.max(Job.job_id).label("job_id"))
            .where(col(Job.flow_id).in_([str(flow_id) for flow_id in flow_ids]))
            .group_by(Job.flow_id)
            .subquery()
        )
        statement = select(Job).where(col(Job.job_id).in_(select(latest.c.job_id)))
        jobs = await self.execute_query(statement)
        return {int(job.flow_id): job for job in jobs}

    async def ids_matching(self, criteria: DeleteCriteria) -> list[int]:
        """Ids of the jobs a bulk delete with ``criteria`` would remove."""
        statement = select(Job.job_id)
        if criteria == DeleteCriteria.failed:
            statement = statement.where(Job.status == JobStatus.failed)
        result = await self.session.execute(statement)
        return [job_id for job_id in result.scalars().all() if job_id is not None]

    async def delete_by_ids(self, job_ids: Sequence[int]) -> int:
        """Delete the given jobs and return the number of rows removed."""
        if not job_ids:
            return 0
        result: CursorResult[Any] = await self.session.execute(  # type: ignore[assignment]
            delete(Job).where(col(Job.job_id).in_(list(job_ids)))
        )
        await self.session.commit()
        return result.rowcount

    async def list_stale(
        self, status: JobStatus, before: datetime, limit: int = 100
    ) -> Sequence[Job]:
        """Non-terminal jobs of ``status`` older than ``before``.

        Processing jobs are aged by ``started_at``; pending jobs by ``created_at``.
        """
        timestamp = Job.started_at if status == JobStatus.processing else Job.created_at
        statement = (
            select(Job)
            .where(Job.status == status)
            .where(col(timestamp) < before)
            .order_by(col(Job.job_id))
            .limit(limit)
        )
        return await self.execute_query(statement)
