"""
Job lifecycle management.

Creates job rows, moves them through the status table, stores engine data
and removes jobs in bulk together with their processed-item records.
"""

from collections.abc import Sequence
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from flowmill.exceptions import ConfigurationError, StorageError
from flowmill.models import DeleteCriteria, EngineData, Job, JobStatus
from flowmill.repositories import JobRepository, ProcessedItemRepository
from flowmill.utils.logger import audit, logger


class JobManager:
    """Service owning the job state machine."""

    def __init__(self, jobs: JobRepository, processed_items: ProcessedItemRepository):
        self.jobs = jobs
        self.processed_items = processed_items

    async def create(
        self,
        flow_id: int | str,
        pipeline_id: int | str,
        engine_data: EngineData | None = None,
    ) -> Job:
        """Insert a pending job.

        Args:
            flow_id: Flow id, or ``"direct"`` for ephemeral workflows
            pipeline_id: Pipeline id, or ``"direct"``
            engine_data: Initial engine data, if already known

        Returns:
            The created job

        Raises:
            StorageError: If the row could not be written
        """
        try:
            job = await self.jobs.create_job(
                flow_id, pipeline_id, engine_data.to_storage() if engine_data else None
            )
        except SQLAlchemyError as e:
            logger.error(f"Failed to create job for flow {flow_id}: {e}")
            raise StorageError("Failed to create job record") from e

        audit("job.created", f"Job {job.job_id} created", job_id=job.job_id, flow_id=str(flow_id))
        return job

    async def get(self, job_id: int) -> Job:
        return await self.jobs.get(job_id)

    async def list_jobs(
        self,
        flow_id: int | str | None = None,
        pipeline_id: int | str | None = None,
        status: JobStatus | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[Sequence[Job], int]:
        """Jobs newest first plus the total matching count."""
        jobs = await self.jobs.list_jobs(flow_id, pipeline_id, status, offset, limit)
        total = await self.jobs.count_jobs(flow_id, pipeline_id, status)
        return jobs, total

    async def start(self, job: Job) -> Job:
        """Mark a pending job as processing; processing jobs are returned unchanged."""
        if job.status == JobStatus.processing:
            return job
        return await self.jobs.transition(job, JobStatus.processing)

    async def complete(
        self,
        job: Job,
        status: JobStatus = JobStatus.completed,
        engine_data: EngineData | None = None,
    ) -> Job:
        """Move a job to a terminal status."""
        job = await self.jobs.transition(
            job, status, engine_data.to_storage() if engine_data else None
        )
        audit(
            "job.completed",
            f"Job {job.job_id} finished with status {status.value}",
            job_id=job.job_id,
            flow_id=job.flow_id,
            status=status.value,
        )
        return job

    async def fail(self, job: Job, reason: str, engine_data: EngineData | None = None) -> Job:
        """Fail a job and forget the items it recorded so a later run can retry them.

        Args:
            job: Job to fail
            reason: Failure description stored in the engine data
            engine_data: Current engine data; the stored payload is kept when omitted

        Returns:
            The failed job
        """
        if engine_data is not None:
            payload = engine_data.to_storage()
        else:
            # keep whatever was stored, even if it no longer validates
            payload = dict(job.engine_data or {})
        payload["failure"] = reason

        job = await self.jobs.transition(job, JobStatus.failed, payload)
        cleaned = await self.processed_items.delete_for_jobs([job.job_id or 0])
        audit(
            "job.failed",
            f"Job {job.job_id} failed: {reason}",
            level="ERROR",
            job_id=job.job_id,
            flow_id=job.flow_id,
            processed_items_cleaned=cleaned,
        )
        return job

    async def store_engine_data(self, job: Job, engine_data: EngineData) -> Job:
        return await self.jobs.store_engine_data(job, engine_data.to_storage())

    async def retrieve_engine_data(self, job: Job) -> EngineData:
        """Typed engine data of a job.

        Raises:
            ConfigurationError: If the stored payload lacks the step maps
        """
        try:
            return EngineData.model_validate(job.engine_data or {})
        except PydanticValidationError as e:
            raise ConfigurationError(f"Job {job.job_id} has invalid engine data: {e}") from e

    async def delete(
        self, criteria: DeleteCriteria, cleanup_processed: bool = True
    ) -> dict[str, Any]:
        """Delete jobs in bulk.

        The ids of matching jobs are captured before the delete so that their
        processed-item records can still be removed afterwards.

        Args:
            criteria: ``all`` or ``failed``
            cleanup_processed: Whether to remove processed-item records of the deleted jobs

        Returns:
            ``jobs_deleted`` and ``processed_items_cleaned`` counts
        """
        job_ids = await self.jobs.ids_matching(criteria)
        jobs_deleted = await self.jobs.delete_by_ids(job_ids)

        processed_items_cleaned = 0
        if cleanup_processed and job_ids:
            processed_items_cleaned = await self.processed_items.delete_for_jobs(job_ids)

        audit(
            "jobs.deleted",
            f"Deleted {jobs_deleted} job(s) matching '{criteria.value}'",
            criteria=criteria.value,
            jobs_deleted=jobs_deleted,
            processed_items_cleaned=processed_items_cleaned,
        )
        return {"jobs_deleted": jobs_deleted, "processed_items_cleaned": processed_items_cleaned}
