"""
Public operations returning ``{"success": ...}`` result dictionaries.

Services raise domain exceptions; the :func:`operation` decorator turns every
failure into ``{"success": False, "error": "..."}`` so callers handle one
result shape whatever went wrong.

Example:
    async with db_manager.get_async_session_context() as session:
        ops = Operations(build_runtime(session, components))
        result = await ops.execute_workflow(flow_id=12, count=3)
"""

import functools
from collections.abc import Awaitable, Callable
from typing import Any, TypeAlias

from pydantic import ValidationError as PydanticValidationError

from flowmill.exceptions import FlowmillError
from flowmill.models import (
    DeleteCriteria,
    Flow,
    FlowRead,
    Job,
    JobReadWithEngineData,
    JobStatus,
    Pipeline,
    PipelineRead,
)
from flowmill.services.engine import ExecuteWorkflowRequest
from flowmill.services.runtime import Runtime
from flowmill.types import FieldMap, HandlerConfig, OperationResult, SchedulingConfig
from flowmill.utils.logger import logger

OperationFunc: TypeAlias = Callable[..., Awaitable[dict[str, Any]]]


def operation(func: OperationFunc) -> Callable[..., Awaitable[OperationResult]]:
    """Wrap a coroutine returning a payload dict into the result shape."""

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> OperationResult:
        try:
            payload = await func(*args, **kwargs)
        except FlowmillError as e:
            logger.warning(f"{func.__name__} failed: {e}")
            return {"success": False, "error": str(e)}
        except PydanticValidationError as e:
            logger.warning(f"{func.__name__} rejected invalid input: {e}")
            return {"success": False, "error": f"Invalid input: {e.errors()[0]['msg']}"}
        except Exception as e:
            logger.exception(f"{func.__name__} raised unexpectedly")
            return {"success": False, "error": f"Unexpected error: {e}"}
        return {"success": True, **payload}

    return wrapper


def _pipeline_dict(pipeline: Pipeline) -> dict[str, Any]:
    return PipelineRead.model_validate(pipeline).model_dump(mode="json")


def _flow_dict(flow: Flow) -> dict[str, Any]:
    return FlowRead.model_validate(flow).model_dump(mode="json")


def _job_dict(job: Job) -> dict[str, Any]:
    return JobReadWithEngineData.model_validate(job).model_dump(mode="json")


def _flow_step_ids(flow: Flow) -> list[str]:
    return [step["flow_step_id"] for step in flow.ordered_steps()]


class Operations:
    """Result-shaped facade over the services of one :class:`Runtime`."""

    def __init__(self, runtime: Runtime):
        self.runtime = runtime

    # ─── Execution ───

    @operation
    async def execute_workflow(self, **params: Any) -> dict[str, Any]:
        """Run a stored flow or an ephemeral workflow.

        Accepts the fields of :class:`ExecuteWorkflowRequest`.
        """
        request = ExecuteWorkflowRequest(**params)
        return await self.runtime.executor.execute(request)

    # ─── Pipelines ───

    @operation
    async def create_pipeline(
        self,
        pipeline_name: str,
        steps: list[dict[str, Any]] | None = None,
        flow_config: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        pipeline, flow = await self.runtime.pipeline_service.create(
            pipeline_name, steps, flow_config
        )
        return {
            "creation_mode": "complete" if steps else "simple",
            "pipeline_id": pipeline.pipeline_id,
            "pipeline_name": pipeline.pipeline_name,
            "flow_id": flow.flow_id,
            "flow_name": flow.flow_name,
            "steps_created": len(pipeline.pipeline_config),
            "flow_step_ids": _flow_step_ids(flow),
            "message": f"Pipeline '{pipeline.pipeline_name}' created",
        }

    @operation
    async def create_pipelines(self, pipelines: list[dict[str, Any]]) -> dict[str, Any]:
        """Bulk create; per-item errors do not stop the other items."""
        result = await self.runtime.pipeline_service.create_many(pipelines)
        created, errors = result["created"], result["errors"]
        if not created and errors:
            raise FlowmillError(f"No pipelines were created. {len(errors)} error(s) occurred.")
        return {
            "created_count": len(created),
            "failed_count": len(errors),
            "created": created,
            "errors": errors,
            "partial": bool(errors),
            "message": f"Created {len(created)} pipeline(s)",
        }

    @operation
    async def get_pipeline(self, pipeline_id: int) -> dict[str, Any]:
        pipeline = await self.runtime.pipeline_service.get(pipeline_id)
        flows, total = await self.runtime.flow_service.list_for_pipeline(pipeline_id)
        latest = await self.runtime.jobs.get_latest_jobs_by_flow_ids(
            [flow.flow_id for flow in flows]  # type: ignore[misc]
        )
        flow_dicts = []
        for flow in flows:
            job = latest.get(flow.flow_id)  # type: ignore[arg-type]
            flow_dicts.append(
                {
                    **_flow_dict(flow),
                    "latest_job": (
                        {"job_id": job.job_id, "status": job.status.value} if job else None
                    ),
                }
            )
        return {"pipeline": _pipeline_dict(pipeline), "flows": flow_dicts, "flow_count": total}

    @operation
    async def list_pipelines(self, offset: int = 0, limit: int = 20) -> dict[str, Any]:
        pipelines, total = await self.runtime.pipeline_service.list_pipelines(offset, limit)
        return {"pipelines": [_pipeline_dict(p) for p in pipelines], "total": total}

    @operation
    async def update_pipeline(self, pipeline_id: int, pipeline_name: str) -> dict[str, Any]:
        pipeline = await self.runtime.pipeline_service.rename(pipeline_id, pipeline_name)
        return {"pipeline": _pipeline_dict(pipeline), "updated_fields": ["pipeline_name"]}

    @operation
    async def add_pipeline_step(self, pipeline_id: int, step: dict[str, Any]) -> dict[str, Any]:
        added = await self.runtime.pipeline_service.add_step(pipeline_id, step)
        return {"pipeline_id": pipeline_id, "step": added}

    @operation
    async def remove_pipeline_step(self, pipeline_id: int, pipeline_step_id: str) -> dict[str, Any]:
        synced = await self.runtime.pipeline_service.remove_step(pipeline_id, pipeline_step_id)
        return {
            "pipeline_id": pipeline_id,
            "pipeline_step_id": pipeline_step_id,
            "flows_updated": synced,
        }

    @operation
    async def delete_pipeline(self, pipeline_id: int) -> dict[str, Any]:
        result = await self.runtime.pipeline_service.delete(pipeline_id)
        return {
            "pipeline_id": pipeline_id,
            **result,
            "message": (
                f"Pipeline '{result['pipeline_name']}' deleted "
                f"with {result['deleted_flows']} flow(s)"
            ),
        }

    @operation
    async def duplicate_pipeline(
        self, pipeline_id: int, new_name: str | None = None
    ) -> dict[str, Any]:
        result = await self.runtime.pipeline_service.duplicate(pipeline_id, new_name)
        copy_pipeline: Pipeline = result["pipeline"]
        return {
            "source_pipeline_id": pipeline_id,
            "pipeline_id": copy_pipeline.pipeline_id,
            "pipeline_name": copy_pipeline.pipeline_name,
            "flows": [_flow_dict(flow) for flow in result["flows"]],
        }

    # ─── Flows ───

    @operation
    async def create_flow(
        self,
        pipeline_id: int,
        flow_name: str = "",
        scheduling_config: SchedulingConfig | None = None,
    ) -> dict[str, Any]:
        await self.runtime.pipeline_service.get(pipeline_id)
        flow = await self.runtime.flow_service.create(pipeline_id, flow_name, scheduling_config)
        return {
            "flow_id": flow.flow_id,
            "flow_name": flow.flow_name,
            "pipeline_id": pipeline_id,
            "flow_step_ids": _flow_step_ids(flow),
            "interval": flow.interval,
        }

    @operation
    async def get_flow(self, flow_id: int) -> dict[str, Any]:
        flow = await self.runtime.flow_service.get(flow_id)
        next_run = await self.runtime.flow_service.next_run_time(flow_id)
        return {
            "flow": _flow_dict(flow),
            "next_run_time": next_run.isoformat() if next_run else None,
        }

    @operation
    async def update_flow(self, flow_id: int, flow_name: str) -> dict[str, Any]:
        flow = await self.runtime.flow_service.rename(flow_id, flow_name)
        return {"flow": _flow_dict(flow), "updated_fields": ["flow_name"]}

    @operation
    async def update_flow_schedule(
        self, flow_id: int, scheduling_config: SchedulingConfig
    ) -> dict[str, Any]:
        flow = await self.runtime.flow_service.update_schedule(flow_id, scheduling_config)
        next_run = await self.runtime.flow_service.next_run_time(flow_id)
        return {
            "flow_id": flow_id,
            "scheduling_config": flow.scheduling_config,
            "next_run_time": next_run.isoformat() if next_run else None,
        }

    @operation
    async def delete_flow(self, flow_id: int) -> dict[str, Any]:
        await self.runtime.flow_service.delete(flow_id)
        return {"flow_id": flow_id, "message": f"Flow {flow_id} deleted"}

    @operation
    async def duplicate_flow(
        self,
        source_flow_id: int,
        target_pipeline_id: int | None = None,
        flow_name: str | None = None,
        scheduling_config: SchedulingConfig | None = None,
        step_config_overrides: dict[int, dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        flow = await self.runtime.flow_service.duplicate(
            source_flow_id,
            target_pipeline_id,
            flow_name,
            scheduling_config,
            step_config_overrides,
        )
        return {
            "source_flow_id": source_flow_id,
            "flow_id": flow.flow_id,
            "flow_name": flow.flow_name,
            "pipeline_id": flow.pipeline_id,
            "flow_step_ids": _flow_step_ids(flow),
        }

    # ─── Flow steps ───

    @operation
    async def get_flow_step(self, flow_step_id: str) -> dict[str, Any]:
        return {"flow_step": await self.runtime.flow_steps.get(flow_step_id)}

    @operation
    async def update_flow_step(
        self,
        flow_step_id: str,
        handler_slug: str | None = None,
        handler_config: HandlerConfig | None = None,
        user_message: str | None = None,
    ) -> dict[str, Any]:
        return await self.runtime.flow_steps.update_flow_step(
            flow_step_id, handler_slug, handler_config, user_message
        )

    @operation
    async def configure_flow_steps(
        self,
        pipeline_id: int,
        step_type: str | None = None,
        handler_slug: str | None = None,
        target_handler_slug: str | None = None,
        field_map: FieldMap | None = None,
        handler_config: HandlerConfig | None = None,
        flow_configs: dict[int, HandlerConfig] | None = None,
        user_message: str | None = None,
    ) -> dict[str, Any]:
        result = await self.runtime.flow_steps.configure_flow_steps(
            pipeline_id,
            step_type=step_type,
            handler_slug=handler_slug,
            target_handler_slug=target_handler_slug,
            field_map=field_map,
            handler_config=handler_config,
            flow_configs=flow_configs,
            user_message=user_message,
        )
        modified, errors = result["steps_modified"], result["errors"]
        if not modified:
            if errors:
                raise FlowmillError(f"No steps were updated. {len(errors)} error(s) occurred.")
            raise FlowmillError("No matching steps found for the specified criteria")
        return {
            **result,
            "partial": bool(errors),
            "message": f"Updated {modified} step(s) across {result['flows_updated']} flow(s)",
        }

    # ─── Jobs ───

    @operation
    async def get_jobs(
        self,
        job_id: int | None = None,
        flow_id: int | None = None,
        pipeline_id: int | None = None,
        status: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> dict[str, Any]:
        """One job by id, or a filtered page of jobs newest first."""
        if job_id is not None:
            job = await self.runtime.job_manager.get(job_id)
            return {"job": _job_dict(job)}

        job_status = JobStatus(status) if status else None
        jobs, total = await self.runtime.job_manager.list_jobs(
            flow_id, pipeline_id, job_status, offset, limit
        )
        return {
            "jobs": [_job_dict(job) for job in jobs],
            "total": total,
            "offset": offset,
            "limit": limit,
        }

    @operation
    async def delete_jobs(
        self, type: str | None = None, cleanup_processed: bool = True
    ) -> dict[str, Any]:
        try:
            criteria = DeleteCriteria(type)
        except ValueError:
            raise FlowmillError('type is required and must be "all" or "failed"') from None

        result = await self.runtime.job_manager.delete(criteria, cleanup_processed)
        deleted = result["jobs_deleted"]
        return {
            "deleted_count": deleted,
            "processed_items_cleaned": result["processed_items_cleaned"],
            "message": f"Deleted {deleted} {criteria.value} job(s)",
        }

    # ─── Health ───

    @operation
    async def get_flow_health(self, flow_id: int) -> dict[str, Any]:
        await self.runtime.flow_service.get(flow_id)
        health = await self.runtime.health.get_flow_health(flow_id)
        return {"flow_id": flow_id, **health.as_dict()}

    @operation
    async def get_problem_flows(self, threshold: int | None = None) -> dict[str, Any]:
        report = await self.runtime.health.get_problem_flows(threshold)
        count = len(report["failing"]) + len(report["idle"])
        message = (
            f"Found {count} problem flow(s) at threshold {report['threshold']}"
            if count
            else "No problem flows detected"
        )
        return {**report, "count": count, "message": message}
