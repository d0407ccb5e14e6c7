"""
Workflow executor.

Turns a stored flow or an inline step list into one or more pending jobs and
schedules the first step of each. Everything after the first hop is done by
:class:`~flowmill.services.engine.step_runner.StepRunner` as the scheduling
bridge invokes it.
"""

from datetime import datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from flowmill.exceptions import (
    FirstStepNotFoundError,
    FlowNotFoundError,
    SchedulingError,
    StorageError,
    ValidationError,
)
from flowmill.models import (
    DIRECT,
    EngineData,
    Flow,
    FlowStepConfig,
    Job,
    Pipeline,
    PipelineStepConfig,
    to_utc,
    utcnow,
)
from flowmill.repositories import FlowRepository, PipelineRepository
from flowmill.services.job_manager import JobManager
from flowmill.services.registry import StepRegistry
from flowmill.services.scheduling.bridge import SchedulingBridge
from flowmill.settings import settings
from flowmill.utils.logger import audit, logger

from .chaining import schedule_next_step
from .requests import ExecuteWorkflowRequest

DRY_RUN_MESSAGE = (
    "Ephemeral workflow dry-run started. No posts will be created - "
    "preview data will be returned."
)


class WorkflowExecutor:
    """Starts jobs for flows and ephemeral workflows."""

    def __init__(
        self,
        flows: FlowRepository,
        pipelines: PipelineRepository,
        job_manager: JobManager,
        registry: StepRegistry,
        bridge: SchedulingBridge,
        max_runs: int | None = None,
    ):
        self.flows = flows
        self.pipelines = pipelines
        self.job_manager = job_manager
        self.registry = registry
        self.bridge = bridge
        self.max_runs = max_runs or settings.max_runs_per_request

    async def execute(self, request: ExecuteWorkflowRequest) -> dict[str, Any]:
        """Dispatch to database-flow or ephemeral mode.

        Raises:
            ValidationError: If both or neither of ``flow_id`` and ``workflow`` are given
        """
        has_flow = request.flow_id is not None
        has_workflow = request.workflow is not None

        if not has_flow and not has_workflow:
            raise ValidationError("Must provide either flow_id or workflow")
        if has_flow and has_workflow:
            raise ValidationError("Cannot provide both flow_id and workflow")

        if has_flow:
            return await self.execute_flow(
                request.flow_id,  # type: ignore[arg-type]
                count=request.count,
                timestamp=request.timestamp,
                initial_data=request.initial_data,
                dry_run=request.dry_run,
            )
        return await self.execute_ephemeral(
            request.workflow,  # type: ignore[arg-type]
            timestamp=request.timestamp,
            initial_data=request.initial_data,
            dry_run=request.dry_run,
        )

    @staticmethod
    def _delayed_time(timestamp: datetime | int | float | None) -> datetime | None:
        """Run time for a delayed request, or None when it should run now."""
        if timestamp is None:
            return None
        run_at = to_utc(timestamp)
        return run_at if run_at > utcnow() else None

    @staticmethod
    def _parse_flow_id(flow_id: int | str) -> int:
        try:
            value = int(flow_id)
        except (TypeError, ValueError):
            value = 0
        if value <= 0 or isinstance(flow_id, bool):
            raise ValidationError("flow_id must be a positive integer")
        return value

    # ─── Database-flow mode ───

    def build_flow_engine_data(
        self,
        flow: Flow,
        pipeline: Pipeline,
        dry_run: bool = False,
        initial_data: dict[str, Any] | None = None,
    ) -> EngineData:
        """Snapshot of a flow's step maps used as a new job's engine data."""
        return self._engine_data(
            flow_config=flow.flow_config,
            pipeline_config=pipeline.pipeline_config,
            dry_run=dry_run,
            initial_data=initial_data,
        )

    @staticmethod
    def _engine_data(
        flow_config: dict[str, Any],
        pipeline_config: dict[str, Any],
        dry_run: bool,
        initial_data: dict[str, Any] | None,
    ) -> EngineData:
        payload: dict[str, Any] = dict(initial_data or {})
        payload.update(
            {
                "flow_config": flow_config,
                "pipeline_config": pipeline_config,
                "dry_run_mode": dry_run,
            }
        )
        try:
            return EngineData.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid workflow data: {e}") from e

    async def execute_flow(
        self,
        flow_id: int | str,
        count: int = 1,
        timestamp: datetime | int | float | None = None,
        initial_data: dict[str, Any] | None = None,
        dry_run: bool = False,
    ) -> dict[str, Any]:
        """Start ``count`` independent jobs of a stored flow.

        Args:
            flow_id: Flow to run
            count: Number of runs, clamped to ``1..max_runs``
            timestamp: Future run time; only valid with a single run
            initial_data: Extra fields seeded into each job's engine data
            dry_run: Whether destination steps only produce previews

        Returns:
            Result with ``job_id`` (single run) or ``job_ids`` and ``count``

        Raises:
            ValidationError: On a bad ``flow_id`` or ``count`` with a future ``timestamp``
            FlowNotFoundError: If the flow does not exist
            StorageError: If not a single job could be created
            FirstStepNotFoundError: If the flow has no step with execution order 0
            SchedulingError: If the first step could not be scheduled
        """
        flow_id = self._parse_flow_id(flow_id)
        count = max(1, min(self.max_runs, int(count)))
        run_at = self._delayed_time(timestamp)

        if run_at is not None and count > 1:
            raise ValidationError(
                "Cannot schedule multiple runs with a timestamp. "
                "Use count only for immediate execution."
            )

        flow = await self.flows.get_optional(flow_id)
        if flow is None:
            raise FlowNotFoundError(flow_id)
        pipeline = await self.pipelines.get(flow.pipeline_id)
        engine_data = self.build_flow_engine_data(flow, pipeline, dry_run, initial_data)

        job_ids: list[int] = []
        for _ in range(count):
            try:
                job = await self.job_manager.create(flow_id, flow.pipeline_id, engine_data)
            except StorageError:
                if not job_ids:
                    raise
                logger.warning(
                    f"Flow {flow_id}: job creation failed after {len(job_ids)} of {count} runs"
                )
                break
            job_ids.append(job.job_id)  # type: ignore[arg-type]
            await self._start(job, engine_data, run_at, f"flow {flow_id}")

        execution_type = "delayed" if run_at else "immediate"
        audit(
            "workflow.executed",
            f"Flow {flow_id} started {len(job_ids)} job(s) ({execution_type})",
            flow_id=flow_id,
            job_ids=job_ids,
        )

        result: dict[str, Any] = {
            "execution_mode": "database",
            "execution_type": execution_type,
            "flow_id": flow_id,
            "flow_name": flow.flow_name,
            "dry_run": dry_run,
        }
        if len(job_ids) == 1:
            result["job_id"] = job_ids[0]
        else:
            result["job_ids"] = job_ids
            result["count"] = len(job_ids)

        if run_at is not None:
            result["timestamp"] = run_at.isoformat()
            result["message"] = f"Flow '{flow.flow_name}' scheduled for {run_at.isoformat()}"
        elif len(job_ids) == 1:
            result["message"] = f"Flow '{flow.flow_name}' queued for immediate execution"
        else:
            result["message"] = f"Queued {len(job_ids)} runs of flow '{flow.flow_name}'"
        return result

    async def run_flow(self, flow_id: int) -> int:
        """Start one immediate run of a flow; used by recurring schedule ticks.

        Returns:
            Id of the created job
        """
        result = await self.execute_flow(flow_id)
        return result["job_id"]

    async def _start(
        self, job: Job, engine_data: EngineData, run_at: datetime | None, label: str
    ) -> None:
        """Schedule the first step of a freshly created job.

        The job row is kept even when this fails; it stays pending until the
        stuck-job reaper fails it.
        """
        first_step_id = engine_data.first_step_id()
        if first_step_id is None:
            logger.error(f"[job={job.job_id}] Could not determine first step in {label}")
            raise FirstStepNotFoundError(f"Could not determine first step in {label}")

        try:
            await schedule_next_step(
                self.bridge, job.job_id or 0, first_step_id, timestamp=run_at
            )
        except SchedulingError as e:
            logger.error(f"[job={job.job_id}] Failed to schedule first step: {e}")
            raise SchedulingError("Failed to schedule workflow execution") from e

    # ─── Ephemeral mode ───

    def validate_workflow(self, workflow: dict[str, Any]) -> list[dict[str, Any]]:
        """Check an inline workflow and return its steps.

        Raises:
            ValidationError: Naming the offending step index
        """
        steps = workflow.get("steps")
        if not isinstance(steps, list):
            raise ValidationError("Workflow must contain steps array")
        if not steps:
            raise ValidationError("Workflow must have at least one step")

        valid = self.registry.valid_types()
        for index, step in enumerate(steps):
            step_type = step.get("type") if isinstance(step, dict) else None
            if not step_type:
                raise ValidationError(f"Step {index} missing type")
            if not self.registry.is_valid(step_type):
                raise ValidationError(
                    f"Step {index} has invalid type: {step_type}. Valid types: {', '.join(valid)}"
                )
            if self.registry.requires_handler(step_type) and not step.get("handler_slug"):
                raise ValidationError(
                    f"Step {index} missing handler_slug (required for non-AI steps)"
                )
        return steps

    def build_ephemeral_configs(
        self, steps: list[dict[str, Any]]
    ) -> tuple[dict[str, FlowStepConfig], dict[str, PipelineStepConfig]]:
        """Synthesize transient step maps for an inline workflow."""
        flow_config: dict[str, FlowStepConfig] = {}
        pipeline_config: dict[str, PipelineStepConfig] = {}

        for index, step in enumerate(steps):
            flow_step_id = f"ephemeral_step_{index}"
            pipeline_step_id = f"ephemeral_pipeline_{index}"
            step_type = step["type"]
            enabled_tools = list(step.get("enabled_tools") or [])

            flow_config[flow_step_id] = FlowStepConfig(
                flow_step_id=flow_step_id,
                pipeline_step_id=pipeline_step_id,
                step_type=step_type,
                execution_order=index,
                pipeline_id=DIRECT,
                flow_id=DIRECT,
                handler_slug=step.get("handler_slug"),
                handler_config=dict(step.get("handler_config") or {}),
                user_message=step.get("user_message"),
                enabled_tools=enabled_tools,
            )
            if not self.registry.requires_handler(step_type):
                pipeline_config[pipeline_step_id] = PipelineStepConfig(
                    pipeline_step_id=pipeline_step_id,
                    step_type=step_type,
                    execution_order=index,
                    label=step.get("label") or self.registry.label_for(step_type),
                    provider=step.get("provider"),
                    model=step.get("model"),
                    system_prompt=step.get("system_prompt"),
                    enabled_tools=enabled_tools,
                )
        return flow_config, pipeline_config

    async def execute_ephemeral(
        self,
        workflow: dict[str, Any],
        timestamp: datetime | int | float | None = None,
        initial_data: dict[str, Any] | None = None,
        dry_run: bool = False,
    ) -> dict[str, Any]:
        """Run an inline workflow as a single ``direct`` job.

        Raises:
            ValidationError: If the workflow is malformed
            StorageError: If the job could not be created
            SchedulingError: If the first step could not be scheduled
        """
        steps = self.validate_workflow(workflow)
        flow_config, pipeline_config = self.build_ephemeral_configs(steps)
        engine_data = self._engine_data(
            flow_config={k: v.model_dump() for k, v in flow_config.items()},
            pipeline_config={k: v.model_dump() for k, v in pipeline_config.items()},
            dry_run=dry_run,
            initial_data=initial_data,
        )
        run_at = self._delayed_time(timestamp)

        job = await self.job_manager.create(DIRECT, DIRECT, engine_data)
        await self._start(job, engine_data, run_at, "workflow")

        execution_type = "delayed" if run_at else "immediate"
        audit(
            "workflow.executed",
            f"Ephemeral workflow job {job.job_id} started ({execution_type})",
            job_id=job.job_id,
            step_count=len(steps),
            dry_run=dry_run,
        )

        result: dict[str, Any] = {
            "execution_mode": "direct",
            "execution_type": execution_type,
            "job_id": job.job_id,
            "step_count": len(steps),
            "dry_run": dry_run,
        }
        if dry_run:
            result["message"] = DRY_RUN_MESSAGE
        elif run_at is not None:
            result["timestamp"] = run_at.isoformat()
            result["message"] = f"Ephemeral workflow scheduled for {run_at.isoformat()}"
        else:
            result["message"] = "Ephemeral workflow execution started"
        return result
