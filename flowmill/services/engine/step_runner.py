"""
Step execution boundary.

The scheduling bridge invokes :meth:`StepRunner.execute_step` once per hop.
Each invocation runs exactly one step, stores the grown engine data and
either schedules the step with the next execution order or finishes the job.
"""

from typing import Any

from flowmill.exceptions import ConfigurationError, FlowmillError, SchedulingError
from flowmill.models import DIRECT, EngineData, Job, JobStatus, utcnow
from flowmill.repositories import FlowRepository
from flowmill.services.job_manager import JobManager
from flowmill.services.registry import StepRegistry
from flowmill.services.scheduling.bridge import SchedulingBridge
from flowmill.utils.logger import logger

from .chaining import schedule_next_step
from .steps import StepContext, StepOutcome, StepPayload, StepResult


class StepRunner:
    """Runs one step of a job and chains to the next."""

    def __init__(
        self,
        job_manager: JobManager,
        flows: FlowRepository,
        registry: StepRegistry,
        step_context: StepContext,
        bridge: SchedulingBridge,
    ):
        self.job_manager = job_manager
        self.flows = flows
        self.registry = registry
        self.step_context = step_context
        self.bridge = bridge

    async def execute_step(
        self, job_id: int, flow_step_id: str, args: dict[str, Any] | None = None
    ) -> JobStatus | None:
        """Run ``flow_step_id`` for ``job_id``.

        Deliveries for unknown or finished jobs, and for steps whose result
        is already stored on the job, are ignored, so a duplicate invocation
        from the bridge never runs a step twice.

        Args:
            job_id: Job to advance
            flow_step_id: Step to run
            args: Extra arguments from the scheduling call, recorded with the step result

        Returns:
            Job status after this hop, or None if the job does not exist
        """
        prefix = f"[job={job_id} step={flow_step_id}] "
        job = await self.job_manager.jobs.get_optional(job_id)
        if job is None:
            logger.warning(f"{prefix}Job not found, ignoring step invocation")
            return None
        if job.status.is_terminal:
            logger.info(f"{prefix}Job already {job.status.value}, ignoring duplicate invocation")
            return job.status

        try:
            engine_data = await self.job_manager.retrieve_engine_data(job)
        except ConfigurationError as e:
            return await self._fail(job, str(e))

        if flow_step_id in engine_data.step_results:
            logger.info(f"{prefix}Step already ran for this job, ignoring duplicate invocation")
            return job.status

        step_config = engine_data.flow_config.get(flow_step_id)
        if step_config is None:
            return await self._fail(
                job, f"Flow step '{flow_step_id}' not found in job configuration", engine_data
            )
        descriptor = self.registry.get(step_config.step_type)
        if descriptor is None:
            return await self._fail(
                job, f"Unknown step type '{step_config.step_type}'", engine_data
            )

        if job.status == JobStatus.pending:
            job = await self.job_manager.start(job)
            await self._touch_flow(job)

        payload = StepPayload(
            job_id=job_id,
            flow_step_id=flow_step_id,
            flow_step_config=step_config,
            engine_data=engine_data,
            pipeline_step_config=engine_data.pipeline_step(flow_step_id),
            direct=job.flow_id == DIRECT,
        )
        logger.info(f"{prefix}Executing {step_config.step_type} step")

        try:
            result = await descriptor.step_class(self.step_context).execute(payload)
        except FlowmillError as e:
            return await self._fail(job, f"Step '{flow_step_id}' failed: {e}", engine_data)
        except Exception as e:
            logger.exception(f"{prefix}Unexpected error in step")
            return await self._fail(
                job, f"Step '{flow_step_id}' raised {type(e).__name__}: {e}", engine_data
            )

        self._record(engine_data, flow_step_id, step_config.step_type, result, args)
        return await self._advance(job, flow_step_id, engine_data, result)

    @staticmethod
    def _record(
        engine_data: EngineData,
        flow_step_id: str,
        step_type: str,
        result: StepResult,
        args: dict[str, Any] | None,
    ) -> None:
        engine_data.packets.extend(result.packets)
        entry: dict[str, Any] = {
            "step_type": step_type,
            "outcome": result.outcome.value,
            "packets": len(result.packets),
            "finished_at": utcnow().isoformat(),
            **result.details,
        }
        if args:
            entry["args"] = args
        engine_data.step_results[flow_step_id] = entry

    async def _advance(
        self, job: Job, flow_step_id: str, engine_data: EngineData, result: StepResult
    ) -> JobStatus:
        prefix = f"[job={job.job_id} step={flow_step_id}] "

        if result.outcome == StepOutcome.no_items:
            await self.job_manager.complete(job, JobStatus.completed_no_items, engine_data)
            return JobStatus.completed_no_items
        if result.outcome == StepOutcome.skipped:
            await self.job_manager.complete(job, JobStatus.agent_skipped, engine_data)
            return JobStatus.agent_skipped
        if not result.packets:
            return await self._fail(job, f"Step '{flow_step_id}' produced no data", engine_data)

        next_step_id = engine_data.next_step_id(flow_step_id)
        if next_step_id is None:
            await self.job_manager.complete(job, JobStatus.completed, engine_data)
            logger.info(f"{prefix}Last step finished, job completed")
            return JobStatus.completed

        await self.job_manager.store_engine_data(job, engine_data)
        try:
            await schedule_next_step(self.bridge, job.job_id or 0, next_step_id)
        except SchedulingError as e:
            reason = f"Failed to schedule step '{next_step_id}': {e}"
            return await self._fail(job, reason, engine_data)
        return job.status

    async def _fail(
        self, job: Job, reason: str, engine_data: EngineData | None = None
    ) -> JobStatus:
        await self.job_manager.fail(job, reason, engine_data)
        return JobStatus.failed

    async def _touch_flow(self, job: Job) -> None:
        if job.flow_id == DIRECT:
            return
        flow = await self.flows.get_optional(int(job.flow_id))
        if flow is not None:
            await self.flows.update(flow, {"last_run_at": utcnow()})
