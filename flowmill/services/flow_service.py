"""
Flow service: creation, scheduling, step sync, duplication and deletion of flows.
"""

import copy
from datetime import datetime
from typing import Any

from flowmill.exceptions import (
    IncompatiblePipelineError,
    ValidationError,
)
from flowmill.models import MANUAL_INTERVAL, Flow, Pipeline, flow_step_id_for
from flowmill.repositories import FlowRepository, PipelineRepository, ProcessedItemRepository
from flowmill.services.scheduling.bridge import FLOW_GROUP, RUN_FLOW_NOW, SchedulingBridge
from flowmill.settings import settings
from flowmill.types import FlowConfigMap, SchedulingConfig
from flowmill.utils.logger import audit, logger


class FlowService:
    """Service owning flows and their recurring schedules."""

    def __init__(
        self,
        flows: FlowRepository,
        pipelines: PipelineRepository,
        bridge: SchedulingBridge,
        processed_items: ProcessedItemRepository | None = None,
        schedule_intervals: dict[str, int] | None = None,
    ):
        self.flows = flows
        self.pipelines = pipelines
        self.bridge = bridge
        self.processed_items = processed_items
        self.schedule_intervals = schedule_intervals or settings.schedule_intervals

    # ─── Queries ───

    async def get(self, flow_id: int) -> Flow:
        return await self.flows.get(flow_id)

    async def list_for_pipeline(
        self, pipeline_id: int, offset: int = 0, limit: int | None = None
    ) -> tuple[list[Flow], int]:
        """Flows of a pipeline with the total count.

        Raises:
            PipelineNotFoundError: If the pipeline does not exist
        """
        await self.pipelines.get(pipeline_id)
        flows = await self.flows.list_for_pipeline(pipeline_id, offset, limit)
        return list(flows), await self.flows.count_for_pipeline(pipeline_id)

    async def next_run_time(self, flow_id: int) -> datetime | None:
        return await self.bridge.next_scheduled_time(RUN_FLOW_NOW, {"flow_id": flow_id}, FLOW_GROUP)

    # ─── Lifecycle ───

    async def create(
        self,
        pipeline_id: int,
        flow_name: str = "",
        scheduling_config: SchedulingConfig | None = None,
        step_configs: dict[str, dict[str, Any]] | None = None,
    ) -> Flow:
        """Create a flow, sync the pipeline's steps into it and register its schedule.

        Args:
            pipeline_id: Owning pipeline
            flow_name: Name; blank names become ``Flow``
            scheduling_config: ``{"interval": ...}``; defaults to manual
            step_configs: Optional per-step settings keyed by pipeline step id
                (``handler_slug``, ``handler_config``, ``user_message``)

        Returns:
            The created flow

        Raises:
            PipelineNotFoundError: If the pipeline does not exist
            ValidationError: If the interval is unknown
        """
        pipeline = await self.pipelines.get(pipeline_id)
        scheduling_config = scheduling_config or {"interval": MANUAL_INTERVAL}
        self._validate_interval(scheduling_config)

        flow = await self.flows.create(
            Flow(
                pipeline_id=pipeline_id,
                flow_name=flow_name.strip() or "Flow",
                scheduling_config=scheduling_config,
            )
        )
        await self.sync_steps(flow, pipeline, step_configs)
        await self._apply_schedule(flow, scheduling_config)

        audit(
            "flow.created",
            f"Flow '{flow.flow_name}' created",
            flow_id=flow.flow_id,
            pipeline_id=pipeline_id,
        )
        return flow

    async def rename(self, flow_id: int, flow_name: str) -> Flow:
        if not flow_name.strip():
            raise ValidationError("flow_name cannot be empty")
        flow = await self.flows.get(flow_id)
        return await self.flows.update(flow, {"flow_name": flow_name.strip()})

    async def delete(self, flow_id: int) -> None:
        """Cancel the flow's pending schedule, forget its processed items, then delete it.

        Raises:
            FlowNotFoundError: If the flow does not exist
        """
        flow = await self.flows.get(flow_id)
        await self.bridge.unschedule_all_actions(RUN_FLOW_NOW, {"flow_id": flow_id}, FLOW_GROUP)
        if self.processed_items is not None:
            await self.processed_items.delete_for_flow(flow_id)
        await self.flows.delete(flow)
        audit("flow.deleted", f"Flow {flow_id} deleted", flow_id=flow_id)

    # ─── Scheduling ───

    @staticmethod
    def interval_only(flow: Flow) -> SchedulingConfig:
        """Scheduling config carried over to a copy of ``flow``; one-time runs are not copied."""
        interval = flow.interval
        return {"interval": MANUAL_INTERVAL if interval == "one_time" else interval}

    def _validate_interval(self, scheduling_config: SchedulingConfig) -> None:
        interval = scheduling_config.get("interval", MANUAL_INTERVAL)
        if interval == MANUAL_INTERVAL or interval in self.schedule_intervals:
            return
        if interval == "one_time" and scheduling_config.get("timestamp") is not None:
            return
        valid = ", ".join([MANUAL_INTERVAL, "one_time", *self.schedule_intervals])
        raise ValidationError(f"Invalid interval '{interval}'. Valid intervals: {valid}")

    async def _apply_schedule(self, flow: Flow, scheduling_config: SchedulingConfig) -> None:
        """Replace the pending schedule of a flow.

        Existing actions are always canceled first. ``manual`` stops there;
        ``one_time`` with a ``timestamp`` schedules a single run; a known
        interval token schedules a recurring run.
        """
        args = {"flow_id": flow.flow_id}
        await self.bridge.unschedule_all_actions(RUN_FLOW_NOW, args, FLOW_GROUP)

        interval = scheduling_config.get("interval", MANUAL_INTERVAL)
        if interval == MANUAL_INTERVAL:
            return

        if interval == "one_time":
            await self.bridge.schedule_single_action(
                scheduling_config["timestamp"], RUN_FLOW_NOW, args, FLOW_GROUP
            )
            return

        seconds = self.schedule_intervals[interval]
        first_run = scheduling_config.get("first_run")
        await self.bridge.schedule_recurring_action(
            first_run, seconds, RUN_FLOW_NOW, args, FLOW_GROUP
        )
        logger.info(f"Flow {flow.flow_id} scheduled '{interval}' (every {seconds}s)")

    async def update_schedule(self, flow_id: int, scheduling_config: SchedulingConfig) -> Flow:
        """Store a new scheduling config and re-register the flow's schedule.

        Raises:
            FlowNotFoundError: If the flow does not exist
            ValidationError: If the interval is unknown
        """
        self._validate_interval(scheduling_config)
        flow = await self.flows.get(flow_id)
        await self._apply_schedule(flow, scheduling_config)
        flow = await self.flows.save_scheduling(flow, dict(scheduling_config))
        audit(
            "flow.schedule_updated",
            f"Flow {flow_id} schedule set to '{flow.interval}'",
            flow_id=flow_id,
            interval=flow.interval,
        )
        return flow

    # ─── Step sync ───

    async def sync_steps(
        self,
        flow: Flow,
        pipeline: Pipeline,
        step_configs: dict[str, dict[str, Any]] | None = None,
    ) -> Flow:
        """Make the flow's step map mirror the pipeline's steps.

        Existing step settings are preserved; steps no longer in the pipeline
        are removed; ``execution_order`` and ``step_type`` always come from
        the pipeline.
        """
        step_configs = step_configs or {}
        current = copy.deepcopy(flow.flow_config)
        flow_config: FlowConfigMap = {}

        for pipeline_step in pipeline.ordered_steps():
            pipeline_step_id = pipeline_step["pipeline_step_id"]
            flow_step_id = flow_step_id_for(pipeline_step_id, flow.flow_id or 0)
            step = current.get(flow_step_id, {})
            overrides = step_configs.get(pipeline_step_id, {})

            step.update(
                {
                    "flow_step_id": flow_step_id,
                    "step_type": pipeline_step["step_type"],
                    "pipeline_step_id": pipeline_step_id,
                    "pipeline_id": pipeline.pipeline_id,
                    "flow_id": flow.flow_id,
                    "execution_order": pipeline_step["execution_order"],
                }
            )
            step.setdefault("handler_slug", None)
            step.setdefault("handler_config", {})
            step.setdefault("user_message", None)
            step.setdefault("enabled_tools", list(pipeline_step.get("enabled_tools") or []))
            for key in ("handler_slug", "handler_config", "user_message", "enabled_tools"):
                if key in overrides:
                    step[key] = copy.deepcopy(overrides[key])
            flow_config[flow_step_id] = step

        return await self.flows.save_config(flow, flow_config)

    async def sync_pipeline(self, pipeline: Pipeline) -> int:
        """Sync every flow of a pipeline; returns the number of flows touched."""
        flows = await self.flows.list_for_pipeline(pipeline.pipeline_id)  # type: ignore[arg-type]
        for flow in flows:
            await self.sync_steps(flow, pipeline)
        return len(flows)

    # ─── Duplication ───

    async def duplicate(
        self,
        source_flow_id: int,
        target_pipeline_id: int | None = None,
        flow_name: str | None = None,
        scheduling_config: SchedulingConfig | None = None,
        step_config_overrides: dict[int, dict[str, Any]] | None = None,
    ) -> Flow:
        """Copy a flow into the same or another pipeline.

        Steps are matched by execution order, so the target pipeline must have
        the same ordered step types as the source.

        Args:
            source_flow_id: Flow to copy
            target_pipeline_id: Destination pipeline; defaults to the source's
            flow_name: Name of the copy; defaults to ``Copy of <name>``
            scheduling_config: Schedule of the copy; defaults to the source interval
            step_config_overrides: Per execution order settings replacing copied ones

        Returns:
            The new flow

        Raises:
            FlowNotFoundError: If the source flow does not exist
            PipelineNotFoundError: If the target pipeline does not exist
            IncompatiblePipelineError: If the step type sequences differ
        """
        source = await self.flows.get(source_flow_id)
        source_pipeline = await self.pipelines.get(source.pipeline_id)
        target_pipeline = (
            await self.pipelines.get(target_pipeline_id)
            if target_pipeline_id is not None and target_pipeline_id != source.pipeline_id
            else source_pipeline
        )

        source_types = source_pipeline.step_types()
        target_types = target_pipeline.step_types()
        if source_types != target_types:
            raise IncompatiblePipelineError(source_types, target_types)

        if scheduling_config is None:
            scheduling_config = self.interval_only(source)

        step_configs = self._map_step_configs(
            source, target_pipeline, step_config_overrides or {}
        )
        copy_flow = await self.create(
            target_pipeline.pipeline_id,  # type: ignore[arg-type]
            flow_name or f"Copy of {source.flow_name}",
            scheduling_config,
            step_configs,
        )
        audit(
            "flow.duplicated",
            f"Flow {source_flow_id} duplicated as {copy_flow.flow_id}",
            source_flow_id=source_flow_id,
            flow_id=copy_flow.flow_id,
            pipeline_id=copy_flow.pipeline_id,
        )
        return copy_flow

    @staticmethod
    def _map_step_configs(
        source: Flow, target_pipeline: Pipeline, overrides: dict[int, dict[str, Any]]
    ) -> dict[str, dict[str, Any]]:
        """Per target pipeline step settings copied from the source flow by execution order."""
        by_order = {int(step["execution_order"]): step for step in source.flow_config.values()}
        mapped: dict[str, dict[str, Any]] = {}

        for pipeline_step in target_pipeline.ordered_steps():
            order = int(pipeline_step["execution_order"])
            source_step = by_order.get(order, {})
            settings_for_step = {
                key: copy.deepcopy(source_step[key])
                for key in ("handler_slug", "handler_config", "user_message", "enabled_tools")
                if key in source_step
            }
            settings_for_step.update(copy.deepcopy(overrides.get(order, {})))
            mapped[pipeline_step["pipeline_step_id"]] = settings_for_step
        return mapped
