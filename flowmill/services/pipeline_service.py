"""
Pipeline service: step templates and the flows instantiated from them.
"""

import copy
import shutil
import uuid
from collections.abc import Sequence
from typing import Any

from flowmill.exceptions import (
    FlowmillError,
    PipelineStepNotFoundError,
    UnknownStepTypeError,
    ValidationError,
)
from flowmill.models import Flow, Pipeline
from flowmill.repositories import FlowRepository, PipelineRepository
from flowmill.services.flow_service import FlowService
from flowmill.services.registry import StepRegistry
from flowmill.settings import settings
from flowmill.types import PipelineConfigMap
from flowmill.utils.logger import audit, logger

PIPELINE_STEP_FIELDS = ("label", "provider", "model", "system_prompt", "enabled_tools")


def new_pipeline_step_id(pipeline_id: int) -> str:
    return f"{pipeline_id}_{uuid.uuid4()}"


class PipelineService:
    """Service owning pipelines and cascading changes to their flows."""

    def __init__(
        self,
        pipelines: PipelineRepository,
        flows: FlowRepository,
        flow_service: FlowService,
        registry: StepRegistry,
    ):
        self.pipelines = pipelines
        self.flows = flows
        self.flow_service = flow_service
        self.registry = registry

    async def get(self, pipeline_id: int) -> Pipeline:
        return await self.pipelines.get(pipeline_id)

    async def list_pipelines(
        self, offset: int = 0, limit: int = 20
    ) -> tuple[Sequence[Pipeline], int]:
        return await self.pipelines.list_paginated(offset, limit), await self.pipelines.count()

    def validate_steps(self, steps: list[dict[str, Any]]) -> None:
        """Check every step declares a known ``step_type``.

        Raises:
            ValidationError: Naming the first offending index
        """
        valid = self.registry.valid_types()
        for index, step in enumerate(steps):
            step_type = step.get("step_type")
            if not step_type:
                raise ValidationError(f"Step at index {index} is missing required step_type")
            if not self.registry.is_valid(step_type):
                raise ValidationError(
                    f"Step at index {index} has invalid step_type '{step_type}'. "
                    f"Must be one of: {', '.join(valid)}"
                )

    def _build_step(
        self, pipeline_id: int, step: dict[str, Any], execution_order: int
    ) -> dict[str, Any]:
        step_type = step["step_type"]
        built: dict[str, Any] = {
            "pipeline_step_id": new_pipeline_step_id(pipeline_id),
            "step_type": step_type,
            "execution_order": execution_order,
            "label": step.get("label") or self.registry.label_for(step_type),
        }
        for key in PIPELINE_STEP_FIELDS[1:]:
            if step.get(key) is not None:
                built[key] = copy.deepcopy(step[key])
        return built

    # ─── Create ───

    async def create(
        self,
        pipeline_name: str,
        steps: list[dict[str, Any]] | None = None,
        flow_config: dict[str, Any] | None = None,
    ) -> tuple[Pipeline, Flow]:
        """Create a pipeline and its default flow.

        Args:
            pipeline_name: Name of the pipeline
            steps: Ordered step definitions (``step_type``, optional ``label``,
                AI settings, and flow-level ``handler_slug`` / ``handler_config``
                / ``user_message`` for the default flow)
            flow_config: Default flow options: ``flow_name``, ``scheduling_config``

        Returns:
            The pipeline and its default flow

        Raises:
            ValidationError: If the name is blank or a step is invalid
        """
        if not pipeline_name or not pipeline_name.strip():
            raise ValidationError("pipeline_name is required")
        steps = steps or []
        self.validate_steps(steps)
        flow_config = flow_config or {}

        pipeline = await self.pipelines.create(Pipeline(pipeline_name=pipeline_name.strip()))
        pipeline_id: int = pipeline.pipeline_id  # type: ignore[assignment]

        pipeline_config: PipelineConfigMap = {}
        step_configs: dict[str, dict[str, Any]] = {}
        for order, step in enumerate(steps):
            built = self._build_step(pipeline_id, step, order)
            pipeline_config[built["pipeline_step_id"]] = built
            step_configs[built["pipeline_step_id"]] = {
                key: step[key]
                for key in ("handler_slug", "handler_config", "user_message")
                if step.get(key) is not None
            }
        if pipeline_config:
            pipeline = await self.pipelines.save_config(pipeline, pipeline_config)

        flow = await self.flow_service.create(
            pipeline_id,
            flow_config.get("flow_name") or pipeline.pipeline_name,
            flow_config.get("scheduling_config"),
            step_configs,
        )
        audit(
            "pipeline.created",
            f"Pipeline '{pipeline.pipeline_name}' created with {len(steps)} step(s)",
            pipeline_id=pipeline_id,
            flow_id=flow.flow_id,
        )
        return pipeline, flow

    async def create_many(self, pipelines: list[dict[str, Any]]) -> dict[str, Any]:
        """Create several pipelines; a failing item does not stop the others.

        Returns:
            ``created`` entries and per-item ``errors``
        """
        created: list[dict[str, Any]] = []
        errors: list[dict[str, Any]] = []

        for index, item in enumerate(pipelines):
            try:
                pipeline, flow = await self.create(
                    item.get("pipeline_name", ""), item.get("steps"), item.get("flow_config")
                )
            except FlowmillError as e:
                logger.warning(f"Bulk pipeline create: item {index} failed: {e}")
                errors.append(
                    {"index": index, "pipeline_name": item.get("pipeline_name"), "error": str(e)}
                )
                continue
            created.append(
                {
                    "pipeline_id": pipeline.pipeline_id,
                    "pipeline_name": pipeline.pipeline_name,
                    "flow_id": flow.flow_id,
                }
            )

        return {"created": created, "errors": errors}

    # ─── Update ───

    async def rename(self, pipeline_id: int, pipeline_name: str) -> Pipeline:
        if not pipeline_name or not pipeline_name.strip():
            raise ValidationError("pipeline_name cannot be empty")
        pipeline = await self.pipelines.get(pipeline_id)
        pipeline = await self.pipelines.update(pipeline, {"pipeline_name": pipeline_name.strip()})
        audit("pipeline.updated", f"Pipeline {pipeline_id} renamed", pipeline_id=pipeline_id)
        return pipeline

    async def add_step(self, pipeline_id: int, step: dict[str, Any]) -> dict[str, Any]:
        """Append a step and sync it into every flow of the pipeline.

        Returns:
            The stored pipeline step

        Raises:
            UnknownStepTypeError: If the step type is unknown
        """
        pipeline = await self.pipelines.get(pipeline_id)
        step_type = step.get("step_type", "")
        if not self.registry.is_valid(step_type):
            raise UnknownStepTypeError(step_type, self.registry.valid_types())

        pipeline_config = copy.deepcopy(pipeline.pipeline_config)
        orders = [int(s["execution_order"]) for s in pipeline_config.values()]
        next_order = max(orders, default=-1) + 1
        built = self._build_step(pipeline_id, step, next_order)
        pipeline_config[built["pipeline_step_id"]] = built

        pipeline = await self.pipelines.save_config(pipeline, pipeline_config)
        synced = await self.flow_service.sync_pipeline(pipeline)
        audit(
            "pipeline.step_added",
            f"Added {step_type} step to pipeline {pipeline_id}",
            pipeline_id=pipeline_id,
            pipeline_step_id=built["pipeline_step_id"],
            flows_synced=synced,
        )
        return built

    async def remove_step(self, pipeline_id: int, pipeline_step_id: str) -> int:
        """Remove a step, close the gap in execution order and resync flows.

        Returns:
            Number of flows updated

        Raises:
            PipelineStepNotFoundError: If the step is not part of the pipeline
        """
        pipeline = await self.pipelines.get(pipeline_id)
        if pipeline_step_id not in pipeline.pipeline_config:
            raise PipelineStepNotFoundError(pipeline_step_id)

        remaining = [
            copy.deepcopy(step)
            for step in pipeline.ordered_steps()
            if step["pipeline_step_id"] != pipeline_step_id
        ]
        pipeline_config: PipelineConfigMap = {}
        for order, step in enumerate(remaining):
            step["execution_order"] = order
            pipeline_config[step["pipeline_step_id"]] = step

        pipeline = await self.pipelines.save_config(pipeline, pipeline_config)
        synced = await self.flow_service.sync_pipeline(pipeline)
        audit(
            "pipeline.step_removed",
            f"Removed step {pipeline_step_id} from pipeline {pipeline_id}",
            pipeline_id=pipeline_id,
            flows_synced=synced,
        )
        return synced

    # ─── Delete ───

    async def delete(self, pipeline_id: int) -> dict[str, Any]:
        """Delete a pipeline with all its flows.

        Each flow's schedule is canceled before the flow row is removed. The
        pipeline's working directory is removed on a best-effort basis.

        Returns:
            ``pipeline_name`` and ``deleted_flows`` count
        """
        pipeline = await self.pipelines.get(pipeline_id)
        flows = await self.flows.list_for_pipeline(pipeline_id)
        for flow in flows:
            await self.flow_service.delete(flow.flow_id)  # type: ignore[arg-type]

        self._cleanup_files(pipeline_id)
        pipeline_name = pipeline.pipeline_name
        await self.pipelines.delete(pipeline)

        audit(
            "pipeline.deleted",
            f"Pipeline '{pipeline_name}' deleted with {len(flows)} flow(s)",
            pipeline_id=pipeline_id,
            deleted_flows=len(flows),
        )
        return {"pipeline_name": pipeline_name, "deleted_flows": len(flows)}

    @staticmethod
    def _cleanup_files(pipeline_id: int) -> None:
        path = settings.get_pipeline_dir(pipeline_id)
        if not path.exists():
            return
        try:
            shutil.rmtree(path)
            logger.debug(f"Removed pipeline directory {path}")
        except OSError as e:
            logger.warning(f"Failed to remove pipeline directory {path}: {e}")

    # ─── Duplicate ───

    async def duplicate(self, pipeline_id: int, new_name: str | None = None) -> dict[str, Any]:
        """Copy a pipeline with fresh step ids and copies of all its flows.

        Flows keep their handler settings and interval; other scheduling
        details are not copied.

        Returns:
            The new ``pipeline`` and the list of new ``flows``
        """
        source = await self.pipelines.get(pipeline_id)
        copy_pipeline = await self.pipelines.create(
            Pipeline(pipeline_name=(new_name or "").strip() or f"Copy of {source.pipeline_name}")
        )
        copy_id: int = copy_pipeline.pipeline_id  # type: ignore[assignment]

        step_id_map: dict[str, str] = {}
        pipeline_config: PipelineConfigMap = {}
        for step in source.ordered_steps():
            new_step = copy.deepcopy(step)
            new_step["pipeline_step_id"] = new_pipeline_step_id(copy_id)
            step_id_map[step["pipeline_step_id"]] = new_step["pipeline_step_id"]
            pipeline_config[new_step["pipeline_step_id"]] = new_step
        copy_pipeline = await self.pipelines.save_config(copy_pipeline, pipeline_config)

        new_flows: list[Flow] = []
        for flow in await self.flows.list_for_pipeline(pipeline_id):
            step_configs = {
                step_id_map[step["pipeline_step_id"]]: {
                    key: copy.deepcopy(step.get(key))
                    for key in ("handler_slug", "handler_config", "user_message", "enabled_tools")
                }
                for step in flow.flow_config.values()
                if step.get("pipeline_step_id") in step_id_map
            }
            new_flows.append(
                await self.flow_service.create(
                    copy_id, flow.flow_name, FlowService.interval_only(flow), step_configs
                )
            )

        audit(
            "pipeline.duplicated",
            f"Pipeline {pipeline_id} duplicated as {copy_id}",
            source_pipeline_id=pipeline_id,
            pipeline_id=copy_id,
            flows=len(new_flows),
        )
        return {"pipeline": copy_pipeline, "flows": new_flows}
