"""
Flow step configuration service.

Reads and writes the handler assignment and user message of single steps
inside a flow's ``flow_config`` and reconfigures matching steps across all
flows of a pipeline, including switching handlers with field remapping.

All writes replace the whole ``flow_config`` map of the flow; two concurrent
writers to the same flow are last-writer-wins.
"""

import copy
from typing import Any

from flowmill.exceptions import (
    HandlerNotFoundError,
    PipelineNotFoundError,
    ValidationError,
)
from flowmill.models import Flow
from flowmill.repositories import FlowRepository, PipelineRepository
from flowmill.services.registry import HandlerCatalog
from flowmill.types import FieldMap, HandlerConfig
from flowmill.utils.logger import audit


def map_handler_config(
    current_config: HandlerConfig, target_fields: dict[str, Any], field_map: FieldMap | None
) -> HandlerConfig:
    """Carry a config over to a different handler.

    A field is kept only when the target handler declares it, either under
    the name given by ``field_map`` or under its current name. A target that
    declares no fields receives an empty config.

    Args:
        current_config: Config of the handler being replaced
        target_fields: Fields declared by the new handler
        field_map: Optional old-field to new-field mapping

    Returns:
        Config for the new handler
    """
    if not target_fields:
        return {}

    field_map = field_map or {}
    mapped: HandlerConfig = {}
    for name, value in current_config.items():
        if name in field_map:
            if field_map[name] in target_fields:
                mapped[field_map[name]] = value
            continue
        if name in target_fields:
            mapped[name] = value
    return mapped


class FlowStepConfigService:
    """Reads and edits single flow steps."""

    def __init__(
        self,
        flows: FlowRepository,
        pipelines: PipelineRepository,
        handlers: HandlerCatalog,
    ):
        self.flows = flows
        self.pipelines = pipelines
        self.handlers = handlers

    async def get(self, flow_step_id: str) -> dict[str, Any]:
        """Step config of a flow step.

        Raises:
            FlowStepNotFoundError: If the step does not exist
        """
        _, step = await self.flows.get_flow_step(flow_step_id)
        return copy.deepcopy(step)

    async def update_handler(
        self, flow_step_id: str, handler_slug: str, handler_config: HandlerConfig
    ) -> bool:
        """Assign a handler and merge ``handler_config`` into the step's config.

        Fields absent from ``handler_config`` keep their current values.

        Raises:
            FlowStepNotFoundError: If the step does not exist
        """
        flow, _ = await self.flows.get_flow_step(flow_step_id)
        flow_config = copy.deepcopy(flow.flow_config)
        step = flow_config[flow_step_id]

        step["handler_slug"] = handler_slug
        step["handler_config"] = {**(step.get("handler_config") or {}), **handler_config}

        await self.flows.save_config(flow, flow_config)
        audit(
            "flow_step.handler_updated",
            f"Updated handler of step {flow_step_id}",
            flow_step_id=flow_step_id,
            handler_slug=handler_slug,
        )
        return True

    async def update_user_message(self, flow_step_id: str, message: str) -> bool:
        """Set the user message of a step; callers restrict this to AI steps.

        Raises:
            FlowStepNotFoundError: If the step does not exist
        """
        flow, _ = await self.flows.get_flow_step(flow_step_id)
        flow_config = copy.deepcopy(flow.flow_config)
        flow_config[flow_step_id]["user_message"] = message

        await self.flows.save_config(flow, flow_config)
        audit(
            "flow_step.message_updated",
            f"Updated user message of step {flow_step_id}",
            flow_step_id=flow_step_id,
        )
        return True

    def validate_handler_config(self, handler_slug: str, config: HandlerConfig) -> None:
        """Reject config keys the handler does not declare.

        A handler without declared fields accepts any config.

        Raises:
            ValidationError: On unknown fields
        """
        fields = self.handlers.get_config_fields(handler_slug)
        if not fields:
            return

        unknown = [name for name in config if name not in fields]
        if unknown:
            raise ValidationError(
                f"Unknown handler_config fields for {handler_slug}: {', '.join(unknown)}. "
                f"Valid fields: {', '.join(fields)}"
            )

    async def update_flow_step(
        self,
        flow_step_id: str,
        handler_slug: str | None = None,
        handler_config: HandlerConfig | None = None,
        user_message: str | None = None,
    ) -> dict[str, Any]:
        """Update handler, handler config and/or user message of one step.

        Returns:
            ``flow_step_id`` and the list of ``updated_fields``

        Raises:
            ValidationError: If nothing to update or the config is invalid
            HandlerNotFoundError: If the handler slug is unknown
            FlowStepNotFoundError: If the step does not exist
        """
        if handler_slug is None and handler_config is None and user_message is None:
            raise ValidationError(
                "At least one of handler_slug, handler_config, or user_message is required"
            )

        step = await self.get(flow_step_id)
        updated_fields: list[str] = []

        if handler_slug is not None or handler_config is not None:
            effective_slug = handler_slug or step.get("handler_slug")
            if not effective_slug:
                raise ValidationError(
                    "handler_slug is required when configuring a step without a handler"
                )
            if not self.handlers.exists(effective_slug):
                raise HandlerNotFoundError(effective_slug)

            config = handler_config or {}
            self.validate_handler_config(effective_slug, config)
            await self.update_handler(flow_step_id, effective_slug, config)
            if handler_slug is not None:
                updated_fields.append("handler_slug")
            if handler_config is not None:
                updated_fields.append("handler_config")

        if user_message is not None:
            await self.update_user_message(flow_step_id, user_message)
            updated_fields.append("user_message")

        return {"flow_step_id": flow_step_id, "updated_fields": updated_fields}

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
        """Reconfigure matching steps across every flow of a pipeline.

        Args:
            pipeline_id: Pipeline whose flows are updated
            step_type: Only touch steps of this type
            handler_slug: Only touch steps currently using this handler
            target_handler_slug: Switch matching steps to this handler
            field_map: Old-field to new-field mapping used when switching
            handler_config: Config merged into every matching step
            flow_configs: Per-flow config merged after ``handler_config``
            user_message: User message set on matching steps

        Returns:
            ``flows_updated``, ``steps_modified``, ``updated_steps``,
            ``errors`` and ``skipped``

        Raises:
            PipelineNotFoundError: If the pipeline does not exist
            HandlerNotFoundError: If ``target_handler_slug`` is unknown
            ValidationError: If the pipeline has no flows
        """
        if target_handler_slug and not self.handlers.exists(target_handler_slug):
            raise HandlerNotFoundError(target_handler_slug).with_context(
                f"Target handler '{target_handler_slug}' not found"
            )
        if not await self.pipelines.exists(pipeline_id=pipeline_id):
            raise PipelineNotFoundError(pipeline_id)

        flows = await self.flows.list_for_pipeline(pipeline_id)
        if not flows:
            raise ValidationError(f"No flows found for pipeline_id {pipeline_id}")

        flow_configs = flow_configs or {}
        flow_ids = {flow.flow_id for flow in flows}
        skipped = [
            {
                "flow_id": flow_id,
                "error": f"Flow {flow_id} does not belong to pipeline {pipeline_id}",
            }
            for flow_id in flow_configs
            if flow_id not in flow_ids
        ]

        errors: list[dict[str, Any]] = []
        updated_steps: list[dict[str, Any]] = []
        flows_updated: set[int] = set()

        for flow in flows:
            changed = await self._configure_flow(
                flow,
                step_type=step_type,
                handler_slug=handler_slug,
                target_handler_slug=target_handler_slug,
                field_map=field_map,
                handler_config=handler_config or {},
                flow_config_override=flow_configs.get(flow.flow_id, {}),  # type: ignore[arg-type]
                user_message=user_message,
                errors=errors,
            )
            if changed:
                updated_steps.extend(changed)
                flows_updated.add(flow.flow_id)  # type: ignore[arg-type]

        audit(
            "flow_steps.configured",
            f"Configured {len(updated_steps)} step(s) in pipeline {pipeline_id}",
            pipeline_id=pipeline_id,
            errors=len(errors),
        )
        return {
            "pipeline_id": pipeline_id,
            "flows_updated": len(flows_updated),
            "steps_modified": len(updated_steps),
            "updated_steps": updated_steps,
            "errors": errors,
            "skipped": skipped,
        }

    async def _configure_flow(
        self,
        flow: Flow,
        *,
        step_type: str | None,
        handler_slug: str | None,
        target_handler_slug: str | None,
        field_map: FieldMap | None,
        handler_config: HandlerConfig,
        flow_config_override: HandlerConfig,
        user_message: str | None,
        errors: list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        flow_config = copy.deepcopy(flow.flow_config)
        updated: list[dict[str, Any]] = []

        for flow_step_id, step in flow_config.items():
            if step_type and step.get("step_type") != step_type:
                continue
            current_slug = step.get("handler_slug")
            if handler_slug and current_slug != handler_slug:
                continue

            switching = bool(target_handler_slug and target_handler_slug != current_slug)
            effective_slug = target_handler_slug or current_slug
            has_config_update = bool(handler_config or flow_config_override)

            if not effective_slug and has_config_update:
                errors.append(
                    {"flow_step_id": flow_step_id, "error": "Step has no handler to configure"}
                )
                continue

            current_config = step.get("handler_config") or {}
            if switching:
                base_config = map_handler_config(
                    current_config, self.handlers.get_config_fields(effective_slug), field_map
                )
            else:
                base_config = current_config
            new_config = {**base_config, **handler_config, **flow_config_override}

            if effective_slug:
                try:
                    self.validate_handler_config(effective_slug, new_config)
                except ValidationError as e:
                    errors.append({"flow_step_id": flow_step_id, "error": str(e)})
                    continue

            if not (switching or has_config_update or user_message is not None):
                continue

            if effective_slug:
                step["handler_slug"] = effective_slug
                step["handler_config"] = new_config
            if user_message is not None:
                step["user_message"] = user_message

            entry: dict[str, Any] = {"flow_id": flow.flow_id, "flow_step_id": flow_step_id}
            if switching:
                entry["switched_from"] = current_slug
            updated.append(entry)

        if updated:
            await self.flows.save_config(flow, flow_config)
        return updated
