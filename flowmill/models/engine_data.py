"""
Typed engine data threaded through the steps of a job.

The job row stores the payload as JSON; the engine always reads and writes it
through :class:`EngineData`, which validates the presence of the step maps
and lets steps attach additional fields.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .base import utcnow

ENGINE_DATA_VERSION = 1


class PipelineStepConfig(BaseModel):
    """Pipeline-level settings of one step (AI settings live here)."""

    model_config = ConfigDict(extra="allow")

    pipeline_step_id: str
    step_type: str
    execution_order: int = 0
    label: str | None = None
    provider: str | None = None
    model: str | None = None
    system_prompt: str | None = None
    enabled_tools: list[str] = Field(default_factory=list)


class FlowStepConfig(BaseModel):
    """Flow-level instance of one step."""

    model_config = ConfigDict(extra="allow")

    flow_step_id: str
    step_type: str
    pipeline_step_id: str
    execution_order: int
    pipeline_id: int | str | None = None
    flow_id: int | str | None = None
    handler_slug: str | None = None
    handler_config: dict[str, Any] = Field(default_factory=dict)
    user_message: str | None = None
    enabled_tools: list[str] = Field(default_factory=list)


class DataPacket(BaseModel):
    """A unit of content produced by a step and consumed by the next."""

    model_config = ConfigDict(extra="allow")

    type: str
    title: str | None = None
    body: str | None = None
    source_url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    flow_step_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class EngineData(BaseModel):
    """Versioned payload stored on a job."""

    model_config = ConfigDict(extra="allow")

    version: Literal[1] = ENGINE_DATA_VERSION
    flow_config: dict[str, FlowStepConfig]
    pipeline_config: dict[str, PipelineStepConfig] = Field(default_factory=dict)
    dry_run_mode: bool = False
    packets: list[DataPacket] = Field(default_factory=list)
    step_results: dict[str, dict[str, Any]] = Field(default_factory=dict)
    failure: str | None = None

    def first_step_id(self) -> str | None:
        """Flow step id with execution order 0, if any."""
        return self.step_id_at(0)

    def step_id_at(self, execution_order: int) -> str | None:
        for flow_step_id, step in self.flow_config.items():
            if step.execution_order == execution_order:
                return flow_step_id
        return None

    def next_step_id(self, flow_step_id: str) -> str | None:
        """Flow step id that follows ``flow_step_id`` by execution order."""
        current = self.flow_config.get(flow_step_id)
        if current is None:
            return None
        return self.step_id_at(current.execution_order + 1)

    def pipeline_step(self, flow_step_id: str) -> PipelineStepConfig | None:
        step = self.flow_config.get(flow_step_id)
        if step is None:
            return None
        return self.pipeline_config.get(step.pipeline_step_id)

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
