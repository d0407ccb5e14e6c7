"""Flow model: one schedulable instantiation of a pipeline."""

from datetime import datetime
from typing import Any

from sqlmodel import JSON, Column, Field, SQLModel

from .base import utcnow

MANUAL_INTERVAL = "manual"


def flow_step_id_for(pipeline_step_id: str, flow_id: int) -> str:
    """Derive the flow step id of a pipeline step inside a flow."""
    return f"{pipeline_step_id}_{flow_id}"


class FlowBase(SQLModel):
    """Shared flow fields.

    ``flow_config`` maps ``flow_step_id`` to the step instance
    (``step_type``, ``pipeline_step_id``, ``execution_order``,
    ``handler_slug``, ``handler_config``, ``user_message``, ``enabled_tools``).
    """

    pipeline_id: int = Field(foreign_key="pipeline.pipeline_id", index=True)
    flow_name: str = Field(min_length=1, max_length=255)
    flow_config: dict[str, dict[str, Any]] = Field(default_factory=dict, sa_column=Column(JSON))
    scheduling_config: dict[str, Any] = Field(
        default_factory=lambda: {"interval": MANUAL_INTERVAL}, sa_column=Column(JSON)
    )


class Flow(FlowBase, table=True):
    """Stored flow."""

    __tablename__ = "flow"

    flow_id: int | None = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow)
    last_run_at: datetime | None = None

    @property
    def interval(self) -> str:
        return str((self.scheduling_config or {}).get("interval", MANUAL_INTERVAL))

    def ordered_steps(self) -> list[dict[str, Any]]:
        """Flow steps sorted by execution order."""
        return sorted(
            self.flow_config.values(), key=lambda step: int(step.get("execution_order", 0))
        )


class FlowRead(FlowBase):
    """Read schema for flows."""

    flow_id: int
    created_at: datetime
    last_run_at: datetime | None = None
