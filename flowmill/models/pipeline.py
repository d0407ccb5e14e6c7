"""Pipeline model: a named, ordered template of steps."""

from datetime import datetime
from typing import Any

from sqlmodel import JSON, Column, Field, SQLModel

from .base import utcnow


class PipelineBase(SQLModel):
    """Shared pipeline fields.

    ``pipeline_config`` maps ``pipeline_step_id`` to
    ``{pipeline_step_id, step_type, execution_order, label, ...}``.
    """

    pipeline_name: str = Field(min_length=1, max_length=255)
    pipeline_config: dict[str, dict[str, Any]] = Field(
        default_factory=dict, sa_column=Column(JSON)
    )


class Pipeline(PipelineBase, table=True):
    """Stored pipeline."""

    __tablename__ = "pipeline"

    pipeline_id: int | None = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def ordered_steps(self) -> list[dict[str, Any]]:
        """Pipeline steps sorted by execution order."""
        return sorted(
            self.pipeline_config.values(), key=lambda step: int(step.get("execution_order", 0))
        )

    def step_types(self) -> list[str]:
        return [step.get("step_type", "") for step in self.ordered_steps()]


class PipelineRead(PipelineBase):
    """Read schema for pipelines."""

    pipeline_id: int
    created_at: datetime
    updated_at: datetime
