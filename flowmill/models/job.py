"""Job model: one execution attempt of a flow or ephemeral workflow."""

from datetime import datetime
from typing import Any

from sqlmodel import JSON, Column, Field, SQLModel

from .base import JobStatus, utcnow


class JobBase(SQLModel):
    """Shared job fields.

    ``flow_id`` and ``pipeline_id`` hold the numeric ids as strings, or
    ``"direct"`` for ephemeral workflows.
    """

    flow_id: str = Field(index=True, max_length=64)
    pipeline_id: str = Field(index=True, max_length=64)
    status: JobStatus = Field(default=JobStatus.pending, index=True)


class Job(JobBase, table=True):
    """Stored job."""

    __tablename__ = "job"

    job_id: int | None = Field(default=None, primary_key=True)
    engine_data: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, index=True)
    started_at: datetime | None = None
    completed_at: datetime | None = None


class JobRead(JobBase):
    """Read schema for jobs."""

    job_id: int
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


class JobReadWithEngineData(JobRead):
    """Read schema including the engine data payload."""

    engine_data: dict[str, Any] = {}
