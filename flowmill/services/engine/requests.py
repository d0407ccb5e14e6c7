"""Input model of the workflow executor."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class ExecuteWorkflowRequest(BaseModel):
    """Run a stored flow (``flow_id``) or an inline ``workflow``; never both.

    ``workflow`` is ``{"steps": [...]}`` where each step has a ``type`` and,
    for non-AI steps, a ``handler_slug``. ``timestamp`` accepts a unix time
    or a datetime; times not in the future mean immediate execution.
    """

    flow_id: int | str | None = None
    workflow: dict[str, Any] | None = None
    count: int = 1
    timestamp: datetime | int | float | None = None
    initial_data: dict[str, Any] = Field(default_factory=dict)
    dry_run: bool = False
