"""Durable timer queue rows backing the scheduling bridge."""

import json
from datetime import datetime
from typing import Any

from sqlmodel import JSON, Column, Field, SQLModel

from .base import ActionStatus, utcnow


def args_key(args: dict[str, Any]) -> str:
    """Canonical representation of action arguments used for matching."""
    return json.dumps(args, sort_keys=True, default=str)


class ScheduledAction(SQLModel, table=True):
    """A pending, running or finished scheduled callback."""

    __tablename__ = "scheduled_action"

    action_id: int | None = Field(default=None, primary_key=True)
    hook: str = Field(index=True, max_length=191)
    args: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    args_key: str = Field(index=True, max_length=1024)
    group: str = Field(default="", index=True, max_length=191)
    scheduled_at: datetime = Field(default_factory=utcnow, index=True)
    interval_seconds: int | None = None
    status: ActionStatus = Field(default=ActionStatus.pending, index=True)
    attempts: int = 0
    last_error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_recurring(self) -> bool:
        return bool(self.interval_seconds)
