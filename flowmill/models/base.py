"""
Base definitions shared by the workflow models.

Timestamps are stored as naive UTC datetimes so that SQLite and PostgreSQL
round-trip them identically.
"""

import enum
from datetime import UTC, datetime

# flow_id / pipeline_id recorded on jobs of ephemeral workflows
DIRECT = "direct"


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(UTC).replace(tzinfo=None)


def to_utc(value: datetime | int | float) -> datetime:
    """Normalize a unix timestamp or datetime to naive UTC."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(UTC).replace(tzinfo=None)
        return value
    return datetime.fromtimestamp(value, UTC).replace(tzinfo=None)


class JobStatus(str, enum.Enum):
    """Enumeration of job status values."""

    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    completed_no_items = "completed_no_items"
    agent_skipped = "agent_skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[JobStatus] = frozenset(
    {
        JobStatus.completed,
        JobStatus.failed,
        JobStatus.completed_no_items,
        JobStatus.agent_skipped,
    }
)

JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.pending: frozenset({JobStatus.processing} | TERMINAL_STATUSES),
    JobStatus.processing: TERMINAL_STATUSES,
    JobStatus.completed: frozenset(),
    JobStatus.failed: frozenset(),
    JobStatus.completed_no_items: frozenset(),
    JobStatus.agent_skipped: frozenset(),
}


def can_transition(current: JobStatus, requested: JobStatus) -> bool:
    """Check a job status change against the transition table."""
    return requested in JOB_TRANSITIONS[current]


class ActionStatus(str, enum.Enum):
    """Lifecycle of a scheduled action in the timer queue."""

    pending = "pending"
    running = "running"
    complete = "complete"
    failed = "failed"
    canceled = "canceled"


class DeleteCriteria(str, enum.Enum):
    """Bulk job deletion criteria."""

    all = "all"
    failed = "failed"
