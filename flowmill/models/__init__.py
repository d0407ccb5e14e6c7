"""
Flowmill data models.

SQLModel tables for pipelines, flows, jobs, processed items and scheduled
actions, plus the typed engine data carried by jobs.
"""

from .base import (
    DIRECT,
    JOB_TRANSITIONS,
    TERMINAL_STATUSES,
    ActionStatus,
    DeleteCriteria,
    JobStatus,
    can_transition,
    to_utc,
    utcnow,
)
from .engine_data import DataPacket, EngineData, FlowStepConfig, PipelineStepConfig
from .flow import MANUAL_INTERVAL, Flow, FlowBase, FlowRead, flow_step_id_for
from .job import Job, JobBase, JobRead, JobReadWithEngineData
from .pipeline import Pipeline, PipelineBase, PipelineRead
from .processed_item import ProcessedItem
from .scheduled_action import ScheduledAction, args_key

__all__ = [
    "DIRECT",
    "JOB_TRANSITIONS",
    "MANUAL_INTERVAL",
    "TERMINAL_STATUSES",
    "ActionStatus",
    "DataPacket",
    "DeleteCriteria",
    "EngineData",
    "Flow",
    "FlowBase",
    "FlowRead",
    "FlowStepConfig",
    "Job",
    "JobBase",
    "JobRead",
    "JobReadWithEngineData",
    "JobStatus",
    "Pipeline",
    "PipelineBase",
    "PipelineRead",
    "PipelineStepConfig",
    "ProcessedItem",
    "ScheduledAction",
    "args_key",
    "can_transition",
    "flow_step_id_for",
    "to_utc",
    "utcnow",
]
