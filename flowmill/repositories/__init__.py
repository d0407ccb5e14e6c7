"""Data store adapters for Flowmill entities."""

from .base import BaseRepository
from .flow_repository import FlowRepository
from .job_repository import JobRepository
from .pipeline_repository import PipelineRepository
from .processed_item_repository import ProcessedItemRepository
from .scheduled_action_repository import ScheduledActionRepository

__all__ = [
    "BaseRepository",
    "FlowRepository",
    "JobRepository",
    "PipelineRepository",
    "ProcessedItemRepository",
    "ScheduledActionRepository",
]
