"""Domain exceptions for Flowmill."""

from .domain import (
    BusinessRuleViolationError,
    ConfigurationError,
    EngineDataLockedError,
    EntityAlreadyExistsError,
    EntityNotFoundError,
    FirstStepNotFoundError,
    FlowmillError,
    FlowNotFoundError,
    FlowStepNotFoundError,
    HandlerNotFoundError,
    IncompatiblePipelineError,
    InvalidStatusTransitionError,
    JobNotFoundError,
    PipelineNotFoundError,
    PipelineStepNotFoundError,
    SchedulingError,
    StepExecutionError,
    StorageError,
    UnknownStepTypeError,
    ValidationError,
)

__all__ = [
    "BusinessRuleViolationError",
    "ConfigurationError",
    "EngineDataLockedError",
    "EntityAlreadyExistsError",
    "EntityNotFoundError",
    "FirstStepNotFoundError",
    "FlowNotFoundError",
    "FlowStepNotFoundError",
    "FlowmillError",
    "HandlerNotFoundError",
    "IncompatiblePipelineError",
    "InvalidStatusTransitionError",
    "JobNotFoundError",
    "PipelineNotFoundError",
    "PipelineStepNotFoundError",
    "SchedulingError",
    "StepExecutionError",
    "StorageError",
    "UnknownStepTypeError",
    "ValidationError",
]
