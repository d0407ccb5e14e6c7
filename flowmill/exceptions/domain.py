"""
Domain exceptions for the workflow engine.

These exceptions are raised by repositories and services and converted into
``{"success": False, "error": ...}`` results at the operation boundary.
"""

from typing import Self


class FlowmillError(Exception):
    """Base exception for all Flowmill-specific errors."""

    def with_context(self, detail: str) -> Self:
        """Add context information to the exception.

        Args:
            detail: Additional details about the error

        Returns:
            Self with updated message
        """
        self.args = (detail,)
        return self


# Base domain exceptions
class EntityNotFoundError(FlowmillError):
    """Raised when an entity is not found in the database."""

    pass


class EntityAlreadyExistsError(FlowmillError):
    """Raised when trying to create an entity that already exists."""

    pass


class ValidationError(FlowmillError):
    """Raised when input validation fails before any state is touched."""

    pass


class BusinessRuleViolationError(FlowmillError):
    """Raised when a business rule is violated."""

    pass


class ConfigurationError(FlowmillError):
    """Raised when stored pipeline or flow configuration is unusable."""

    pass


class SchedulingError(FlowmillError):
    """Raised when the scheduling bridge rejects an action."""

    pass


class StorageError(FlowmillError):
    """Raised when a write to the data store fails."""

    pass


class StepExecutionError(FlowmillError):
    """Raised by a step implementation when its unit of work fails."""

    pass


# Pipeline / flow exceptions
class PipelineNotFoundError(EntityNotFoundError):
    """Raised when a pipeline is not found."""

    def __init__(self, pipeline_id: int | str | None = None):
        if pipeline_id is not None:
            super().__init__(f"Pipeline {pipeline_id} not found")
        else:
            super().__init__("Pipeline not found")


class FlowNotFoundError(EntityNotFoundError):
    """Raised when a flow is not found."""

    def __init__(self, flow_id: int | str | None = None):
        if flow_id is not None:
            super().__init__(f"Flow {flow_id} not found")
        else:
            super().__init__("Flow not found")


class FlowStepNotFoundError(EntityNotFoundError):
    """Raised when a flow step id does not resolve to a configured step."""

    def __init__(self, flow_step_id: str):
        super().__init__(f"Flow step '{flow_step_id}' not found")


class PipelineStepNotFoundError(EntityNotFoundError):
    """Raised when a pipeline step id is not part of the pipeline."""

    def __init__(self, pipeline_step_id: str):
        super().__init__(f"Pipeline step '{pipeline_step_id}' not found")


class JobNotFoundError(EntityNotFoundError):
    """Raised when a job is not found."""

    def __init__(self, job_id: int):
        super().__init__(f"Job {job_id} not found")


class HandlerNotFoundError(EntityNotFoundError):
    """Raised when a handler slug is not registered in the catalog."""

    def __init__(self, handler_slug: str):
        super().__init__(f"Handler '{handler_slug}' not found")


class UnknownStepTypeError(ValidationError):
    """Raised when a step type is not known to the step registry."""

    def __init__(self, step_type: str, valid_types: list[str]):
        super().__init__(
            f"Invalid step type '{step_type}'. Must be one of: {', '.join(valid_types)}"
        )


class FirstStepNotFoundError(ConfigurationError):
    """Raised when no step with execution order 0 exists."""

    def __init__(self, detail: str = "Could not determine first step"):
        super().__init__(detail)


class IncompatiblePipelineError(ConfigurationError):
    """Raised when two pipelines do not share the same ordered step types."""

    def __init__(self, source_types: list[str], target_types: list[str]):
        self.source_types = source_types
        self.target_types = target_types
        super().__init__(
            "Pipeline structures are incompatible: "
            f"source steps [{', '.join(source_types)}], "
            f"target steps [{', '.join(target_types)}]"
        )


# Job exceptions
class InvalidStatusTransitionError(BusinessRuleViolationError):
    """Raised when a job status change is not allowed by the transition table."""

    def __init__(self, job_id: int | None, current: str, requested: str):
        super().__init__(f"Job {job_id} cannot move from '{current}' to '{requested}'")


class EngineDataLockedError(BusinessRuleViolationError):
    """Raised when engine data of a terminal job is written."""

    def __init__(self, job_id: int | None, status: str):
        super().__init__(f"Job {job_id} is '{status}'; engine data is immutable")
