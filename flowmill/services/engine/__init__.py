"""
Workflow engine: job creation, step execution and step chaining.

Example:
    executor = WorkflowExecutor(flows, pipelines, job_manager, registry, bridge)
    result = await executor.execute(ExecuteWorkflowRequest(flow_id=12))

    # invoked by the scheduling bridge for each hop
    await step_runner.execute_step(result["job_id"], "3_5a1c..._12")
"""

from .chaining import schedule_next_step
from .executor import DRY_RUN_MESSAGE, WorkflowExecutor
from .handlers import (
    AIClient,
    AIRequest,
    AIResponse,
    FetchHandler,
    HandlerContext,
    HandlerResult,
    PublishHandler,
    SourceItem,
    UpdateHandler,
)
from .requests import ExecuteWorkflowRequest
from .step_runner import StepRunner
from .steps import (
    AIStep,
    FetchStep,
    PublishStep,
    Step,
    StepContext,
    StepOutcome,
    StepPayload,
    StepResult,
    UpdateStep,
)

__all__ = [
    "DRY_RUN_MESSAGE",
    "AIClient",
    "AIRequest",
    "AIResponse",
    "AIStep",
    "ExecuteWorkflowRequest",
    "FetchHandler",
    "FetchStep",
    "HandlerContext",
    "HandlerResult",
    "PublishHandler",
    "PublishStep",
    "SourceItem",
    "Step",
    "StepContext",
    "StepOutcome",
    "StepPayload",
    "StepResult",
    "StepRunner",
    "UpdateHandler",
    "UpdateStep",
    "WorkflowExecutor",
    "schedule_next_step",
]
