"""
Explicit wiring of repositories and services for one database session.

Registry, handler catalog and AI client are built once per process and
bundled in :class:`EngineComponents`; :func:`build_runtime` combines them
with a session into a ready-to-use :class:`Runtime`.
"""

from collections.abc import Callable
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from flowmill.repositories import (
    FlowRepository,
    JobRepository,
    PipelineRepository,
    ProcessedItemRepository,
    ScheduledActionRepository,
)
from flowmill.services.engine import StepContext, StepRunner, WorkflowExecutor
from flowmill.services.engine.handlers import AIClient
from flowmill.services.flow_service import FlowService
from flowmill.services.flow_step_service import FlowStepConfigService
from flowmill.services.health_monitor import HealthMonitor
from flowmill.services.job_manager import JobManager
from flowmill.services.pipeline_service import PipelineService
from flowmill.services.registry import HandlerCatalog, StepRegistry, build_default_registry
from flowmill.services.scheduling.bridge import ActionScheduler, SchedulingBridge


@dataclass
class EngineComponents:
    """Process-wide collaborators shared by every runtime."""

    registry: StepRegistry = field(default_factory=build_default_registry)
    handlers: HandlerCatalog = field(default_factory=HandlerCatalog)
    ai_client: AIClient | None = None
    bridge_factory: Callable[[AsyncSession], SchedulingBridge] | None = None

    def bridge_for(self, session: AsyncSession) -> SchedulingBridge:
        if self.bridge_factory is not None:
            return self.bridge_factory(session)
        return ActionScheduler(ScheduledActionRepository(session))


@dataclass
class Runtime:
    """Services bound to one session."""

    session: AsyncSession
    components: EngineComponents
    pipelines: PipelineRepository
    flows: FlowRepository
    jobs: JobRepository
    processed_items: ProcessedItemRepository
    bridge: SchedulingBridge
    job_manager: JobManager
    flow_steps: FlowStepConfigService
    flow_service: FlowService
    pipeline_service: PipelineService
    executor: WorkflowExecutor
    step_runner: StepRunner
    health: HealthMonitor


def build_runtime(session: AsyncSession, components: EngineComponents | None = None) -> Runtime:
    """Construct every service for ``session``.

    Args:
        session: Database session shared by all repositories
        components: Process-wide collaborators; defaults to the built-in
            step types with an empty handler catalog

    Returns:
        Wired runtime
    """
    components = components or EngineComponents()
    pipelines = PipelineRepository(session)
    flows = FlowRepository(session)
    jobs = JobRepository(session)
    processed_items = ProcessedItemRepository(session)
    bridge = components.bridge_for(session)

    job_manager = JobManager(jobs, processed_items)
    flow_service = FlowService(flows, pipelines, bridge, processed_items)
    step_context = StepContext(
        handlers=components.handlers,
        processed_items=processed_items,
        ai_client=components.ai_client,
    )

    return Runtime(
        session=session,
        components=components,
        pipelines=pipelines,
        flows=flows,
        jobs=jobs,
        processed_items=processed_items,
        bridge=bridge,
        job_manager=job_manager,
        flow_steps=FlowStepConfigService(flows, pipelines, components.handlers),
        flow_service=flow_service,
        pipeline_service=PipelineService(pipelines, flows, flow_service, components.registry),
        executor=WorkflowExecutor(flows, pipelines, job_manager, components.registry, bridge),
        step_runner=StepRunner(job_manager, flows, components.registry, step_context, bridge),
        health=HealthMonitor(flows, jobs),
    )
