"""
Broker tasks invoked by the action dispatcher.

``execute_step`` advances a job by one step; ``run_flow_now`` starts a run of
a flow on a recurring or one-time schedule.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from flowmill.exceptions import FlowNotFoundError
from flowmill.utils.logger import logger

from .bridge import EXECUTE_STEP, FLOW_GROUP, RUN_FLOW_NOW

if TYPE_CHECKING:
    from taskiq import AsyncBroker, AsyncTaskiqDecoratedTask

    from flowmill.services.runtime import EngineComponents

    from .middleware import SessionContextFactory


def register_tasks(
    broker: AsyncBroker,
    components: EngineComponents,
    session_context: SessionContextFactory | None = None,
) -> dict[str, AsyncTaskiqDecoratedTask]:
    """Register the engine tasks on ``broker``.

    Args:
        broker: Broker receiving the tasks
        components: Registry, handlers and AI client used by every run
        session_context: Factory of database sessions; defaults to ``db_manager``

    Returns:
        Registered tasks keyed by task name
    """
    from flowmill.services.runtime import build_runtime

    if session_context is None:
        from flowmill.utils.db_manager import db_manager

        session_context = db_manager.get_async_session_context

    @broker.task(task_name=EXECUTE_STEP)
    async def execute_step(
        job_id: int, flow_step_id: str, args: dict[str, Any] | None = None
    ) -> str | None:
        async with session_context() as session:
            runtime = build_runtime(session, components)
            status = await runtime.step_runner.execute_step(job_id, flow_step_id, args)
        return status.value if status else None

    @broker.task(task_name=RUN_FLOW_NOW)
    async def run_flow_now(flow_id: int) -> int | None:
        async with session_context() as session:
            runtime = build_runtime(session, components)
            try:
                return await runtime.executor.run_flow(flow_id)
            except FlowNotFoundError:
                logger.warning(f"Flow {flow_id} no longer exists, removing its schedule")
                await runtime.bridge.unschedule_all_actions(
                    RUN_FLOW_NOW, {"flow_id": flow_id}, FLOW_GROUP
                )
                return None

    logger.debug(f"Registered engine tasks: {EXECUTE_STEP}, {RUN_FLOW_NOW}")
    return {EXECUTE_STEP: execute_step, RUN_FLOW_NOW: run_flow_now}
