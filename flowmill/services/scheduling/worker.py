"""
Worker startup: component loading, task receiver, dispatcher and reaper.
"""

from __future__ import annotations

import importlib

from flowmill.services.registry import HandlerCatalog, build_default_registry
from flowmill.services.runtime import EngineComponents
from flowmill.settings import settings
from flowmill.utils.logger import logger


def load_components() -> EngineComponents:
    """Build the engine components from settings.

    Each module in ``settings.handler_modules`` must expose
    ``register(handlers, registry)``; ``settings.ai_client_factory`` is a
    ``module:callable`` path returning the AI client.

    Returns:
        Components shared by every task of this worker
    """
    registry = build_default_registry()
    handlers = HandlerCatalog()

    for module_name in settings.handler_modules:
        try:
            module = importlib.import_module(module_name)
            module.register(handlers, registry)
            logger.info(f"Loaded handlers from {module_name}")
        except Exception as e:
            logger.error(f"Failed to load handlers from {module_name}: {e}")

    ai_client = None
    if settings.ai_client_factory:
        module_name, _, attr = settings.ai_client_factory.partition(":")
        factory = getattr(importlib.import_module(module_name), attr)
        ai_client = factory()
        logger.info(f"AI client created by {settings.ai_client_factory}")

    return EngineComponents(registry=registry, handlers=handlers, ai_client=ai_client)


async def run_worker(workers: int | None = None) -> None:
    """Run a worker until SIGINT/SIGTERM.

    Starts the TaskIQ receiver for step tasks, the action dispatcher and
    the stuck-job reaper.

    Args:
        workers: Number of concurrent tasks (defaults to ``settings.worker_concurrency``).
    """
    import asyncio
    import signal

    from taskiq.acks import AcknowledgeType
    from taskiq.api.receiver import run_receiver_task

    from flowmill.services.stuck_job_reaper import StuckJobReaper

    from .broker import get_broker
    from .dispatcher import ActionDispatcher
    from .tasks import register_tasks

    workers = workers or settings.worker_concurrency
    components = load_components()
    broker = get_broker()
    register_tasks(broker, components)

    ack_types = {
        "when_received": AcknowledgeType.WHEN_RECEIVED,
        "when_executed": AcknowledgeType.WHEN_EXECUTED,
        "when_saved": AcknowledgeType.WHEN_SAVED,
    }
    ack_type = ack_types.get(settings.broker_ack_type, AcknowledgeType.WHEN_EXECUTED)

    broker.is_worker_process = True
    await broker.startup()
    receiver = asyncio.create_task(
        run_receiver_task(broker, max_async_tasks=workers, run_startup=False, ack_time=ack_type)
    )
    dispatcher = ActionDispatcher(broker)
    reaper = StuckJobReaper()
    await dispatcher.start()
    await reaper.start()

    logger.info(f"Worker started (workers={workers})")
    logger.info(f"Registered tasks: {list(broker.get_all_tasks().keys())}")

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    try:
        await shutdown_event.wait()
    finally:
        await dispatcher.stop()
        await reaper.stop()
        receiver.cancel()
        await broker.shutdown()
        logger.info("Worker stopped")
