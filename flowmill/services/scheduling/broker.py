"""
TaskIQ broker configuration for step execution.

Provides an AioPikaBroker singleton with SmartRetryMiddleware, logging and
job failure middlewares. Uses the RabbitMQ settings from flowmill.settings.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from flowmill.settings import settings
from flowmill.utils.logger import logger

if TYPE_CHECKING:
    from taskiq import AsyncBroker

    from .middleware import SessionContextFactory

# Module-level broker reference, initialized lazily
_broker: AsyncBroker | None = None

DEFAULT_QUEUE = "flowmill.steps"


def _build_amqp_url() -> str:
    """Build AMQP connection URL from settings."""
    return (
        f"amqp://{settings.rabbitmq_login}:{settings.rabbitmq_password}"
        f"@{settings.rabbitmq_host}:{settings.rabbitmq_port}/"
    )


def create_broker(queue_name: str = DEFAULT_QUEUE) -> AsyncBroker:
    """Create a TaskIQ broker bound to ``queue_name``.

    Args:
        queue_name: Queue to consume from and publish to.

    Returns:
        Configured AioPikaBroker instance.
    """
    from taskiq.middlewares import SmartRetryMiddleware
    from taskiq_aio_pika import AioPikaBroker

    from .middleware import JobFailureMiddleware, StepLoggingMiddleware

    broker = AioPikaBroker(
        url=_build_amqp_url(),
        exchange_name=settings.rabbitmq_exchange,
        queue_name=queue_name,
    )
    broker = broker.with_middlewares(
        SmartRetryMiddleware(
            default_retry_count=settings.broker_retry_count,
            default_retry_label=True,
            default_delay=settings.broker_retry_delay,
            use_jitter=True,
            use_delay_exponent=True,
            max_delay_exponent=settings.broker_retry_max_delay,
        ),
        StepLoggingMiddleware(),
        JobFailureMiddleware(),
    )

    logger.debug(f"Created step broker for queue '{queue_name}'")
    return broker


def get_broker() -> AsyncBroker:
    """Get or create the default broker singleton."""
    global _broker
    if _broker is None:
        _broker = create_broker(DEFAULT_QUEUE)
    return _broker


def get_test_broker(session_context: SessionContextFactory | None = None) -> AsyncBroker:
    """Create an InMemoryBroker for testing.

    Args:
        session_context: Session factory used by the job failure middleware.

    Returns:
        InMemoryBroker awaiting tasks in place, with the logging and job
        failure middlewares attached.
    """
    from taskiq import InMemoryBroker

    from .middleware import JobFailureMiddleware, StepLoggingMiddleware

    return InMemoryBroker(await_inplace=True).with_middlewares(
        StepLoggingMiddleware(), JobFailureMiddleware(session_context)
    )
