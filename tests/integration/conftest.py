"""Fixtures for integration tests requiring RabbitMQ."""

from __future__ import annotations

import socket
from uuid import uuid4

import pytest

from flowmill.services.scheduling.broker import _build_amqp_url
from flowmill.settings import settings


@pytest.fixture(scope="session")
def rabbitmq_url() -> str:
    """AMQP connection URL built from the configured RabbitMQ settings."""
    return _build_amqp_url()


@pytest.fixture(scope="session")
def _check_rabbitmq() -> None:
    """Skip broker tests if RabbitMQ is unreachable."""
    address = (settings.rabbitmq_host, settings.rabbitmq_port)
    try:
        sock = socket.create_connection(address, timeout=3)
        sock.close()
    except OSError:
        pytest.skip(f"RabbitMQ not reachable at {address[0]}:{address[1]}")


@pytest.fixture
def test_queue() -> str:
    """Unique queue name for this test."""
    return f"flowmill_test_{uuid4().hex[:8]}"
