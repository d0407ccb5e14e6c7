"""Global test configuration: SQLite database, fake collaborators and a wired runtime."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

# Import all models to ensure metadata is populated
from flowmill.models import *  # noqa: F403
from flowmill.exceptions import SchedulingError
from flowmill.models import DataPacket, to_utc, utcnow
from flowmill.services.engine import (
    AIRequest,
    AIResponse,
    HandlerContext,
    HandlerResult,
    SourceItem,
)
from flowmill.services.registry import HandlerCatalog, HandlerDescriptor, HandlerField
from flowmill.services.runtime import EngineComponents, Runtime, build_runtime
from flowmill.services.scheduling.bridge import EXECUTE_STEP

# ─── Database ───────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """File-backed SQLite engine, so several sessions see the same data."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'flowmill.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def test_session(session_factory) -> AsyncGenerator[AsyncSession]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def session_context(session_factory):
    """Session context factory shaped like ``db_manager.get_async_session_context``."""

    @asynccontextmanager
    async def context() -> AsyncGenerator[AsyncSession]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return context


# ─── Scheduling bridge ──────────────────────────────────────────────────────


@dataclass
class RecordedAction:
    action_id: int
    callback_name: str
    args: dict[str, Any]
    group: str
    timestamp: datetime | None
    interval_seconds: int | None = None
    canceled: bool = False
    consumed: bool = False

    @property
    def pending(self) -> bool:
        return not (self.canceled or self.consumed)


class RecordingBridge:
    """In-memory scheduling bridge that records every call."""

    def __init__(self) -> None:
        self.actions: list[RecordedAction] = []
        self.fail = False

    def _record(
        self,
        timestamp: Any,
        callback_name: str,
        args: dict[str, Any],
        group: str,
        interval_seconds: int | None = None,
    ) -> int:
        if self.fail:
            raise SchedulingError("Scheduling backend unavailable")
        action = RecordedAction(
            action_id=len(self.actions) + 1,
            callback_name=callback_name,
            args=dict(args),
            group=group,
            timestamp=to_utc(timestamp) if timestamp is not None else None,
            interval_seconds=interval_seconds,
        )
        self.actions.append(action)
        return action.action_id

    async def schedule_single_action(self, timestamp, callback_name, args, group=""):
        return self._record(timestamp, callback_name, args, group)

    async def schedule_recurring_action(
        self, timestamp, interval_seconds, callback_name, args, group=""
    ):
        return self._record(timestamp, callback_name, args, group, interval_seconds)

    async def unschedule_all_actions(self, callback_name, args=None, group=""):
        canceled = 0
        for action in self.pending_actions(callback_name):
            if args is not None and action.args != args:
                continue
            if group and action.group != group:
                continue
            action.canceled = True
            canceled += 1
        return canceled

    async def next_scheduled_time(self, callback_name, args=None, group=""):
        times = [
            action.timestamp or utcnow()
            for action in self.pending_actions(callback_name)
            if args is None or action.args == args
        ]
        return min(times) if times else None

    def pending_actions(self, callback_name: str | None = None) -> list[RecordedAction]:
        return [
            action
            for action in self.actions
            if action.pending and (callback_name is None or action.callback_name == callback_name)
        ]

    def pending_steps(self) -> list[RecordedAction]:
        return self.pending_actions(EXECUTE_STEP)


# ─── Fake handlers ──────────────────────────────────────────────────────────


class FakeSource:
    """Fetch handler returning a fixed list of items."""

    def __init__(self, items: list[dict[str, Any]] | None = None):
        self.items = items or []
        self.calls: list[tuple[dict[str, Any], HandlerContext]] = []

    async def fetch(self, config: dict[str, Any], context: HandlerContext) -> list[SourceItem]:
        self.calls.append((config, context))
        return [SourceItem(**item) for item in self.items]


class FakePublisher:
    """Publish/update handler recording what it was given."""

    def __init__(self) -> None:
        self.published: list[list[DataPacket]] = []
        self.updated: list[list[DataPacket]] = []
        self.error: str | None = None

    async def publish(self, packets, config, context) -> HandlerResult:
        if self.error:
            return HandlerResult(success=False, error=self.error)
        self.published.append(list(packets))
        return HandlerResult(url=f"https://example.com/posts/{len(self.published)}")

    async def update(self, packets, config, context) -> HandlerResult:
        if self.error:
            return HandlerResult(success=False, error=self.error)
        self.updated.append(list(packets))
        return HandlerResult(url="https://example.com/posts/1", data={"revision": 2})


class FakeAIClient:
    """AI client that rewrites the latest packet."""

    def __init__(self) -> None:
        self.requests: list[AIRequest] = []
        self.response: AIResponse | None = None

    async def generate(self, request: AIRequest) -> AIResponse:
        self.requests.append(request)
        if self.response is not None:
            return self.response
        latest = request.packets[-1] if request.packets else None
        return AIResponse(
            title=f"Rewritten: {latest.title if latest else 'nothing'}",
            content="A short summary.",
        )


@pytest.fixture
def source() -> FakeSource:
    return FakeSource(
        [
            {"identifier": "item-1", "title": "First", "body": "one"},
            {"identifier": "item-2", "title": "Second", "body": "two"},
        ]
    )


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def ai_client() -> FakeAIClient:
    return FakeAIClient()


@pytest.fixture
def handlers(source, publisher) -> HandlerCatalog:
    """Handler catalog with two sources and two destinations."""
    return HandlerCatalog(
        [
            HandlerDescriptor(
                "rss",
                "fetch",
                source,
                label="RSS",
                fields={
                    "feed_url": HandlerField("Feed URL", required=True),
                    "max_items": HandlerField(),
                },
            ),
            HandlerDescriptor(
                "atom",
                "fetch",
                FakeSource(),
                label="Atom",
                fields={"url": HandlerField("URL"), "limit": HandlerField()},
            ),
            HandlerDescriptor(
                "blog",
                "publish",
                publisher,
                label="Blog",
                fields={"site": HandlerField("Site"), "category": HandlerField("Category")},
            ),
            HandlerDescriptor("social", "publish", FakePublisher(), label="Social"),
            HandlerDescriptor("blog_update", "update", publisher, label="Blog update"),
        ]
    )


# ─── Runtime ────────────────────────────────────────────────────────────────


@pytest.fixture
def bridge() -> RecordingBridge:
    return RecordingBridge()


@pytest.fixture
def components(handlers, ai_client, bridge) -> EngineComponents:
    return EngineComponents(
        handlers=handlers, ai_client=ai_client, bridge_factory=lambda session: bridge
    )


@pytest.fixture
def runtime(test_session, components) -> Runtime:
    return build_runtime(test_session, components)


CONTENT_STEPS = [
    {"step_type": "fetch", "handler_slug": "rss", "handler_config": {"feed_url": "https://a.test"}},
    {"step_type": "ai", "user_message": "Summarize the article"},
    {"step_type": "publish", "handler_slug": "blog", "handler_config": {"site": "main"}},
]


@pytest.fixture
def create_pipeline(runtime):
    """Create a pipeline (default: fetch -> ai -> publish) and its default flow."""

    async def _create(name: str = "Tech news", steps: list[dict[str, Any]] | None = None, **kw):
        return await runtime.pipeline_service.create(
            name, CONTENT_STEPS if steps is None else steps, kw or None
        )

    return _create


@pytest.fixture
def drain(runtime, bridge):
    """Run scheduled steps the way a worker would until none are left."""

    async def _drain(limit: int = 20) -> int:
        executed = 0
        while bridge.pending_steps() and executed < limit:
            action = bridge.pending_steps()[0]
            action.consumed = True
            await runtime.step_runner.execute_step(**action.args)
            executed += 1
        return executed

    return _drain
