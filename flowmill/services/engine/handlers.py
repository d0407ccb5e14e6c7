"""
Contracts for the collaborators that perform the real work of a step.

Concrete source, destination and model integrations live outside the engine;
they are registered in the :class:`~flowmill.services.registry.HandlerCatalog`
(handlers) or passed to the runtime (AI client).
"""

from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from flowmill.models import DataPacket


class HandlerContext(BaseModel):
    """Identifies the job and step a handler runs for."""

    job_id: int
    flow_step_id: str
    handler_slug: str
    dry_run: bool = False


class SourceItem(BaseModel):
    """One item returned by a fetch handler."""

    model_config = ConfigDict(extra="allow")

    identifier: str
    title: str | None = None
    body: str | None = None
    source_url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class HandlerResult(BaseModel):
    """Outcome of a publish or update handler call."""

    model_config = ConfigDict(extra="allow")

    success: bool = True
    error: str | None = None
    url: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


@runtime_checkable
class FetchHandler(Protocol):
    async def fetch(self, config: dict[str, Any], context: HandlerContext) -> list[SourceItem]: ...


@runtime_checkable
class PublishHandler(Protocol):
    async def publish(
        self, packets: list[DataPacket], config: dict[str, Any], context: HandlerContext
    ) -> HandlerResult: ...


@runtime_checkable
class UpdateHandler(Protocol):
    async def update(
        self, packets: list[DataPacket], config: dict[str, Any], context: HandlerContext
    ) -> HandlerResult: ...


class AIRequest(BaseModel):
    """Input handed to the AI client."""

    job_id: int
    flow_step_id: str
    provider: str | None = None
    model: str | None = None
    system_prompt: str | None = None
    user_message: str | None = None
    enabled_tools: list[str] = Field(default_factory=list)
    packets: list[DataPacket] = Field(default_factory=list)


class AIResponse(BaseModel):
    """Output of the AI client.

    ``skipped`` signals that the agent chose not to produce content for
    this run.
    """

    model_config = ConfigDict(extra="allow")

    success: bool = True
    error: str | None = None
    content: str | None = None
    title: str | None = None
    skipped: bool = False
    skip_reason: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class AIClient(Protocol):
    async def generate(self, request: AIRequest) -> AIResponse: ...
