"""
Built-in step types.

A step receives a :class:`StepPayload` describing the job, the step config
and the engine data accumulated so far, performs one unit of work and
returns a :class:`StepResult`. Steps never schedule anything themselves;
chaining is done by :class:`~flowmill.services.engine.step_runner.StepRunner`.
"""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

from flowmill.exceptions import ConfigurationError, StepExecutionError
from flowmill.models import DataPacket, EngineData, FlowStepConfig, PipelineStepConfig
from flowmill.utils.logger import logger

from .handlers import AIClient, AIRequest, HandlerContext

if TYPE_CHECKING:
    from flowmill.repositories import ProcessedItemRepository
    from flowmill.services.registry import HandlerCatalog, HandlerDescriptor


class StepOutcome(str, enum.Enum):
    """How a step ended, as seen by the chaining logic."""

    ok = "ok"
    no_items = "no_items"
    skipped = "skipped"


@dataclass
class StepContext:
    """Collaborators available to every step."""

    handlers: HandlerCatalog
    processed_items: ProcessedItemRepository
    ai_client: AIClient | None = None


@dataclass
class StepPayload:
    """Everything a step needs to run once."""

    job_id: int
    flow_step_id: str
    flow_step_config: FlowStepConfig
    engine_data: EngineData
    pipeline_step_config: PipelineStepConfig | None = None
    direct: bool = False

    @property
    def packets(self) -> list[DataPacket]:
        return self.engine_data.packets

    @property
    def dry_run(self) -> bool:
        return self.engine_data.dry_run_mode

    @property
    def tracks_items(self) -> bool:
        """Whether fetched items are checked against and recorded in the dedup store."""
        return not (self.direct or self.dry_run)


@dataclass
class StepResult:
    """Packets produced by a step plus anything it wants recorded."""

    packets: list[DataPacket] = field(default_factory=list)
    outcome: StepOutcome = StepOutcome.ok
    details: dict[str, Any] = field(default_factory=dict)


class Step(ABC):
    """Base class of all step types."""

    step_type: ClassVar[str]

    def __init__(self, context: StepContext):
        self.context = context

    @abstractmethod
    async def execute(self, payload: StepPayload) -> StepResult:
        """Run the step once for a job."""

    def _handler(self, payload: StepPayload) -> HandlerDescriptor:
        slug = payload.flow_step_config.handler_slug
        if not slug:
            raise ConfigurationError(
                f"Step '{payload.flow_step_id}' has no handler configured"
            )
        return self.context.handlers.require(slug)

    @staticmethod
    def _handler_context(payload: StepPayload, slug: str) -> HandlerContext:
        return HandlerContext(
            job_id=payload.job_id,
            flow_step_id=payload.flow_step_id,
            handler_slug=slug,
            dry_run=payload.dry_run,
        )


class FetchStep(Step):
    """Pulls new items from a source handler.

    Items already recorded as processed for this flow step by another job are
    dropped; the remaining ones are recorded against the job before being
    emitted. Direct runs and dry runs neither consult nor touch the records.
    """

    step_type = "fetch"

    async def execute(self, payload: StepPayload) -> StepResult:
        descriptor = self._handler(payload)
        config = payload.flow_step_config.handler_config
        context = self._handler_context(payload, descriptor.slug)
        items = await descriptor.handler.fetch(config, context)

        packets: list[DataPacket] = []
        for item in items:
            if payload.tracks_items and not await self._claim(
                payload, descriptor.slug, item.identifier
            ):
                continue
            packets.append(
                DataPacket(
                    type="fetch",
                    title=item.title,
                    body=item.body,
                    source_url=item.source_url,
                    metadata={
                        **item.metadata,
                        "item_identifier": item.identifier,
                        "source_type": descriptor.slug,
                    },
                    flow_step_id=payload.flow_step_id,
                )
            )

        skipped = len(items) - len(packets)
        if not packets:
            logger.info(
                f"[job={payload.job_id} step={payload.flow_step_id}] "
                f"No new items from '{descriptor.slug}' ({skipped} already processed)"
            )
            return StepResult(outcome=StepOutcome.no_items, details={"skipped_items": skipped})

        return StepResult(
            packets=packets, details={"new_items": len(packets), "skipped_items": skipped}
        )

    async def _claim(self, payload: StepPayload, source_type: str, identifier: str) -> bool:
        """Record an item for the job; an item this job recorded earlier stays claimed."""
        processed_items = self.context.processed_items
        if await processed_items.add(payload.flow_step_id, source_type, identifier, payload.job_id):
            return True
        record = await processed_items.get_record(payload.flow_step_id, source_type, identifier)
        return record is not None and record.job_id == payload.job_id


class AIStep(Step):
    """Sends the accumulated packets to the AI client."""

    step_type = "ai"

    async def execute(self, payload: StepPayload) -> StepResult:
        if self.context.ai_client is None:
            raise ConfigurationError("No AI client configured")

        pipeline_step = payload.pipeline_step_config
        request = AIRequest(
            job_id=payload.job_id,
            flow_step_id=payload.flow_step_id,
            provider=pipeline_step.provider if pipeline_step else None,
            model=pipeline_step.model if pipeline_step else None,
            system_prompt=pipeline_step.system_prompt if pipeline_step else None,
            user_message=payload.flow_step_config.user_message,
            enabled_tools=payload.flow_step_config.enabled_tools
            or (pipeline_step.enabled_tools if pipeline_step else []),
            packets=payload.packets,
        )
        response = await self.context.ai_client.generate(request)

        if not response.success:
            raise StepExecutionError(response.error or "AI request failed")
        if response.skipped:
            return StepResult(
                outcome=StepOutcome.skipped, details={"skip_reason": response.skip_reason}
            )
        if not response.content:
            return StepResult(details={"empty_response": True})

        return StepResult(
            packets=[
                DataPacket(
                    type="ai",
                    title=response.title,
                    body=response.content,
                    metadata=response.metadata,
                    flow_step_id=payload.flow_step_id,
                )
            ]
        )


class _DestinationStep(Step):
    """Shared logic of publish and update steps."""

    action: ClassVar[str]

    async def execute(self, payload: StepPayload) -> StepResult:
        descriptor = self._handler(payload)
        config = payload.flow_step_config.handler_config

        if payload.dry_run:
            logger.info(
                f"[job={payload.job_id} step={payload.flow_step_id}] "
                f"Dry run: skipping {self.action} via '{descriptor.slug}'"
            )
            latest = payload.packets[-1] if payload.packets else None
            return StepResult(
                packets=[
                    DataPacket(
                        type=f"{self.action}_preview",
                        title=latest.title if latest else None,
                        body=latest.body if latest else None,
                        metadata={
                            "handler_slug": descriptor.slug,
                            "handler_config": config,
                            "dry_run": True,
                        },
                        flow_step_id=payload.flow_step_id,
                    )
                ],
                details={"dry_run": True},
            )

        method = getattr(descriptor.handler, self.action)
        context = self._handler_context(payload, descriptor.slug)
        result = await method(payload.packets, config, context)
        if not result.success:
            raise StepExecutionError(
                result.error or f"{self.action} via '{descriptor.slug}' failed"
            )

        return StepResult(
            packets=[
                DataPacket(
                    type=self.action,
                    source_url=result.url,
                    metadata={"handler_slug": descriptor.slug, **result.data},
                    flow_step_id=payload.flow_step_id,
                )
            ],
            details={"url": result.url},
        )


class PublishStep(_DestinationStep):
    """Creates content through a publish handler."""

    step_type = "publish"
    action = "publish"


class UpdateStep(_DestinationStep):
    """Updates existing content through an update handler."""

    step_type = "update"
    action = "update"
