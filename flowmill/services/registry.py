"""
Step registry and handler catalog.

The step registry maps a step type (``fetch``, ``ai``, ``publish``,
``update``) to its execution class and label. The handler catalog maps a
handler slug to the pluggable implementation backing a step and to the
config fields that implementation declares.

Both are plain objects built once at startup and passed to the services
that need them.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from flowmill.exceptions import (
    EntityAlreadyExistsError,
    HandlerNotFoundError,
    UnknownStepTypeError,
)

if TYPE_CHECKING:
    from flowmill.services.engine.steps import Step


@dataclass(frozen=True)
class StepTypeDescriptor:
    """Execution contract of a step type."""

    step_type: str
    label: str
    step_class: type[Step]
    uses_handler: bool = True
    description: str = ""


class StepRegistry:
    """Catalog of known step types."""

    def __init__(self, descriptors: Iterable[StepTypeDescriptor] = ()):
        self._step_types: dict[str, StepTypeDescriptor] = {}
        for descriptor in descriptors:
            self.register(descriptor)

    def register(self, descriptor: StepTypeDescriptor) -> None:
        if descriptor.step_type in self._step_types:
            raise EntityAlreadyExistsError(
                f"Step type '{descriptor.step_type}' is already registered"
            )
        self._step_types[descriptor.step_type] = descriptor

    def get_all_step_types(self) -> dict[str, StepTypeDescriptor]:
        return dict(self._step_types)

    def valid_types(self) -> list[str]:
        return list(self._step_types)

    def is_valid(self, step_type: str) -> bool:
        return step_type in self._step_types

    def get(self, step_type: str) -> StepTypeDescriptor | None:
        return self._step_types.get(step_type)

    def require(self, step_type: str) -> StepTypeDescriptor:
        """Get a descriptor or raise.

        Raises:
            UnknownStepTypeError: If the step type is not registered
        """
        descriptor = self._step_types.get(step_type)
        if descriptor is None:
            raise UnknownStepTypeError(step_type, self.valid_types())
        return descriptor

    def label_for(self, step_type: str) -> str:
        """Registry label, or the step type title-cased when unknown."""
        descriptor = self._step_types.get(step_type)
        if descriptor is not None:
            return descriptor.label
        return step_type.replace("_", " ").title()

    def requires_handler(self, step_type: str) -> bool:
        descriptor = self._step_types.get(step_type)
        return descriptor.uses_handler if descriptor is not None else True


@dataclass(frozen=True)
class HandlerField:
    """A config field declared by a handler."""

    label: str = ""
    type: str = "text"
    required: bool = False
    default: Any = None
    description: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "type": self.type,
            "required": self.required,
            "default": self.default,
            "description": self.description,
        }


@dataclass
class HandlerDescriptor:
    """A registered handler implementation."""

    slug: str
    step_type: str
    handler: Any
    label: str = ""
    fields: dict[str, HandlerField] = field(default_factory=dict)


class HandlerCatalog:
    """Catalog of handler implementations keyed by slug."""

    def __init__(self, descriptors: Iterable[HandlerDescriptor] = ()):
        self._handlers: dict[str, HandlerDescriptor] = {}
        for descriptor in descriptors:
            self.register(descriptor)

    def register(self, descriptor: HandlerDescriptor) -> None:
        if descriptor.slug in self._handlers:
            raise EntityAlreadyExistsError(f"Handler '{descriptor.slug}' is already registered")
        self._handlers[descriptor.slug] = descriptor

    def exists(self, handler_slug: str) -> bool:
        return handler_slug in self._handlers

    def get(self, handler_slug: str) -> HandlerDescriptor | None:
        return self._handlers.get(handler_slug)

    def require(self, handler_slug: str) -> HandlerDescriptor:
        """Get a handler or raise.

        Raises:
            HandlerNotFoundError: If the slug is not registered
        """
        descriptor = self._handlers.get(handler_slug)
        if descriptor is None:
            raise HandlerNotFoundError(handler_slug)
        return descriptor

    def get_config_fields(self, handler_slug: str) -> dict[str, dict[str, Any]]:
        """Declared config fields of a handler; empty when unknown or undeclared."""
        descriptor = self._handlers.get(handler_slug)
        if descriptor is None:
            return {}
        return {name: entry.as_dict() for name, entry in descriptor.fields.items()}

    def for_step_type(self, step_type: str) -> list[HandlerDescriptor]:
        return [d for d in self._handlers.values() if d.step_type == step_type]


def build_default_registry() -> StepRegistry:
    """Registry with the built-in fetch, ai, publish and update step types."""
    from flowmill.services.engine.steps import AIStep, FetchStep, PublishStep, UpdateStep

    return StepRegistry(
        [
            StepTypeDescriptor("fetch", "Fetch", FetchStep, description="Pull items from a source"),
            StepTypeDescriptor(
                "ai", "AI Agent", AIStep, uses_handler=False, description="Transform with a model"
            ),
            StepTypeDescriptor("publish", "Publish", PublishStep, description="Create content"),
            StepTypeDescriptor("update", "Update", UpdateStep, description="Update content"),
        ]
    )
