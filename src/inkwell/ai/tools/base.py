"""Capability model: in-process tools, external providers and the catalog.

Tool names advertised in one request must be unique. The catalog resolves
collisions deterministically: in-process capabilities win, then external
providers in the order they were added.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Protocol, Sequence, Union, runtime_checkable

from jsonschema import Draft7Validator, ValidationError

from ..ai_types import ToolDefinition

__all__ = [
    "CapabilityResult",
    "Capability",
    "CapabilityHandler",
    "ExternalCapabilityProvider",
    "ToolSet",
    "CapabilityCatalog",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Results and capabilities
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class CapabilityResult:
    """Text returned by a capability plus its error flag."""

    text: str
    is_error: bool = False

    @classmethod
    def ok(cls, text: str) -> "CapabilityResult":
        return cls(text=text)

    @classmethod
    def error(cls, text: str) -> "CapabilityResult":
        return cls(text=text, is_error=True)


HandlerReturn = Union[CapabilityResult, str]
CapabilityHandler = Callable[[Mapping[str, Any]], Union[HandlerReturn, Awaitable[HandlerReturn]]]


@dataclass(slots=True)
class Capability:
    """An in-process tool: its contract and the function implementing it."""

    definition: ToolDefinition
    handler: CapabilityHandler
    _validator: Draft7Validator | None = field(default=None, init=False, repr=False)

    @property
    def name(self) -> str:
        return self.definition.name

    def validate(self, arguments: Mapping[str, Any]) -> str | None:
        """Return a readable violation message, or ``None`` when arguments conform."""

        if self._validator is None:
            self._validator = Draft7Validator(dict(self.definition.input_schema))
        error = next(iter(sorted(self._validator.iter_errors(dict(arguments)), key=str)), None)
        if error is None:
            return None
        return _format_validation_error(error)

    async def invoke(self, arguments: Mapping[str, Any]) -> CapabilityResult:
        result = self.handler(arguments)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, CapabilityResult):
            return result
        return CapabilityResult.ok(str(result))


def _format_validation_error(error: ValidationError) -> str:
    path = ".".join(str(part) for part in error.path)
    if path:
        return f"{path}: {error.message}"
    return error.message


@runtime_checkable
class ExternalCapabilityProvider(Protocol):
    """A capability source discovered at runtime (e.g. a tool server)."""

    name: str

    def list_tools(self) -> Sequence[ToolDefinition]:
        ...

    async def call_tool(self, name: str, arguments: Mapping[str, Any]) -> CapabilityResult:
        ...


# -----------------------------------------------------------------------------
# Catalog
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolSet:
    """Capability set frozen for the lifetime of one request."""

    definitions: tuple[ToolDefinition, ...] = ()
    internal: Mapping[str, Capability] = field(default_factory=dict)
    external: Mapping[str, ExternalCapabilityProvider] = field(default_factory=dict)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(definition.name for definition in self.definitions)

    def __len__(self) -> int:
        return len(self.definitions)

    def __bool__(self) -> bool:
        return bool(self.definitions)


class CapabilityCatalog:
    """Registry of in-process capabilities and external providers."""

    def __init__(
        self,
        internal: Sequence[Capability] = (),
        providers: Sequence[ExternalCapabilityProvider] = (),
    ) -> None:
        self._internal: list[Capability] = list(internal)
        self._providers: list[ExternalCapabilityProvider] = list(providers)

    def register_internal(self, capability: Capability) -> None:
        self._internal.append(capability)

    def add_provider(self, provider: ExternalCapabilityProvider) -> None:
        self._providers.append(provider)

    def remove_provider(self, name: str) -> bool:
        before = len(self._providers)
        self._providers = [provider for provider in self._providers if provider.name != name]
        return len(self._providers) != before

    def snapshot(self) -> ToolSet:
        """Resolve the current capability set into a fixed :class:`ToolSet`."""

        definitions: list[ToolDefinition] = []
        internal: dict[str, Capability] = {}
        external: dict[str, ExternalCapabilityProvider] = {}

        for capability in self._internal:
            if capability.name in internal:
                LOGGER.warning("Duplicate internal capability %s ignored", capability.name)
                continue
            internal[capability.name] = capability
            definitions.append(capability.definition)

        for provider in self._providers:
            try:
                tools = list(provider.list_tools())
            except Exception as exc:
                LOGGER.warning("Capability provider %s failed to list tools: %s", provider.name, exc)
                continue
            for definition in tools:
                if definition.name in internal or definition.name in external:
                    owner = "internal" if definition.name in internal else external[definition.name].name
                    LOGGER.info(
                        "Tool %s from %s is shadowed by %s", definition.name, provider.name, owner
                    )
                    continue
                external[definition.name] = provider
                definitions.append(definition)

        return ToolSet(definitions=tuple(definitions), internal=internal, external=external)
