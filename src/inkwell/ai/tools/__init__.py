"""Capabilities the model can invoke."""

from .base import (
    Capability,
    CapabilityCatalog,
    CapabilityResult,
    ExternalCapabilityProvider,
    ToolSet,
)
from .internal import READ_EDITOR_CONTENT, UPDATE_EDITOR_CONTENT, EditorBridge, editor_capabilities

__all__ = [
    "Capability",
    "CapabilityCatalog",
    "CapabilityResult",
    "ExternalCapabilityProvider",
    "ToolSet",
    "EditorBridge",
    "editor_capabilities",
    "UPDATE_EDITOR_CONTENT",
    "READ_EDITOR_CONTENT",
]
