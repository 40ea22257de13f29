"""Inkwell conversation engine."""

from .ai_types import (
    ConversationTurn,
    EngineRequest,
    EngineResponse,
    ImageAttachment,
    ProviderConfig,
    ProviderKind,
    StopReason,
    ToolCallRequest,
    ToolDefinition,
)
from .errors import (
    AbortedError,
    ConfigurationError,
    EngineError,
    ProtocolError,
    StaleCompletionError,
    StreamStalledError,
    ToolExecutionError,
    TransportError,
    TruncationExceeded,
)

__all__ = [
    "ConversationTurn",
    "EngineRequest",
    "EngineResponse",
    "ImageAttachment",
    "ProviderConfig",
    "ProviderKind",
    "StopReason",
    "ToolCallRequest",
    "ToolDefinition",
    "EngineError",
    "TransportError",
    "StreamStalledError",
    "ProtocolError",
    "ToolExecutionError",
    "TruncationExceeded",
    "AbortedError",
    "StaleCompletionError",
    "ConfigurationError",
]
