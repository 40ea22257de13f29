"""Error taxonomy for the conversation engine.

Every failure the engine can produce derives from :class:`EngineError` and
carries a machine-readable ``error_code`` so callers can branch without string
matching. The loop decides which of these reach the user:

* :class:`TransportError` / :class:`ProtocolError` abort the round and are
  reported.
* :class:`ToolExecutionError` is folded back into the conversation as an
  error tool turn.
* :class:`TruncationExceeded` is a soft failure with partial content kept.
* :class:`AbortedError` marks the turn interrupted without an error message.
* :class:`StaleCompletionError` is swallowed by the loop and never shown.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

__all__ = [
    "ErrorCode",
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


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------

class ErrorCode:
    """Constants for error codes attached to engine errors."""

    # Transport
    TRANSPORT = "transport_error"
    HTTP_STATUS = "http_status"
    TIMEOUT = "timeout"
    STREAM_STALLED = "stream_stalled"

    # Provider payloads
    PROTOCOL = "protocol_error"

    # Tools
    TOOL_FAILED = "tool_failed"
    TOOL_TIMEOUT = "tool_timeout"
    TOOL_NOT_FOUND = "tool_not_found"
    INVALID_ARGUMENTS = "invalid_arguments"

    # Loop outcomes
    TRUNCATION_EXCEEDED = "truncation_exceeded"
    ABORTED = "aborted"
    STALE = "stale_completion"

    # Setup
    NOT_CONFIGURED = "not_configured"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------

@dataclass(eq=False)
class EngineError(Exception):
    """Base exception for all engine failures.

    Attributes:
        message: Human-readable error description.
        error_code: Machine-readable error identifier.
        details: Additional structured error information.
    """

    message: str
    error_code: str = ErrorCode.TRANSPORT
    details: dict[str, Any] = field(default_factory=dict)

    retryable: ClassVar[bool] = False

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"error": self.error_code, "message": self.message}
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return self.message


# -----------------------------------------------------------------------------
# Transport / Protocol
# -----------------------------------------------------------------------------

@dataclass(eq=False)
class TransportError(EngineError):
    """Network or HTTP failure talking to a provider."""

    error_code: str = ErrorCode.TRANSPORT
    status_code: int | None = None

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.status_code is not None:
            result["status_code"] = self.status_code
        return result


@dataclass(eq=False)
class StreamStalledError(TransportError):
    """The stream stayed open but delivered nothing within the idle window."""

    error_code: str = ErrorCode.STREAM_STALLED
    idle_seconds: float = 0.0


@dataclass(eq=False)
class ProtocolError(EngineError):
    """The provider returned a body the adapter could not interpret."""

    error_code: str = ErrorCode.PROTOCOL


# -----------------------------------------------------------------------------
# Tools
# -----------------------------------------------------------------------------

@dataclass(eq=False)
class ToolExecutionError(EngineError):
    """A single tool call failed; converted into an error tool turn."""

    error_code: str = ErrorCode.TOOL_FAILED
    tool_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.tool_name:
            result["tool"] = self.tool_name
        return result


# -----------------------------------------------------------------------------
# Loop outcomes
# -----------------------------------------------------------------------------

@dataclass(eq=False)
class TruncationExceeded(EngineError):
    """Continuation attempts were exhausted while tool calls stayed truncated."""

    error_code: str = ErrorCode.TRUNCATION_EXCEEDED
    attempts: int = 0


@dataclass(eq=False)
class AbortedError(EngineError):
    """The user cancelled the active turn."""

    message: str = "Request aborted"
    error_code: str = ErrorCode.ABORTED


@dataclass(eq=False)
class StaleCompletionError(EngineError):
    """Work finished for a token that is no longer current."""

    message: str = "Completion belongs to a superseded request"
    error_code: str = ErrorCode.STALE
    generation: int = 0


@dataclass(eq=False)
class ConfigurationError(EngineError):
    """No usable provider configuration is available."""

    error_code: str = ErrorCode.NOT_CONFIGURED
