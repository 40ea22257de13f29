"""Shared data model for the conversation engine.

Every value crossing a component boundary is an immutable dataclass defined
here: conversation turns, tool contracts, provider configuration, the
unified response and the stream events emitted while a response is built.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Mapping, Sequence, Union

__all__ = [
    "TurnRole",
    "ImageAttachment",
    "ToolCallRequest",
    "ToolDefinition",
    "ConversationTurn",
    "StopReason",
    "EngineResponse",
    "ProviderKind",
    "ProviderConfig",
    "EngineRequest",
    "TextDelta",
    "ToolFragment",
    "ToolFragmentComplete",
    "StreamStop",
    "StreamEvent",
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------------------------------------------------------
# Turns and tool contracts
# -----------------------------------------------------------------------------

TurnRole = Literal["system", "user", "assistant", "tool"]


@dataclass(slots=True, frozen=True)
class ImageAttachment:
    """Base64 image payload attached to a user turn (no ``data:`` prefix)."""

    mime_type: str
    data: str
    id: str = ""

    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


@dataclass(slots=True, frozen=True)
class ToolCallRequest:
    """A complete tool invocation emitted by the model.

    Attributes:
        id: Opaque provider-scoped identifier linking the call to its result.
        name: Name of the capability to invoke.
        arguments: Parsed argument record. Never partial.
    """

    id: str
    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)

    def arguments_json(self) -> str:
        return json.dumps(dict(self.arguments), ensure_ascii=False)

    def with_arguments(self, arguments: Mapping[str, Any]) -> "ToolCallRequest":
        return replace(self, arguments=dict(arguments))


@dataclass(slots=True, frozen=True)
class ToolDefinition:
    """Tool contract advertised to the model."""

    name: str
    description: str
    input_schema: Mapping[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


@dataclass(slots=True, frozen=True)
class ConversationTurn:
    """One entry of the conversation history.

    History is append-only; trimming operates on copies produced with the
    ``with_*`` helpers, never on the stored instances.
    """

    role: TurnRole
    content: str
    timestamp: datetime = field(default_factory=_utcnow)
    tool_calls: tuple[ToolCallRequest, ...] = ()
    tool_call_id: str | None = None
    tool_name: str | None = None
    is_error: bool = False
    attachments: tuple[ImageAttachment, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def system(cls, content: str, **metadata: Any) -> "ConversationTurn":
        return cls(role="system", content=content, metadata=metadata)

    @classmethod
    def user(
        cls,
        content: str,
        attachments: Sequence[ImageAttachment] | None = None,
        **metadata: Any,
    ) -> "ConversationTurn":
        return cls(
            role="user",
            content=content,
            attachments=tuple(attachments or ()),
            metadata=metadata,
        )

    @classmethod
    def assistant(
        cls,
        content: str,
        tool_calls: Sequence[ToolCallRequest] | None = None,
        **metadata: Any,
    ) -> "ConversationTurn":
        return cls(
            role="assistant",
            content=content,
            tool_calls=tuple(tool_calls or ()),
            metadata=metadata,
        )

    @classmethod
    def tool(
        cls,
        content: str,
        tool_call_id: str,
        tool_name: str | None = None,
        *,
        is_error: bool = False,
        **metadata: Any,
    ) -> "ConversationTurn":
        return cls(
            role="tool",
            content=content,
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            is_error=is_error,
            metadata=metadata,
        )

    @property
    def has_images(self) -> bool:
        return bool(self.attachments)

    def with_content(self, content: str) -> "ConversationTurn":
        return replace(self, content=content)

    def with_tool_calls(self, tool_calls: Sequence[ToolCallRequest]) -> "ConversationTurn":
        return replace(self, tool_calls=tuple(tool_calls))

    def with_attachments(self, attachments: Sequence[ImageAttachment]) -> "ConversationTurn":
        return replace(self, attachments=tuple(attachments))


# -----------------------------------------------------------------------------
# Responses
# -----------------------------------------------------------------------------

class StopReason(str, Enum):
    """Unified reason a model response ended."""

    END = "end"
    TOOL_REQUESTED = "tool_requested"
    LENGTH_TRUNCATED = "length_truncated"


@dataclass(slots=True, frozen=True)
class EngineResponse:
    """Provider-independent response to one model call."""

    text_content: str
    tool_calls: tuple[ToolCallRequest, ...] = ()
    stop_reason: StopReason = StopReason.END
    model: str | None = None
    usage: Mapping[str, int] = field(default_factory=dict)
    discarded_tool_calls: int = 0

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    @property
    def truncated_with_tools(self) -> bool:
        """Output limit hit while tool calls were complete or still being built."""

        return self.stop_reason is StopReason.LENGTH_TRUNCATED and bool(
            self.tool_calls or self.discarded_tool_calls
        )

    @staticmethod
    def resolve_stop_reason(
        native: StopReason | None, tool_calls: Sequence[ToolCallRequest]
    ) -> StopReason:
        """Combine a mapped native reason with the presence of tool calls.

        Length signals always win; otherwise any tool call means the model is
        waiting on tool results regardless of what the vendor reported.
        """

        if native is StopReason.LENGTH_TRUNCATED:
            return StopReason.LENGTH_TRUNCATED
        if tool_calls:
            return StopReason.TOOL_REQUESTED
        return StopReason.END


# -----------------------------------------------------------------------------
# Provider configuration
# -----------------------------------------------------------------------------

class ProviderKind(str, Enum):
    """Closed set of supported backends."""

    CLAUDE = "claude"
    OPENAI = "openai"
    GEMINI = "gemini"
    DEEPSEEK = "deepseek"
    OLLAMA = "ollama"
    GROK = "grok"
    MISTRAL = "mistral"
    GLM = "glm"
    MINIMAX = "minimax"
    DOUBAO = "doubao"
    CUSTOM = "custom"

    @property
    def family(self) -> str:
        """Wire-format family: ``anthropic``, ``openai``, ``gemini`` or ``ollama``."""

        if self is ProviderKind.CLAUDE:
            return "anthropic"
        if self is ProviderKind.GEMINI:
            return "gemini"
        if self is ProviderKind.OLLAMA:
            return "ollama"
        return "openai"

    @property
    def default_base_url(self) -> str:
        return _DEFAULT_BASE_URLS[self]


_DEFAULT_BASE_URLS: Mapping[ProviderKind, str] = {
    ProviderKind.CLAUDE: "https://api.anthropic.com",
    ProviderKind.OPENAI: "https://api.openai.com",
    ProviderKind.GEMINI: "https://generativelanguage.googleapis.com",
    ProviderKind.DEEPSEEK: "https://api.deepseek.com",
    ProviderKind.OLLAMA: "http://localhost:11434",
    ProviderKind.GROK: "https://api.x.ai",
    ProviderKind.MISTRAL: "https://api.mistral.ai",
    ProviderKind.GLM: "https://open.bigmodel.cn/api/paas/v4",
    ProviderKind.MINIMAX: "https://api.minimax.io/v1",
    ProviderKind.DOUBAO: "https://ark.cn-beijing.volces.com/api/v3",
    ProviderKind.CUSTOM: "",
}


@dataclass(slots=True, frozen=True)
class ProviderConfig:
    """Read-only provider entry owned by configuration storage.

    Only ``credential_ref`` is carried; the secret itself is resolved by the
    transport broker.
    """

    id: str
    provider_kind: ProviderKind
    model: str
    credential_ref: str | None = None
    base_url: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ProviderConfig":
        kind = ProviderKind(str(payload["provider_kind"]).strip().lower())
        model = str(payload["model"]).strip()
        if not model:
            raise ValueError("model is required")
        max_tokens = payload.get("max_tokens")
        temperature = payload.get("temperature")
        return cls(
            id=str(payload.get("id") or kind.value),
            provider_kind=kind,
            model=model,
            credential_ref=payload.get("credential_ref") or None,
            base_url=payload.get("base_url") or None,
            max_tokens=int(max_tokens) if max_tokens is not None else None,
            temperature=float(temperature) if temperature is not None else None,
        )

    def resolved_base_url(self) -> str:
        base = (self.base_url or self.provider_kind.default_base_url).strip()
        return base.rstrip("/")

    def with_base_url(self, base_url: str) -> "ProviderConfig":
        return replace(self, base_url=base_url)


@dataclass(slots=True, frozen=True)
class EngineRequest:
    """Unified request handed to a provider adapter."""

    turns: tuple[ConversationTurn, ...]
    tools: tuple[ToolDefinition, ...] = ()
    max_tokens: int | None = None
    temperature: float | None = None

    def system_prompt(self) -> str:
        return "\n".join(turn.content for turn in self.turns if turn.role == "system")

    def chat_turns(self) -> tuple[ConversationTurn, ...]:
        return tuple(turn for turn in self.turns if turn.role != "system")


# -----------------------------------------------------------------------------
# Stream events
# -----------------------------------------------------------------------------

@dataclass(slots=True, frozen=True)
class TextDelta:
    text: str


@dataclass(slots=True, frozen=True)
class ToolFragment:
    """Incremental piece of one tool call, keyed by its block index."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments_delta: str = ""


@dataclass(slots=True, frozen=True)
class ToolFragmentComplete:
    """Terminator for the tool call being built at ``index``."""

    index: int


@dataclass(slots=True, frozen=True)
class StreamStop:
    stop_reason: StopReason


StreamEvent = Union[TextDelta, ToolFragment, ToolFragmentComplete, StreamStop]
