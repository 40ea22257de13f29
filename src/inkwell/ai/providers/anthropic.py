"""Anthropic Messages API adapter."""

from __future__ import annotations

from typing import Any, Mapping

from ..ai_types import (
    ConversationTurn,
    EngineRequest,
    EngineResponse,
    ProviderConfig,
    StopReason,
    ToolCallRequest,
)
from ..errors import ProtocolError
from ..streaming import AnthropicStreamDecoder, StreamDecoder
from .base import ProviderAdapter, register_adapter

__all__ = ["AnthropicAdapter", "build_anthropic_messages"]

_STOP_REASONS = {
    "end_turn": StopReason.END,
    "stop_sequence": StopReason.END,
    "tool_use": StopReason.TOOL_REQUESTED,
    "max_tokens": StopReason.LENGTH_TRUNCATED,
}


@register_adapter
class AnthropicAdapter(ProviderAdapter):
    family = "anthropic"

    def endpoint(self, config: ProviderConfig, *, stream: bool) -> str:
        return f"{config.resolved_base_url()}/v1/messages"

    def build_body(
        self, config: ProviderConfig, request: EngineRequest, *, stream: bool
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": config.model,
            "max_tokens": self.max_tokens(config, request),
            "messages": build_anthropic_messages(request.chat_turns()),
        }
        system = request.system_prompt()
        if system:
            body["system"] = system
        temperature = request.temperature if request.temperature is not None else config.temperature
        if temperature is not None:
            body["temperature"] = temperature
        if request.tools:
            body["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": dict(tool.input_schema),
                }
                for tool in request.tools
            ]
        if stream:
            body["stream"] = True
        return body

    def parse_response(self, config: ProviderConfig, payload: Mapping[str, Any]) -> EngineResponse:
        if payload.get("type") == "error":
            raise ProtocolError(f"Provider returned an error body: {payload.get('error')}")
        texts: list[str] = []
        calls: list[ToolCallRequest] = []
        for block in payload["content"]:
            block_type = block.get("type")
            if block_type == "text":
                texts.append(block.get("text") or "")
            elif block_type == "tool_use":
                arguments = block.get("input") or {}
                if not isinstance(arguments, Mapping):
                    raise ProtocolError(f"tool_use input for {block.get('name')} is not an object")
                calls.append(ToolCallRequest(id=block["id"], name=block["name"], arguments=dict(arguments)))
        native = _STOP_REASONS.get(payload.get("stop_reason") or "", StopReason.END)
        usage = payload.get("usage") or {}
        return EngineResponse(
            text_content="".join(texts),
            tool_calls=tuple(calls),
            stop_reason=EngineResponse.resolve_stop_reason(native, calls),
            model=payload.get("model") or config.model,
            usage={
                "input_tokens": int(usage.get("input_tokens") or 0),
                "output_tokens": int(usage.get("output_tokens") or 0),
            },
        )

    def create_decoder(self) -> StreamDecoder:
        return AnthropicStreamDecoder()


def build_anthropic_messages(turns: tuple[ConversationTurn, ...]) -> list[dict[str, Any]]:
    """Serialize turns; consecutive tool results share one user message."""

    messages: list[dict[str, Any]] = []
    for turn in turns:
        if turn.role == "assistant" and turn.tool_calls:
            content: list[dict[str, Any]] = []
            if turn.content:
                content.append({"type": "text", "text": turn.content})
            for call in turn.tool_calls:
                content.append(
                    {"type": "tool_use", "id": call.id, "name": call.name, "input": dict(call.arguments)}
                )
            messages.append({"role": "assistant", "content": content})
        elif turn.role == "tool":
            block = {
                "type": "tool_result",
                "tool_use_id": turn.tool_call_id,
                "content": turn.content,
                "is_error": turn.is_error,
            }
            last = messages[-1] if messages else None
            if (
                last is not None
                and last["role"] == "user"
                and isinstance(last["content"], list)
                and all(item.get("type") == "tool_result" for item in last["content"])
            ):
                last["content"].append(block)
            else:
                messages.append({"role": "user", "content": [block]})
        elif turn.role == "user" and turn.attachments:
            content = [
                {
                    "type": "image",
                    "source": {"type": "base64", "media_type": image.mime_type, "data": image.data},
                }
                for image in turn.attachments
            ]
            if turn.content:
                content.append({"type": "text", "text": turn.content})
            messages.append({"role": "user", "content": content})
        else:
            messages.append({"role": turn.role, "content": turn.content})
    return messages
