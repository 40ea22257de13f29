"""Ollama native ``/api/chat`` adapter (buffered only)."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Mapping, Sequence

from ..ai_types import (
    ConversationTurn,
    EngineRequest,
    EngineResponse,
    ProviderConfig,
    StopReason,
    ToolCallRequest,
)
from ..errors import ProtocolError
from ..streaming import parse_tool_arguments
from .base import ProviderAdapter, register_adapter
from .openai_compat import DEFAULT_TEMPERATURE, build_openai_tools

__all__ = ["OllamaAdapter", "build_ollama_messages"]

LOGGER = logging.getLogger(__name__)


@register_adapter
class OllamaAdapter(ProviderAdapter):
    family = "ollama"
    supports_streaming = False

    def endpoint(self, config: ProviderConfig, *, stream: bool) -> str:
        return f"{config.resolved_base_url()}/api/chat"

    def build_body(
        self, config: ProviderConfig, request: EngineRequest, *, stream: bool
    ) -> dict[str, Any]:
        temperature = request.temperature if request.temperature is not None else config.temperature
        body: dict[str, Any] = {
            "model": config.model,
            "messages": build_ollama_messages(request.system_prompt(), request.chat_turns()),
            "stream": False,
            "options": {
                "temperature": DEFAULT_TEMPERATURE if temperature is None else temperature,
                "num_predict": self.max_tokens(config, request),
            },
        }
        if request.tools:
            body["tools"] = build_openai_tools(request.tools)
        return body

    def parse_response(self, config: ProviderConfig, payload: Mapping[str, Any]) -> EngineResponse:
        if payload.get("error"):
            raise ProtocolError(f"Provider returned an error body: {payload['error']}")
        message = payload["message"]
        calls: list[ToolCallRequest] = []
        discarded = 0
        for raw in message.get("tool_calls") or ():
            function = raw["function"]
            arguments = function.get("arguments") or {}
            if isinstance(arguments, str):
                try:
                    arguments = parse_tool_arguments(arguments)
                except ValueError as exc:
                    LOGGER.warning("Dropping tool call %s: %s", function.get("name"), exc)
                    discarded += 1
                    continue
            calls.append(
                ToolCallRequest(
                    id=raw.get("id") or f"ollama_{uuid.uuid4().hex[:12]}",
                    name=function["name"],
                    arguments=dict(arguments),
                )
            )
        native = StopReason.LENGTH_TRUNCATED if payload.get("done_reason") == "length" else StopReason.END
        return EngineResponse(
            text_content=message.get("content") or "",
            tool_calls=tuple(calls),
            discarded_tool_calls=discarded,
            stop_reason=EngineResponse.resolve_stop_reason(native, calls),
            model=payload.get("model") or config.model,
            usage={
                "input_tokens": int(payload.get("prompt_eval_count") or 0),
                "output_tokens": int(payload.get("eval_count") or 0),
            },
        )


def build_ollama_messages(
    system_prompt: str, turns: Sequence[ConversationTurn]
) -> list[dict[str, Any]]:
    """Images travel as a top-level base64 array on the user message."""

    messages: list[dict[str, Any]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    for turn in turns:
        if turn.role == "assistant" and turn.tool_calls:
            messages.append(
                {
                    "role": "assistant",
                    "content": turn.content or "",
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": dict(call.arguments)},
                        }
                        for call in turn.tool_calls
                    ],
                }
            )
        elif turn.role == "tool":
            messages.append(
                {"role": "tool", "tool_call_id": turn.tool_call_id, "content": turn.content}
            )
        else:
            entry: dict[str, Any] = {"role": turn.role, "content": turn.content}
            if turn.role == "user" and turn.attachments:
                entry["images"] = [image.data for image in turn.attachments]
            messages.append(entry)
    return messages
