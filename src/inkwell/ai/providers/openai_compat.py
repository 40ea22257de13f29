"""Adapter for OpenAI-compatible chat-completions endpoints.

Serves OpenAI itself plus DeepSeek, Grok, Mistral, GLM, MiniMax, Doubao and
custom gateways, which all speak the same wire format.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Mapping, Sequence

from openai.types.chat import ChatCompletionMessageParam, ChatCompletionToolParam

from ..ai_types import (
    ConversationTurn,
    EngineRequest,
    EngineResponse,
    ProviderConfig,
    StopReason,
    ToolCallRequest,
    ToolDefinition,
)
from ..errors import ProtocolError
from ..streaming import OpenAIStreamDecoder, StreamDecoder, parse_tool_arguments
from .base import ProviderAdapter, register_adapter

__all__ = [
    "OpenAICompatibleAdapter",
    "openai_endpoint",
    "build_openai_messages",
    "build_openai_tools",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.7
_VERSION_SUFFIX = re.compile(r"/v\d+$")
_STOP_REASONS = {
    "stop": StopReason.END,
    "tool_calls": StopReason.TOOL_REQUESTED,
    "function_call": StopReason.TOOL_REQUESTED,
    "length": StopReason.LENGTH_TRUNCATED,
}


def openai_endpoint(base_url: str, path: str) -> str:
    """Join ``path`` to ``base_url`` without doubling a version segment."""

    clean = base_url.rstrip("/")
    if _VERSION_SUFFIX.search(clean):
        return f"{clean}{path}"
    return f"{clean}/v1{path}"


@register_adapter
class OpenAICompatibleAdapter(ProviderAdapter):
    family = "openai"

    def endpoint(self, config: ProviderConfig, *, stream: bool) -> str:
        return openai_endpoint(config.resolved_base_url(), "/chat/completions")

    def build_body(
        self, config: ProviderConfig, request: EngineRequest, *, stream: bool
    ) -> dict[str, Any]:
        temperature = request.temperature if request.temperature is not None else config.temperature
        body: dict[str, Any] = {
            "model": config.model,
            "max_tokens": self.max_tokens(config, request),
            "temperature": DEFAULT_TEMPERATURE if temperature is None else temperature,
            "messages": build_openai_messages(request.system_prompt(), request.chat_turns()),
        }
        if request.tools:
            body["tools"] = build_openai_tools(request.tools)
        if stream:
            body["stream"] = True
        return body

    def parse_response(self, config: ProviderConfig, payload: Mapping[str, Any]) -> EngineResponse:
        if payload.get("error"):
            raise ProtocolError(f"Provider returned an error body: {payload['error']}")
        choice = payload["choices"][0]
        message = choice["message"]
        calls: list[ToolCallRequest] = []
        discarded = 0
        for raw in message.get("tool_calls") or ():
            function = raw["function"]
            raw_arguments = function.get("arguments")
            if isinstance(raw_arguments, Mapping):
                arguments = dict(raw_arguments)
            else:
                try:
                    arguments = parse_tool_arguments(raw_arguments or "")
                except ValueError as exc:
                    LOGGER.warning("Dropping tool call %s: %s", function.get("name"), exc)
                    discarded += 1
                    continue
            calls.append(ToolCallRequest(id=raw["id"], name=function["name"], arguments=arguments))
        native = _STOP_REASONS.get(choice.get("finish_reason") or "", StopReason.END)
        usage = payload.get("usage") or {}
        return EngineResponse(
            text_content=message.get("content") or "",
            tool_calls=tuple(calls),
            discarded_tool_calls=discarded,
            stop_reason=EngineResponse.resolve_stop_reason(native, calls),
            model=payload.get("model") or config.model,
            usage={
                "input_tokens": int(usage.get("prompt_tokens") or 0),
                "output_tokens": int(usage.get("completion_tokens") or 0),
            },
        )

    def create_decoder(self) -> StreamDecoder:
        return OpenAIStreamDecoder()


def build_openai_messages(
    system_prompt: str, turns: Sequence[ConversationTurn]
) -> list[ChatCompletionMessageParam]:
    messages: list[ChatCompletionMessageParam] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    for turn in turns:
        if turn.role == "assistant" and turn.tool_calls:
            messages.append(
                {
                    "role": "assistant",
                    "content": turn.content or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": call.arguments_json()},
                        }
                        for call in turn.tool_calls
                    ],
                }
            )
        elif turn.role == "tool":
            messages.append(
                {"role": "tool", "tool_call_id": turn.tool_call_id or "", "content": turn.content}
            )
        elif turn.role == "user" and turn.attachments:
            content: list[Any] = [
                {"type": "image_url", "image_url": {"url": image.data_url()}}
                for image in turn.attachments
            ]
            if turn.content:
                content.append({"type": "text", "text": turn.content})
            messages.append({"role": "user", "content": content})
        else:
            messages.append({"role": turn.role, "content": turn.content})  # type: ignore[misc]
    return messages


def build_openai_tools(tools: Sequence[ToolDefinition]) -> list[ChatCompletionToolParam]:
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": dict(tool.input_schema),
            },
        }
        for tool in tools
    ]
