"""Google Gemini ``generateContent`` adapter (buffered only)."""

from __future__ import annotations

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
from .base import ProviderAdapter, register_adapter
from .openai_compat import DEFAULT_TEMPERATURE

__all__ = ["GeminiAdapter", "build_gemini_contents"]

_LENGTH_REASONS = {"MAX_TOKENS"}


@register_adapter
class GeminiAdapter(ProviderAdapter):
    """Streaming falls back to a buffered call replayed as events."""

    family = "gemini"
    supports_streaming = False

    def endpoint(self, config: ProviderConfig, *, stream: bool) -> str:
        # The broker appends the key as a query parameter.
        return f"{config.resolved_base_url()}/v1beta/models/{config.model}:generateContent"

    def build_body(
        self, config: ProviderConfig, request: EngineRequest, *, stream: bool
    ) -> dict[str, Any]:
        temperature = request.temperature if request.temperature is not None else config.temperature
        body: dict[str, Any] = {
            "contents": build_gemini_contents(request.chat_turns()),
            "generationConfig": {
                "maxOutputTokens": self.max_tokens(config, request),
                "temperature": DEFAULT_TEMPERATURE if temperature is None else temperature,
            },
        }
        system = request.system_prompt()
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        if request.tools:
            body["tools"] = [
                {
                    "functionDeclarations": [
                        {
                            "name": tool.name,
                            "description": tool.description,
                            "parameters": dict(tool.input_schema),
                        }
                        for tool in request.tools
                    ]
                }
            ]
        return body

    def parse_response(self, config: ProviderConfig, payload: Mapping[str, Any]) -> EngineResponse:
        if payload.get("error"):
            raise ProtocolError(f"Provider returned an error body: {payload['error']}")
        candidates = payload["candidates"]
        if not candidates:
            raise ProtocolError("Gemini response contained no candidates")
        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        texts: list[str] = []
        calls: list[ToolCallRequest] = []
        for part in parts:
            if "text" in part:
                texts.append(part.get("text") or "")
            elif "functionCall" in part:
                function = part["functionCall"]
                arguments = function.get("args") or {}
                if not isinstance(arguments, Mapping):
                    raise ProtocolError(f"functionCall args for {function.get('name')} is not an object")
                calls.append(
                    ToolCallRequest(
                        id=f"gemini_{uuid.uuid4().hex[:12]}",
                        name=function["name"],
                        arguments=dict(arguments),
                    )
                )
        finish = candidate.get("finishReason") or ""
        native = StopReason.LENGTH_TRUNCATED if finish in _LENGTH_REASONS else StopReason.END
        usage = payload.get("usageMetadata") or {}
        return EngineResponse(
            text_content="".join(texts),
            tool_calls=tuple(calls),
            stop_reason=EngineResponse.resolve_stop_reason(native, calls),
            model=config.model,
            usage={
                "input_tokens": int(usage.get("promptTokenCount") or 0),
                "output_tokens": int(usage.get("candidatesTokenCount") or 0),
            },
        )


def build_gemini_contents(turns: Sequence[ConversationTurn]) -> list[dict[str, Any]]:
    contents: list[dict[str, Any]] = []
    for turn in turns:
        if turn.role == "assistant" and turn.tool_calls:
            parts: list[dict[str, Any]] = []
            if turn.content:
                parts.append({"text": turn.content})
            for call in turn.tool_calls:
                parts.append({"functionCall": {"name": call.name, "args": dict(call.arguments)}})
            contents.append({"role": "model", "parts": parts})
        elif turn.role == "tool":
            contents.append(
                {
                    "role": "user",
                    "parts": [
                        {
                            "functionResponse": {
                                "name": turn.tool_name,
                                "response": {"content": turn.content},
                            }
                        }
                    ],
                }
            )
        elif turn.role == "user" and turn.attachments:
            parts = [
                {"inlineData": {"mimeType": image.mime_type, "data": image.data}}
                for image in turn.attachments
            ]
            if turn.content:
                parts.append({"text": turn.content})
            contents.append({"role": "user", "parts": parts})
        else:
            contents.append(
                {
                    "role": "model" if turn.role == "assistant" else "user",
                    "parts": [{"text": turn.content}],
                }
            )
    return contents
