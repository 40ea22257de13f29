"""Stream event parsing for provider SSE responses.

Raw lines from a :class:`~inkwell.ai.transport.StreamHandle` are decoded by a
per-provider decoder into :data:`~inkwell.ai.ai_types.StreamEvent` values.
:class:`StreamEventParser` races every read against the idle watchdog and the
turn's cancellation token, and :class:`ToolCallAccumulator` reassembles tool
calls strictly from completed fragments.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterable, Mapping

from .ai_types import (
    EngineResponse,
    StopReason,
    StreamEvent,
    StreamStop,
    TextDelta,
    ToolCallRequest,
    ToolFragment,
    ToolFragmentComplete,
)
from .errors import ProtocolError, StreamStalledError, TransportError
from .orchestration.cancellation import CancellationToken, race
from .transport import StreamHandle

__all__ = [
    "StreamDecoder",
    "AnthropicStreamDecoder",
    "OpenAIStreamDecoder",
    "StreamEventParser",
    "ToolCallAccumulator",
    "parse_tool_arguments",
    "collect_stream",
]

LOGGER = logging.getLogger(__name__)

_DONE_MARKER = "[DONE]"


def parse_tool_arguments(arguments: str) -> dict[str, Any]:
    """Parse tool arguments from a JSON string.

    Raises:
        ValueError: If arguments are not a JSON object.
    """
    if not arguments or arguments.strip() in ("", "{}"):
        return {}

    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in tool arguments: {e}") from e
    if not isinstance(parsed, dict):
        raise ValueError(f"Arguments must be a JSON object, got {type(parsed).__name__}")
    return parsed


# -----------------------------------------------------------------------------
# Decoders
# -----------------------------------------------------------------------------


class StreamDecoder:
    """Turns SSE lines into stream events. Subclasses handle one wire format."""

    def __init__(self) -> None:
        self.done = False

    def feed(self, line: str) -> list[StreamEvent]:
        payload = _sse_data(line)
        if payload is None:
            return []
        if payload == _DONE_MARKER:
            self.done = True
            return []
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            LOGGER.debug("Skipping undecodable stream line: %.120s", payload)
            return []
        if not isinstance(data, Mapping):
            return []
        return self.decode(data)

    def decode(self, data: Mapping[str, Any]) -> list[StreamEvent]:  # pragma: no cover - abstract
        raise NotImplementedError


def _sse_data(line: str) -> str | None:
    stripped = line.strip()
    if not stripped.startswith("data:"):
        return None
    return stripped[len("data:"):].strip()


class AnthropicStreamDecoder(StreamDecoder):
    """Decoder for the Messages API event stream."""

    _STOP_REASONS = {
        "end_turn": StopReason.END,
        "stop_sequence": StopReason.END,
        "tool_use": StopReason.TOOL_REQUESTED,
        "max_tokens": StopReason.LENGTH_TRUNCATED,
    }

    def __init__(self) -> None:
        super().__init__()
        self._tool_blocks: set[int] = set()

    def decode(self, data: Mapping[str, Any]) -> list[StreamEvent]:
        event_type = data.get("type")
        index = int(data.get("index", 0) or 0)
        if event_type == "content_block_start":
            block = data.get("content_block") or {}
            if block.get("type") == "tool_use":
                self._tool_blocks.add(index)
                return [ToolFragment(index=index, id=block.get("id"), name=block.get("name"))]
            text = block.get("text")
            return [TextDelta(text)] if text else []
        if event_type == "content_block_delta":
            delta = data.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "text_delta" and delta.get("text"):
                return [TextDelta(delta["text"])]
            if delta_type == "input_json_delta":
                return [ToolFragment(index=index, arguments_delta=delta.get("partial_json") or "")]
            return []
        if event_type == "content_block_stop":
            if index in self._tool_blocks:
                self._tool_blocks.discard(index)
                return [ToolFragmentComplete(index)]
            return []
        if event_type == "message_delta":
            reason = (data.get("delta") or {}).get("stop_reason")
            if reason:
                return [StreamStop(self._STOP_REASONS.get(reason, StopReason.END))]
            return []
        if event_type == "message_stop":
            self.done = True
            return []
        if event_type == "error":
            error = data.get("error") or {}
            raise TransportError(f"API error (stream): {error.get('message') or error}")
        return []


class OpenAIStreamDecoder(StreamDecoder):
    """Decoder for chat-completions chunks.

    Tool calls arrive one index at a time, so the appearance of a new index
    terminates the previous one and a non-length finish reason terminates
    everything still open. A ``length`` finish leaves open calls incomplete.
    """

    _STOP_REASONS = {
        "stop": StopReason.END,
        "tool_calls": StopReason.TOOL_REQUESTED,
        "function_call": StopReason.TOOL_REQUESTED,
        "length": StopReason.LENGTH_TRUNCATED,
        "max_tokens": StopReason.LENGTH_TRUNCATED,
    }

    def __init__(self) -> None:
        super().__init__()
        self._open: list[int] = []
        self._seen: set[int] = set()

    def decode(self, data: Mapping[str, Any]) -> list[StreamEvent]:
        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, Mapping) else error
            raise TransportError(f"API error (stream): {message}")
        events: list[StreamEvent] = []
        for choice in data.get("choices") or ():
            delta = choice.get("delta") or {}
            content = delta.get("content")
            if content:
                events.append(TextDelta(content))
            for call in delta.get("tool_calls") or ():
                events.extend(self._tool_events(call))
            finish = choice.get("finish_reason")
            if finish:
                reason = self._STOP_REASONS.get(finish, StopReason.END)
                if reason is not StopReason.LENGTH_TRUNCATED:
                    events.extend(self._close_open())
                events.append(StreamStop(reason))
        return events

    def _tool_events(self, call: Mapping[str, Any]) -> list[StreamEvent]:
        index = int(call.get("index", 0) or 0)
        function = call.get("function") or {}
        events: list[StreamEvent] = []
        if index not in self._seen:
            events.extend(self._close_open())
            self._seen.add(index)
            self._open.append(index)
        events.append(
            ToolFragment(
                index=index,
                id=call.get("id"),
                name=function.get("name"),
                arguments_delta=function.get("arguments") or "",
            )
        )
        return events

    def _close_open(self) -> list[StreamEvent]:
        closed = [ToolFragmentComplete(index) for index in self._open]
        self._open.clear()
        return closed


# -----------------------------------------------------------------------------
# Parser with stall watchdog
# -----------------------------------------------------------------------------


class StreamEventParser:
    """Reads a stream handle under an idle watchdog and the cancellation token."""

    def __init__(self, decoder: StreamDecoder, *, idle_timeout: float = 30.0) -> None:
        self._decoder = decoder
        self._idle_timeout = idle_timeout

    async def events(
        self, handle: StreamHandle, token: CancellationToken
    ) -> AsyncIterator[StreamEvent]:
        try:
            while not self._decoder.done:
                try:
                    line = await race(handle.next_line(), token, timeout=self._idle_timeout)
                except asyncio.TimeoutError as exc:
                    handle.abort()
                    LOGGER.error(
                        "Stream %s stalled: no data for %.1fs", handle.request_id, self._idle_timeout
                    )
                    raise StreamStalledError(
                        f"Stream stalled: no data received for {self._idle_timeout:g}s. "
                        "The AI provider may have dropped the connection.",
                        idle_seconds=self._idle_timeout,
                    ) from exc
                if line is None:
                    break
                for event in self._decoder.feed(line):
                    yield event
        finally:
            handle.close()


# -----------------------------------------------------------------------------
# Tool call reassembly
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class _PendingCall:
    id: str | None = None
    name: str | None = None
    arguments: str = ""


class ToolCallAccumulator:
    """Builds tool calls keyed by fragment index, finalized only on completion."""

    def __init__(self) -> None:
        self._pending: dict[int, _PendingCall] = {}
        self._completed: list[ToolCallRequest] = []
        self._dropped = 0

    @property
    def completed(self) -> tuple[ToolCallRequest, ...]:
        return tuple(self._completed)

    @property
    def discarded_count(self) -> int:
        """Calls that were started but will never be returned."""
        return len(self._pending) + self._dropped

    def add(self, fragment: ToolFragment) -> None:
        pending = self._pending.setdefault(fragment.index, _PendingCall())
        if fragment.id:
            pending.id = fragment.id
        if fragment.name:
            pending.name = fragment.name
        pending.arguments += fragment.arguments_delta

    def complete(self, index: int) -> ToolCallRequest | None:
        pending = self._pending.pop(index, None)
        if pending is None:
            return None
        if not pending.name:
            LOGGER.warning("Dropping tool call at index %s: no tool name was streamed", index)
            self._dropped += 1
            return None
        try:
            arguments = parse_tool_arguments(pending.arguments)
        except ValueError as exc:
            LOGGER.warning("Dropping tool call %s: %s", pending.name, exc)
            self._dropped += 1
            return None
        call = ToolCallRequest(
            id=pending.id or f"call_{uuid.uuid4().hex[:12]}",
            name=pending.name,
            arguments=arguments,
        )
        self._completed.append(call)
        return call

    def finish(self) -> tuple[ToolCallRequest, ...]:
        """Discard incomplete fragments and return the completed calls."""

        for index, pending in sorted(self._pending.items()):
            LOGGER.warning(
                "Discarding incomplete tool call %s (index %s, %d argument chars)",
                pending.name or "<unnamed>",
                index,
                len(pending.arguments),
            )
        self._pending.clear()
        return self.completed


async def collect_stream(
    events: AsyncIterator[StreamEvent] | Iterable[StreamEvent],
    *,
    on_text: Any = None,
    model: str | None = None,
) -> EngineResponse:
    """Fold stream events into an :class:`EngineResponse`.

    ``on_text`` receives each text delta as it arrives. If the stream raises,
    nothing is returned; callers read partial text through ``on_text``.
    """

    accumulator = ToolCallAccumulator()
    parts: list[str] = []
    native_stop: StopReason | None = None

    def _consume(event: StreamEvent) -> None:
        nonlocal native_stop
        if isinstance(event, TextDelta):
            parts.append(event.text)
            if on_text is not None:
                on_text(event.text)
        elif isinstance(event, ToolFragment):
            accumulator.add(event)
        elif isinstance(event, ToolFragmentComplete):
            accumulator.complete(event.index)
        elif isinstance(event, StreamStop):
            native_stop = event.stop_reason
        else:  # pragma: no cover - closed union
            raise ProtocolError(f"Unknown stream event {event!r}")

    if hasattr(events, "__aiter__"):
        async for event in events:  # type: ignore[union-attr]
            _consume(event)
    else:
        for event in events:  # type: ignore[union-attr]
            _consume(event)

    discarded = accumulator.discarded_count
    tool_calls = accumulator.finish()
    return EngineResponse(
        text_content="".join(parts),
        tool_calls=tool_calls,
        stop_reason=EngineResponse.resolve_stop_reason(native_stop, tool_calls),
        model=model,
        discarded_tool_calls=discarded,
    )
