"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Callable, Mapping, Sequence

import httpx

from inkwell.ai.ai_types import (
    EngineRequest,
    EngineResponse,
    ProviderConfig,
    ProviderKind,
    StopReason,
    StreamEvent,
    ToolCallRequest,
    ToolDefinition,
)
from inkwell.ai.orchestration.cancellation import CancellationToken
from inkwell.ai.providers import response_to_events
from inkwell.ai.tools.base import CapabilityResult
from inkwell.ai.transport import CredentialBroker
from inkwell.services.credentials import CredentialVault


def make_config(kind: ProviderKind = ProviderKind.OPENAI, **overrides: Any) -> ProviderConfig:
    values: dict[str, Any] = {
        "id": f"{kind.value}-test",
        "provider_kind": kind,
        "model": "test-model",
        "credential_ref": "test",
    }
    values.update(overrides)
    return ProviderConfig(**values)


def text_response(text: str) -> EngineResponse:
    return EngineResponse(text_content=text, stop_reason=StopReason.END)


def tool_response(
    *calls: ToolCallRequest, text: str = "", truncated: bool = False
) -> EngineResponse:
    stop = StopReason.LENGTH_TRUNCATED if truncated else StopReason.TOOL_REQUESTED
    return EngineResponse(text_content=text, tool_calls=tuple(calls), stop_reason=stop)


def call(call_id: str, name: str, **arguments: Any) -> ToolCallRequest:
    return ToolCallRequest(id=call_id, name=name, arguments=arguments)


def sse(payload: Mapping[str, Any] | str) -> str:
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {data}\n\n"


class FakeEditor:
    """In-memory editor bridge."""

    def __init__(self, content: str = "", path: str | None = None, *, save_ok: bool = True) -> None:
        self.content = content
        self.path = path
        self.save_ok = save_ok
        self.writes: list[str] = []

    def current_file_path(self) -> str | None:
        return self.path

    def document_content(self) -> str:
        return self.content

    def replace_content(self, content: str) -> bool:
        self.content = content
        self.writes.append(content)
        return self.save_ok and self.path is not None


class ScriptedAdapter:
    """Model adapter that replays queued responses and records every request.

    A queued item may be an :class:`EngineResponse`, an exception instance to
    raise, or an async callable ``(request, token) -> EngineResponse``.
    """

    def __init__(self, *script: Any) -> None:
        self.script = list(script)
        self.requests: list[EngineRequest] = []
        self.modes: list[str] = []

    async def _next(self, request: EngineRequest, token: CancellationToken) -> EngineResponse:
        self.requests.append(request)
        if not self.script:
            raise AssertionError("ScriptedAdapter ran out of responses")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return await item(request, token)
        return item

    async def send(
        self, config: ProviderConfig, request: EngineRequest, token: CancellationToken
    ) -> EngineResponse:
        self.modes.append("send")
        return await self._next(request, token)

    async def stream(
        self, config: ProviderConfig, request: EngineRequest, token: CancellationToken
    ) -> AsyncIterator[StreamEvent]:
        self.modes.append("stream")
        item = self.script[0] if self.script else None
        if isinstance(item, list):
            # A list of events (or awaitables) is streamed verbatim.
            self.requests.append(request)
            self.script.pop(0)
            for event in item:
                if callable(event):
                    await event()
                    continue
                yield event
            return
        response = await self._next(request, token)
        for event in response_to_events(response):
            yield event


class RecordingProvider:
    """External capability provider with scripted behaviour per tool."""

    def __init__(
        self,
        name: str,
        tools: Sequence[ToolDefinition] = (),
        handlers: Mapping[str, Callable[[Mapping[str, Any]], Any]] | None = None,
    ) -> None:
        self.name = name
        self._tools = list(tools)
        self._handlers = dict(handlers or {})
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def list_tools(self) -> Sequence[ToolDefinition]:
        return list(self._tools)

    async def call_tool(self, name: str, arguments: Mapping[str, Any]) -> CapabilityResult:
        self.calls.append((name, dict(arguments)))
        handler = self._handlers.get(name)
        if handler is None:
            return CapabilityResult.ok(f"{name} ok")
        result = handler(arguments)
        if asyncio.iscoroutine(result):
            result = await result
        return result


class FailingProvider:
    name = "broken"

    def list_tools(self) -> Sequence[ToolDefinition]:
        raise RuntimeError("server offline")

    async def call_tool(self, name: str, arguments: Mapping[str, Any]) -> CapabilityResult:
        raise AssertionError("not reachable")


async def block_forever() -> None:
    await asyncio.Event().wait()


def make_broker(
    vault: CredentialVault,
    handler: Callable[[httpx.Request], Any],
    *,
    timeout: float = 5.0,
) -> CredentialBroker:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return CredentialBroker(vault, client=client, timeout=timeout)


async def stalling_body(*chunks: str) -> AsyncIterator[bytes]:
    """Response body that sends ``chunks`` and then never finishes."""

    for chunk in chunks:
        yield chunk.encode("utf-8")
    await block_forever()


async def wait_until(predicate: Callable[[], bool], *, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)
