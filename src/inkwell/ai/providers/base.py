"""Provider adapter interface and tagged-union selection."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, ClassVar, Mapping

from ..ai_types import (
    EngineRequest,
    EngineResponse,
    ProviderConfig,
    ProviderKind,
    StreamEvent,
    StreamStop,
    TextDelta,
    ToolFragment,
    ToolFragmentComplete,
)
from ..errors import ProtocolError
from ..orchestration.cancellation import CancellationToken
from ..streaming import StreamDecoder, StreamEventParser
from ..transport import ProviderRoute, TransportChannel

__all__ = ["ProviderAdapter", "response_to_events", "create_adapter", "register_adapter"]

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 8_192


class ProviderAdapter(ABC):
    """Normalizes one vendor wire format into the engine's unified model.

    Subclasses provide the endpoint, the request body, the response parser
    and (when the vendor streams tool calls) a stream decoder. Transport
    failures propagate as :class:`~inkwell.ai.errors.TransportError`; bodies
    that do not match the expected shape become
    :class:`~inkwell.ai.errors.ProtocolError`. Nothing here retries.
    """

    family: ClassVar[str]
    supports_streaming: ClassVar[bool] = True

    def __init__(
        self,
        channel: TransportChannel,
        *,
        idle_timeout: float = 30.0,
        default_max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> None:
        self._channel = channel
        self._idle_timeout = idle_timeout
        self._default_max_tokens = default_max_tokens

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------
    async def send(
        self, config: ProviderConfig, request: EngineRequest, token: CancellationToken
    ) -> EngineResponse:
        route = self.route(config, stream=False)
        body = self.build_body(config, request, stream=False)
        payload = await self._channel.send(route, body, token)
        return self._parse(config, payload)

    async def stream(
        self, config: ProviderConfig, request: EngineRequest, token: CancellationToken
    ) -> AsyncIterator[StreamEvent]:
        if not self.supports_streaming:
            response = await self.send(config, request, token)
            for event in response_to_events(response):
                yield event
            return
        route = self.route(config, stream=True)
        body = self.build_body(config, request, stream=True)
        handle = await self._channel.open_stream(route, body, token)
        parser = StreamEventParser(self.create_decoder(), idle_timeout=self._idle_timeout)
        async for event in parser.events(handle, token):
            yield event

    def route(self, config: ProviderConfig, *, stream: bool) -> ProviderRoute:
        return ProviderRoute(
            family=self.family,
            url=self.endpoint(config, stream=stream),
            credential_ref=config.credential_ref,
        )

    def max_tokens(self, config: ProviderConfig, request: EngineRequest) -> int:
        return request.max_tokens or config.max_tokens or self._default_max_tokens

    # ------------------------------------------------------------------
    # Vendor hooks
    # ------------------------------------------------------------------
    @abstractmethod
    def endpoint(self, config: ProviderConfig, *, stream: bool) -> str:
        ...

    @abstractmethod
    def build_body(
        self, config: ProviderConfig, request: EngineRequest, *, stream: bool
    ) -> dict[str, Any]:
        ...

    @abstractmethod
    def parse_response(self, config: ProviderConfig, payload: Mapping[str, Any]) -> EngineResponse:
        ...

    def create_decoder(self) -> StreamDecoder:
        raise NotImplementedError(f"{type(self).__name__} does not stream")

    def _parse(self, config: ProviderConfig, payload: Any) -> EngineResponse:
        if not isinstance(payload, Mapping):
            raise ProtocolError(f"{self.family} response is not a JSON object")
        try:
            return self.parse_response(config, payload)
        except ProtocolError:
            raise
        except (KeyError, IndexError, TypeError, AttributeError, ValueError) as exc:
            raise ProtocolError(
                f"Malformed {self.family} response: {exc}",
                details={"keys": sorted(str(key) for key in payload)},
            ) from exc


def response_to_events(response: EngineResponse) -> list[StreamEvent]:
    """Replay a buffered response as stream events."""

    events: list[StreamEvent] = []
    if response.text_content:
        events.append(TextDelta(response.text_content))
    for index, call in enumerate(response.tool_calls):
        events.append(
            ToolFragment(
                index=index,
                id=call.id,
                name=call.name,
                arguments_delta=call.arguments_json(),
            )
        )
        events.append(ToolFragmentComplete(index))
    # Calls the adapter dropped stay open so the replay still reports them.
    for offset in range(response.discarded_tool_calls):
        events.append(ToolFragment(index=len(response.tool_calls) + offset))
    events.append(StreamStop(response.stop_reason))
    return events


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------

_ADAPTERS: dict[str, type[ProviderAdapter]] = {}


def register_adapter(adapter_cls: type[ProviderAdapter]) -> type[ProviderAdapter]:
    _ADAPTERS[adapter_cls.family] = adapter_cls
    return adapter_cls


def create_adapter(kind: ProviderKind, channel: TransportChannel, **kwargs: Any) -> ProviderAdapter:
    """Return the adapter implementing ``kind``'s wire family."""

    try:
        adapter_cls = _ADAPTERS[kind.family]
    except KeyError as exc:  # pragma: no cover - every family is registered on import
        raise ValueError(f"No adapter registered for {kind.value}") from exc
    return adapter_cls(channel, **kwargs)
