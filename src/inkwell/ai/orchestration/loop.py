"""Orchestration loop: bounded rounds of "ask model, maybe run tools, ask again".

State machine::

    INIT -> AWAITING_MODEL -> FINAL
                           -> TOOLS_PENDING -> EXECUTING_TOOLS -> AWAITING_MODEL ...
                           -> TRUNCATED_WITH_TOOLS -> AWAITING_MODEL (continuation)
                                                   -> GIVEN_UP

Other terminal states: ``ABORTED`` (user cancelled), ``ROUND_LIMIT_REACHED``
(bounded execution), ``FAILED`` (transport/protocol error) and ``STALE``
(the request was superseded; nothing is written).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Mapping, Protocol, runtime_checkable

from ...services.settings import EngineLimits
from .. import prompts
from ..ai_types import (
    ConversationTurn,
    EngineRequest,
    EngineResponse,
    ProviderConfig,
    StreamEvent,
)
from ..errors import (
    AbortedError,
    EngineError,
    ProtocolError,
    StaleCompletionError,
    TransportError,
    TruncationExceeded,
)
from ..streaming import collect_stream
from .cancellation import CancellationToken, race
from .context import ContextManager
from .dispatcher import ToolDispatcher
from .state import ConversationState

__all__ = [
    "LoopState",
    "TERMINAL_STATES",
    "ToolCallRecord",
    "LoopOutcome",
    "ModelAdapter",
    "ContentCallback",
    "ToolCallback",
    "OrchestrationLoop",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Callback Types
# -----------------------------------------------------------------------------

# Callback invoked when streaming content is received
ContentCallback = Callable[[str], None]

# Callback invoked when a tool call is about to be executed
ToolCallback = Callable[[str, str, Mapping[str, Any]], None]


# -----------------------------------------------------------------------------
# States and outcome
# -----------------------------------------------------------------------------


class LoopState(str, Enum):
    INIT = "init"
    AWAITING_MODEL = "awaiting_model"
    FINAL = "final"
    TOOLS_PENDING = "tools_pending"
    TRUNCATED_WITH_TOOLS = "truncated_with_tools"
    EXECUTING_TOOLS = "executing_tools"
    GIVEN_UP = "given_up"
    ABORTED = "aborted"
    ROUND_LIMIT_REACHED = "round_limit_reached"
    FAILED = "failed"
    STALE = "stale"


TERMINAL_STATES = frozenset(
    {
        LoopState.FINAL,
        LoopState.GIVEN_UP,
        LoopState.ABORTED,
        LoopState.ROUND_LIMIT_REACHED,
        LoopState.FAILED,
        LoopState.STALE,
    }
)


@dataclass(slots=True, frozen=True)
class ToolCallRecord:
    call_id: str
    name: str
    arguments: Mapping[str, Any]
    result_text: str
    is_error: bool
    round: int
    duration_ms: float = 0.0
    redirected_to: str | None = None


@dataclass(slots=True, frozen=True)
class LoopOutcome:
    """Terminal result of one orchestration run.

    Attributes:
        state: Terminal :class:`LoopState`.
        content: Final (or partial) assistant text shown to the user.
        rounds: Number of model calls issued.
        continuation_attempts: Truncation retries performed.
        tool_records: Every executed tool call, in execution order.
        error: The engine error behind ``FAILED``/``GIVEN_UP`` outcomes.
        transitions: States visited, in order.
    """

    state: LoopState
    content: str = ""
    rounds: int = 0
    continuation_attempts: int = 0
    tool_records: tuple[ToolCallRecord, ...] = ()
    error: EngineError | None = None
    transitions: tuple[LoopState, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.state is LoopState.FINAL


@runtime_checkable
class ModelAdapter(Protocol):
    """What the loop needs from a provider adapter."""

    async def send(
        self, config: ProviderConfig, request: EngineRequest, token: CancellationToken
    ) -> EngineResponse:
        ...

    def stream(
        self, config: ProviderConfig, request: EngineRequest, token: CancellationToken
    ) -> AsyncIterator[StreamEvent]:
        ...


@dataclass(slots=True)
class _RunContext:
    config: ProviderConfig
    token: CancellationToken
    system_prompt: str
    content_callback: ContentCallback | None
    tool_callback: ToolCallback | None
    transitions: list[LoopState] = field(default_factory=lambda: [LoopState.INIT])
    records: list[ToolCallRecord] = field(default_factory=list)
    rounds: int = 0
    attempts: int = 0
    budget: int | None = None
    last_text: str = ""

    def enter(self, state: LoopState) -> None:
        self.transitions.append(state)

    def outcome(self, state: LoopState, content: str = "", error: EngineError | None = None) -> LoopOutcome:
        if self.transitions[-1] is not state:
            self.transitions.append(state)
        return LoopOutcome(
            state=state,
            content=content,
            rounds=self.rounds,
            continuation_attempts=self.attempts,
            tool_records=tuple(self.records),
            error=error,
            transitions=tuple(self.transitions),
        )


# -----------------------------------------------------------------------------
# Loop
# -----------------------------------------------------------------------------


class OrchestrationLoop:
    """Drives one user turn to a terminal :class:`LoopState`.

    The loop is the single writer of :class:`ConversationState`; every write
    is tagged with the run's token so a superseded run writes nothing.
    """

    def __init__(
        self,
        adapter: ModelAdapter,
        dispatcher: ToolDispatcher,
        state: ConversationState,
        *,
        context: ContextManager | None = None,
        limits: EngineLimits | None = None,
    ) -> None:
        self._adapter = adapter
        self._dispatcher = dispatcher
        self._state = state
        self._limits = limits or EngineLimits()
        self._context = context or ContextManager(self._limits)

    @property
    def limits(self) -> EngineLimits:
        return self._limits

    async def run(
        self,
        config: ProviderConfig,
        user_turn: ConversationTurn,
        token: CancellationToken,
        *,
        system_prompt: str = "",
        content_callback: ContentCallback | None = None,
        tool_callback: ToolCallback | None = None,
    ) -> LoopOutcome:
        """Process ``user_turn`` under ``token`` until a terminal state."""

        ctx = _RunContext(
            config=config,
            token=token,
            system_prompt=system_prompt,
            content_callback=content_callback,
            tool_callback=tool_callback,
        )
        coordinator = self._state.coordinator
        if not self._state.begin_turn(token, user_turn):
            return ctx.outcome(LoopState.STALE, error=StaleCompletionError(generation=token.generation))
        try:
            return await self._run_rounds(ctx)
        except (AbortedError, StaleCompletionError) as exc:
            if not coordinator.is_current(token):
                LOGGER.debug("Generation %s finished after being superseded", token.generation)
                return ctx.outcome(LoopState.STALE, error=StaleCompletionError(generation=token.generation))
            self._state.interrupt(token)
            return ctx.outcome(LoopState.ABORTED, self._state.interrupted_content, error=exc)
        except (TransportError, ProtocolError) as exc:
            LOGGER.error("Round %d failed: %s", ctx.rounds, exc.message)
            return ctx.outcome(LoopState.FAILED, self._preserve_partial(token, exc), error=exc)
        except Exception as exc:
            LOGGER.exception("Orchestration failed in round %d", ctx.rounds)
            error = EngineError(str(exc) or type(exc).__name__)
            return ctx.outcome(LoopState.FAILED, self._preserve_partial(token, error), error=error)
        finally:
            coordinator.retire(token)

    async def _run_rounds(self, ctx: _RunContext) -> LoopOutcome:
        tools = self._dispatcher.tools
        continuation_pending = False

        while ctx.rounds < self._limits.max_rounds:
            ctx.rounds += 1
            ctx.enter(LoopState.AWAITING_MODEL)
            request = self._build_request(ctx)
            stream = self._limits.streaming_enabled and ctx.rounds == 1 and not continuation_pending
            LOGGER.info(
                "Round %d/%d: %d turns, %d tools, %s",
                ctx.rounds,
                self._limits.max_rounds,
                len(request.turns),
                len(tools),
                "streaming" if stream else "buffered",
            )
            response = await self._call_model(ctx, request, stream=stream)
            self._ensure_current(ctx.token)
            ctx.last_text = response.text_content or ctx.last_text
            LOGGER.info(
                "Round %d response: stop=%s, tool_calls=%d, text=%d chars",
                ctx.rounds,
                response.stop_reason.value,
                len(response.tool_calls),
                len(response.text_content),
            )

            if response.truncated_with_tools:
                ctx.enter(LoopState.TRUNCATED_WITH_TOOLS)
                if ctx.attempts >= self._limits.max_truncation_retries:
                    return self._give_up(ctx, response)
                self._request_continuation(ctx, response)
                continuation_pending = True
                continue

            if response.tool_calls:
                ctx.enter(LoopState.TOOLS_PENDING)
                self._state.append(
                    ctx.token, ConversationTurn.assistant(response.text_content, response.tool_calls)
                )
                await self._execute_tools(ctx, response)
                continuation_pending = False
                continue

            ctx.enter(LoopState.FINAL)
            content = response.text_content
            if content:
                self._state.append(ctx.token, ConversationTurn.assistant(content))
            self._state.finish(ctx.token, response=content)
            return ctx.outcome(LoopState.FINAL, content)

        LOGGER.warning("Reached the round limit (%d) without a final answer", self._limits.max_rounds)
        self._state.finish(ctx.token, response=ctx.last_text)
        return ctx.outcome(LoopState.ROUND_LIMIT_REACHED, ctx.last_text)

    # ------------------------------------------------------------------
    # Model calls
    # ------------------------------------------------------------------
    def _build_request(self, ctx: _RunContext) -> EngineRequest:
        turns = self._context.prepare(self._state.history)
        if ctx.system_prompt:
            turns = [ConversationTurn.system(ctx.system_prompt), *turns]
        return EngineRequest(
            turns=tuple(turns),
            tools=self._dispatcher.tools.definitions,
            max_tokens=ctx.budget,
        )

    async def _call_model(
        self, ctx: _RunContext, request: EngineRequest, *, stream: bool
    ) -> EngineResponse:
        token = ctx.token
        self._state.clear_stream(token)
        if not stream:
            response = await race(self._adapter.send(ctx.config, request, token), token)
            if response.text_content and ctx.content_callback is not None:
                ctx.content_callback(response.text_content)
            return response

        def on_text(text: str) -> None:
            self._state.append_stream(token, text)
            if ctx.content_callback is not None:
                ctx.content_callback(text)

        events = self._adapter.stream(ctx.config, request, token)
        response = await race(collect_stream(events, on_text=on_text, model=ctx.config.model), token)
        self._state.clear_stream(token)
        return response

    def _ensure_current(self, token: CancellationToken) -> None:
        if not self._state.coordinator.is_current(token):
            raise StaleCompletionError(generation=token.generation)
        token.raise_if_cancelled()

    # ------------------------------------------------------------------
    # Truncation handling
    # ------------------------------------------------------------------
    def _request_continuation(self, ctx: _RunContext, response: EngineResponse) -> None:
        ctx.attempts += 1
        base = ctx.budget or ctx.config.max_tokens or self._limits.default_max_tokens
        ctx.budget = min(
            self._limits.max_tokens_ceiling,
            int(base * self._limits.continuation_budget_multiplier),
        )
        LOGGER.warning(
            "Tool call truncated by the output limit; continuation attempt %d/%d with max_tokens=%d",
            ctx.attempts,
            self._limits.max_truncation_retries,
            ctx.budget,
        )
        turns: list[ConversationTurn] = []
        if response.text_content:
            turns.append(ConversationTurn.assistant(response.text_content, truncated=True))
        turns.append(
            ConversationTurn.user(prompts.continuation_instruction(ctx.attempts), continuation=True)
        )
        self._state.append(ctx.token, *turns)

    def _give_up(self, ctx: _RunContext, response: EngineResponse) -> LoopOutcome:
        notice = prompts.truncation_notice(ctx.attempts + 1)
        content = (response.text_content or ctx.last_text) + notice
        LOGGER.warning("Giving up after %d continuation attempts", ctx.attempts)
        self._state.append(ctx.token, ConversationTurn.assistant(content, truncated=True))
        self._state.finish(ctx.token, response=content)
        error = TruncationExceeded(
            f"Tool call still truncated after {ctx.attempts} continuation attempts",
            attempts=ctx.attempts,
        )
        return ctx.outcome(LoopState.GIVEN_UP, content, error=error)

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------
    async def _execute_tools(self, ctx: _RunContext, response: EngineResponse) -> None:
        ctx.enter(LoopState.EXECUTING_TOOLS)
        for call in response.tool_calls:
            if ctx.tool_callback is not None:
                ctx.tool_callback(call.id, call.name, call.arguments)
            LOGGER.info("Calling tool %s (%s)", call.name, call.id)
            result = await self._dispatcher.execute(call, ctx.token)
            self._ensure_current(ctx.token)
            self._state.append(
                ctx.token,
                ConversationTurn.tool(
                    result.result_text, call.id, call.name, is_error=result.is_error
                ),
            )
            ctx.records.append(
                ToolCallRecord(
                    call_id=call.id,
                    name=call.name,
                    arguments=call.arguments,
                    result_text=result.result_text,
                    is_error=result.is_error,
                    round=ctx.rounds,
                    duration_ms=result.duration_ms,
                    redirected_to=result.redirected_to,
                )
            )

    def _preserve_partial(self, token: CancellationToken, error: EngineError) -> str:
        partial = self._state.streaming_content
        if partial:
            self._state.append(token, ConversationTurn.assistant(partial, partial=True))
        self._state.finish(token, response=partial, error=error.message)
        return partial
