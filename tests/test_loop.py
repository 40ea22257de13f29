"""Tests for the orchestration loop state machine."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from inkwell.ai.ai_types import ConversationTurn, StopReason, StreamStop, TextDelta, ToolDefinition, ToolFragment
from inkwell.ai.errors import StreamStalledError, TransportError, TruncationExceeded
from inkwell.ai.orchestration.cancellation import CancellationCoordinator
from inkwell.ai.orchestration.dispatcher import ToolDispatcher
from inkwell.ai.orchestration.loop import TERMINAL_STATES, LoopState, OrchestrationLoop
from inkwell.ai.orchestration.state import ConversationState
from inkwell.ai.providers import OpenAICompatibleAdapter
from inkwell.ai.tools import CapabilityCatalog
from inkwell.ai.transport import TransportChannel
from inkwell.services.credentials import CredentialVault
from inkwell.services.settings import EngineLimits

from helpers import (
    RecordingProvider,
    ScriptedAdapter,
    block_forever,
    call,
    make_broker,
    make_config,
    sse,
    stalling_body,
    text_response,
    tool_response,
    wait_until,
)

_TOOLS = (
    ToolDefinition(name="read_file", description="Read a file"),
    ToolDefinition(name="search", description="Search notes"),
    ToolDefinition(name="write_file", description="Write a file"),
)


def _loop(
    adapter,
    state: ConversationState,
    *,
    provider: RecordingProvider | None = None,
    limits: EngineLimits | None = None,
) -> OrchestrationLoop:
    catalog = CapabilityCatalog()
    catalog.add_provider(provider or RecordingProvider("files", _TOOLS))
    dispatcher = ToolDispatcher(catalog.snapshot(), timeout_seconds=5.0)
    return OrchestrationLoop(adapter, dispatcher, state, limits=limits or EngineLimits())


# =============================================================================
# Happy paths
# =============================================================================


class TestCompletion:
    @pytest.mark.asyncio
    async def test_plain_answer(self, state: ConversationState, coordinator: CancellationCoordinator) -> None:
        adapter = ScriptedAdapter(text_response("Hello there"))
        streamed: list[str] = []

        outcome = await _loop(adapter, state).run(
            make_config(), ConversationTurn.user("hi"), coordinator.begin(), content_callback=streamed.append
        )

        assert outcome.state is LoopState.FINAL
        assert outcome.succeeded
        assert outcome.content == "Hello there"
        assert streamed == ["Hello there"]
        assert outcome.transitions == (LoopState.INIT, LoopState.AWAITING_MODEL, LoopState.FINAL)
        assert [turn.role for turn in state.history] == ["user", "assistant"]
        assert not state.is_loading
        assert state.last_response == "Hello there"
        assert coordinator.current is None

    @pytest.mark.asyncio
    async def test_two_tools_run_in_order_then_final(
        self, state: ConversationState, coordinator: CancellationCoordinator
    ) -> None:
        provider = RecordingProvider("files", _TOOLS)
        adapter = ScriptedAdapter(
            tool_response(call("a", "read_file", path="notes.md"), call("b", "search", query="plot")),
            text_response("Done"),
        )
        notices: list[str] = []

        outcome = await _loop(adapter, state, provider=provider).run(
            make_config(),
            ConversationTurn.user("check my notes"),
            coordinator.begin(),
            system_prompt="Be brief.",
            tool_callback=lambda call_id, name, arguments: notices.append(name),
        )

        assert outcome.state is LoopState.FINAL
        assert outcome.content == "Done"
        assert [name for name, _ in provider.calls] == ["read_file", "search"]
        assert notices == ["read_file", "search"]
        assert [record.call_id for record in outcome.tool_records] == ["a", "b"]
        assert adapter.modes == ["stream", "send"]
        assert outcome.transitions == (
            LoopState.INIT,
            LoopState.AWAITING_MODEL,
            LoopState.TOOLS_PENDING,
            LoopState.EXECUTING_TOOLS,
            LoopState.AWAITING_MODEL,
            LoopState.FINAL,
        )
        second = adapter.requests[1]
        assert second.turns[0].role == "system"
        assert [turn.role for turn in second.turns[-3:]] == ["assistant", "tool", "tool"]
        assert [turn.role for turn in state.history] == ["user", "assistant", "tool", "tool", "assistant"]

    @pytest.mark.asyncio
    async def test_streaming_disabled_uses_buffered_calls(
        self, state: ConversationState, coordinator: CancellationCoordinator
    ) -> None:
        adapter = ScriptedAdapter(text_response("ok"))

        await _loop(adapter, state, limits=EngineLimits(streaming_enabled=False)).run(
            make_config(), ConversationTurn.user("hi"), coordinator.begin()
        )

        assert adapter.modes == ["send"]

    @pytest.mark.asyncio
    async def test_tool_error_is_fed_back(self, state: ConversationState, coordinator: CancellationCoordinator) -> None:
        adapter = ScriptedAdapter(tool_response(call("a", "unknown_tool")), text_response("Sorry"))

        outcome = await _loop(adapter, state).run(make_config(), ConversationTurn.user("go"), coordinator.begin())

        assert outcome.state is LoopState.FINAL
        tool_turn = state.history[2]
        assert tool_turn.is_error
        assert tool_turn.content == "Error: Unknown tool: unknown_tool"


# =============================================================================
# Truncation
# =============================================================================


class TestTruncation:
    @pytest.mark.asyncio
    async def test_truncated_tool_call_triggers_continuation(
        self, state: ConversationState, coordinator: CancellationCoordinator
    ) -> None:
        provider = RecordingProvider("files", _TOOLS)
        adapter = ScriptedAdapter(
            tool_response(call("a", "write_file", path="x.md", content="draft"), truncated=True),
            tool_response(call("b", "write_file", path="x.md", content="full draft")),
            text_response("Written"),
        )

        outcome = await _loop(adapter, state, provider=provider).run(
            make_config(), ConversationTurn.user("write it"), coordinator.begin()
        )

        assert outcome.state is LoopState.FINAL
        assert outcome.continuation_attempts == 1
        # The truncated call never ran; the re-issued one did.
        assert provider.calls == [("write_file", {"path": "x.md", "content": "full draft"})]
        retry = adapter.requests[1]
        assert retry.max_tokens == 16_384
        assert retry.turns[-1].metadata["continuation"] is True
        assert "continuation attempt 1" in retry.turns[-1].content
        assert LoopState.TRUNCATED_WITH_TOOLS in outcome.transitions
        assert adapter.modes == ["stream", "send", "send"]

    @pytest.mark.asyncio
    async def test_incomplete_streamed_call_counts_as_truncated(
        self, state: ConversationState, coordinator: CancellationCoordinator
    ) -> None:
        adapter = ScriptedAdapter(
            [
                TextDelta("Drafting. "),
                ToolFragment(index=0, id="a", name="write_file", arguments_delta='{"content": "long'),
                StreamStop(StopReason.LENGTH_TRUNCATED),
            ],
            text_response("Short answer"),
        )

        outcome = await _loop(adapter, state).run(make_config(), ConversationTurn.user("write"), coordinator.begin())

        assert outcome.state is LoopState.FINAL
        assert outcome.continuation_attempts == 1
        assert state.history[1].content == "Drafting. "
        assert state.history[1].metadata["truncated"] is True

    @pytest.mark.asyncio
    async def test_cut_off_arguments_in_buffered_round_count_as_truncated(
        self, vault: CredentialVault, state: ConversationState, coordinator: CancellationCoordinator
    ) -> None:
        def tool_payload(call_id: str, name: str, arguments: str, finish: str) -> dict:
            return {
                "choices": [
                    {
                        "message": {
                            "content": None,
                            "tool_calls": [
                                {"id": call_id, "type": "function", "function": {"name": name, "arguments": arguments}}
                            ],
                        },
                        "finish_reason": finish,
                    }
                ]
            }

        payloads = [
            tool_payload("a", "read_file", '{"path": "a"}', "tool_calls"),
            tool_payload("b", "write_file", '{"path": "a", "content": "long te', "length"),
            tool_payload("c", "write_file", '{"path": "a", "content": "long text"}', "tool_calls"),
            {"choices": [{"message": {"content": "Saved"}, "finish_reason": "stop"}]},
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=payloads.pop(0))

        provider = RecordingProvider("files", _TOOLS)
        adapter = OpenAICompatibleAdapter(TransportChannel(make_broker(vault, handler)))

        outcome = await _loop(adapter, state, provider=provider, limits=EngineLimits(streaming_enabled=False)).run(
            make_config(), ConversationTurn.user("save it"), coordinator.begin()
        )

        assert outcome.state is LoopState.FINAL
        assert outcome.content == "Saved"
        assert outcome.continuation_attempts == 1
        assert provider.calls == [("read_file", {"path": "a"}), ("write_file", {"path": "a", "content": "long text"})]
        assert LoopState.TRUNCATED_WITH_TOOLS in outcome.transitions

    @pytest.mark.asyncio
    async def test_gives_up_after_retry_ceiling(
        self, state: ConversationState, coordinator: CancellationCoordinator
    ) -> None:
        truncated = tool_response(call("a", "write_file", content="..."), text="Here is the draft", truncated=True)
        adapter = ScriptedAdapter(truncated, truncated, truncated)

        outcome = await _loop(adapter, state).run(make_config(), ConversationTurn.user("write"), coordinator.begin())

        assert outcome.state is LoopState.GIVEN_UP
        assert outcome.content.startswith("Here is the draft")
        assert "cut off by the model's output limit 3 time(s)" in outcome.content
        assert isinstance(outcome.error, TruncationExceeded)
        assert outcome.error.attempts == 2
        assert outcome.rounds == 3
        assert [request.max_tokens for request in adapter.requests] == [None, 16_384, 32_768]
        assert state.error is None
        assert not state.is_loading

    @pytest.mark.asyncio
    async def test_length_without_tools_is_final(
        self, state: ConversationState, coordinator: CancellationCoordinator
    ) -> None:
        adapter = ScriptedAdapter(
            [TextDelta("A long essay"), StreamStop(StopReason.LENGTH_TRUNCATED)],
        )

        outcome = await _loop(adapter, state).run(make_config(), ConversationTurn.user("essay"), coordinator.begin())

        assert outcome.state is LoopState.FINAL
        assert outcome.content == "A long essay"


# =============================================================================
# Bounds and failures
# =============================================================================


@pytest.mark.asyncio
async def test_round_limit(state: ConversationState, coordinator: CancellationCoordinator) -> None:
    adapter = ScriptedAdapter(*(tool_response(call(f"c{index}", "read_file"), text=f"step {index}") for index in range(3)))

    outcome = await _loop(adapter, state, limits=EngineLimits(max_rounds=3)).run(
        make_config(), ConversationTurn.user("loop"), coordinator.begin()
    )

    assert outcome.state is LoopState.ROUND_LIMIT_REACHED
    assert outcome.rounds == 3
    assert outcome.content == "step 2"
    assert len(outcome.tool_records) == 3
    assert not state.is_loading


@pytest.mark.asyncio
async def test_transport_error_fails_the_turn(state: ConversationState, coordinator: CancellationCoordinator) -> None:
    adapter = ScriptedAdapter(TransportError("API error (500): boom", status_code=500))

    outcome = await _loop(adapter, state).run(make_config(), ConversationTurn.user("hi"), coordinator.begin())

    assert outcome.state is LoopState.FAILED
    assert state.error == "API error (500): boom"
    assert outcome.state in TERMINAL_STATES


@pytest.mark.asyncio
async def test_stalled_stream_keeps_partial_text(
    vault: CredentialVault, state: ConversationState, coordinator: CancellationCoordinator
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=stalling_body(sse({"choices": [{"delta": {"content": "Half a sent"}}]})))

    broker = make_broker(vault, handler)
    adapter = OpenAICompatibleAdapter(TransportChannel(broker), idle_timeout=0.05)

    outcome = await _loop(adapter, state).run(make_config(), ConversationTurn.user("hi"), coordinator.begin())

    assert outcome.state is LoopState.FAILED
    assert isinstance(outcome.error, StreamStalledError)
    assert outcome.content == "Half a sent"
    assert state.history[-1].content == "Half a sent"
    assert state.history[-1].metadata["partial"] is True
    assert "Stream stalled" in (state.error or "")
    assert broker.inflight == ()


# =============================================================================
# Cancellation
# =============================================================================


class TestCancellation:
    @pytest.mark.asyncio
    async def test_abort_mid_stream_keeps_partial_content(
        self, state: ConversationState, coordinator: CancellationCoordinator
    ) -> None:
        adapter = ScriptedAdapter([TextDelta("Once upon"), block_forever])
        token = coordinator.begin()
        task = asyncio.create_task(_loop(adapter, state).run(make_config(), ConversationTurn.user("story"), token))
        await wait_until(lambda: state.streaming_content == "Once upon")

        coordinator.abort()
        outcome = await asyncio.wait_for(task, 1.0)

        assert outcome.state is LoopState.ABORTED
        assert outcome.content == "Once upon"
        assert outcome.error is not None and outcome.error.error_code == "aborted"
        assert state.interrupted
        assert state.error is None
        assert state.history[-1].metadata["interrupted"] is True

    @pytest.mark.asyncio
    async def test_abort_during_tool_execution(
        self, state: ConversationState, coordinator: CancellationCoordinator
    ) -> None:
        provider = RecordingProvider("files", _TOOLS, {"search": lambda arguments: block_forever()})
        adapter = ScriptedAdapter(tool_response(call("a", "search")))
        token = coordinator.begin()
        task = asyncio.create_task(
            _loop(adapter, state, provider=provider).run(make_config(), ConversationTurn.user("find"), token)
        )
        await wait_until(lambda: bool(provider.calls))

        coordinator.abort()
        outcome = await asyncio.wait_for(task, 1.0)

        assert outcome.state is LoopState.ABORTED
        assert outcome.tool_records == ()
        assert [turn.role for turn in state.history] == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_superseded_run_writes_nothing(
        self, state: ConversationState, coordinator: CancellationCoordinator
    ) -> None:
        gate = asyncio.Event()

        async def slow(request, token):
            await gate.wait()
            return text_response("late answer")

        first = ScriptedAdapter(slow)
        task = asyncio.create_task(
            _loop(first, state, limits=EngineLimits(streaming_enabled=False)).run(
                make_config(), ConversationTurn.user("first"), coordinator.begin()
            )
        )
        await wait_until(lambda: bool(first.requests))

        second_token = coordinator.begin()
        gate.set()
        stale = await asyncio.wait_for(task, 1.0)
        fresh = await _loop(ScriptedAdapter(text_response("fresh answer")), state).run(
            make_config(), ConversationTurn.user("second"), second_token
        )

        assert stale.state is LoopState.STALE
        assert fresh.state is LoopState.FINAL
        assert [turn.content for turn in state.history] == ["first", "second", "fresh answer"]
        assert state.last_response == "fresh answer"

    @pytest.mark.asyncio
    async def test_stale_token_is_rejected_up_front(
        self, state: ConversationState, coordinator: CancellationCoordinator
    ) -> None:
        old = coordinator.begin()
        coordinator.begin()
        adapter = ScriptedAdapter(text_response("never"))

        outcome = await _loop(adapter, state).run(make_config(), ConversationTurn.user("hi"), old)

        assert outcome.state is LoopState.STALE
        assert adapter.requests == []
        assert state.history == ()
