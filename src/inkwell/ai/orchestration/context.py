"""Outbound context preparation.

:class:`ContextManager` turns the stored conversation history into the list
of turns sent with the next model call. It never rewrites history: every
trimmed turn is a copy. The passes run in a fixed order and the whole
transformation is idempotent, so preparing an already-prepared window
returns it unchanged.
"""

from __future__ import annotations

import logging
from typing import Sequence

from ...services.settings import EngineLimits
from ..ai_types import ConversationTurn, ToolCallRequest

__all__ = ["ContextManager", "TOOL_RESULT_MARKER", "ARGUMENTS_MARKER_KEY", "is_continuation_turn"]

LOGGER = logging.getLogger(__name__)

TOOL_RESULT_MARKER = "\n\n[... older tool result truncated ...]"
ARGUMENTS_MARKER_KEY = "_truncated"


def is_continuation_turn(turn: ConversationTurn) -> bool:
    """Synthetic user turns inserted by the loop carry ``metadata["continuation"]``."""

    return turn.role == "user" and bool(turn.metadata.get("continuation"))


class ContextManager:
    """Bounds history and repairs ordering before each model call."""

    def __init__(self, limits: EngineLimits | None = None) -> None:
        self._limits = limits or EngineLimits()

    def prepare(self, history: Sequence[ConversationTurn]) -> list[ConversationTurn]:
        system = [turn for turn in history if turn.role == "system"]
        turns = [turn for turn in history if turn.role != "system"]

        window = self._window(turns)
        window = self._drop_leading_non_user(window)
        window = self._drop_orphan_tool_turns(window)
        window = self._drop_unanswered_tool_calls(window)
        window = self._truncate_older_tool_results(window)
        window = self._truncate_older_arguments(window)
        window = self._strip_older_images(window)

        if len(window) != len(turns):
            LOGGER.debug("Context window: %d of %d turns retained", len(window), len(turns))
        return system + window

    # ------------------------------------------------------------------
    # Window
    # ------------------------------------------------------------------
    def _window(self, turns: list[ConversationTurn]) -> list[ConversationTurn]:
        limit = self._limits.history_window
        start = max(0, len(turns) - limit)
        anchor = _current_user_index(turns)
        if anchor is not None and anchor < start:
            start = anchor
        return turns[start:]

    @staticmethod
    def _drop_leading_non_user(turns: list[ConversationTurn]) -> list[ConversationTurn]:
        for index, turn in enumerate(turns):
            if turn.role == "user":
                return turns[index:]
        return turns

    # ------------------------------------------------------------------
    # Ordering repair
    # ------------------------------------------------------------------
    @staticmethod
    def _drop_orphan_tool_turns(turns: list[ConversationTurn]) -> list[ConversationTurn]:
        seen_ids: set[str] = set()
        kept: list[ConversationTurn] = []
        for turn in turns:
            if turn.role == "assistant":
                seen_ids.update(call.id for call in turn.tool_calls)
            elif turn.role == "tool" and turn.tool_call_id not in seen_ids:
                LOGGER.debug("Dropping orphan tool turn %s", turn.tool_call_id)
                continue
            kept.append(turn)
        return kept

    @staticmethod
    def _drop_unanswered_tool_calls(turns: list[ConversationTurn]) -> list[ConversationTurn]:
        answered = {turn.tool_call_id for turn in turns if turn.role == "tool"}
        kept: list[ConversationTurn] = []
        for turn in turns:
            if turn.role == "assistant" and turn.tool_calls:
                calls = [call for call in turn.tool_calls if call.id in answered]
                if len(calls) != len(turn.tool_calls):
                    if not calls and not turn.content:
                        continue
                    turn = turn.with_tool_calls(calls)
            kept.append(turn)
        return kept

    # ------------------------------------------------------------------
    # Payload bounds
    # ------------------------------------------------------------------
    def _truncate_older_tool_results(self, turns: list[ConversationTurn]) -> list[ConversationTurn]:
        ceiling = self._limits.prior_tool_result_max_chars
        tool_indices = [index for index, turn in enumerate(turns) if turn.role == "tool"]
        result = list(turns)
        for index in tool_indices[:-1]:
            turn = result[index]
            if len(turn.content) > ceiling:
                keep = max(0, ceiling - len(TOOL_RESULT_MARKER))
                result[index] = turn.with_content(turn.content[:keep] + TOOL_RESULT_MARKER)
        return result

    def _truncate_older_arguments(self, turns: list[ConversationTurn]) -> list[ConversationTurn]:
        ceiling = self._limits.prior_tool_arguments_max_chars
        rounds = [index for index, turn in enumerate(turns) if turn.role == "assistant" and turn.tool_calls]
        result = list(turns)
        for index in rounds[:-1]:
            turn = result[index]
            calls = [_shrink_arguments(call, ceiling) for call in turn.tool_calls]
            if any(new is not old for new, old in zip(calls, turn.tool_calls)):
                result[index] = turn.with_tool_calls(calls)
        return result

    def _strip_older_images(self, turns: list[ConversationTurn]) -> list[ConversationTurn]:
        keep = self._limits.image_turns_kept
        with_images = [index for index, turn in enumerate(turns) if turn.has_images]
        stripped = with_images[: max(0, len(with_images) - keep)]
        result = list(turns)
        for index in stripped:
            result[index] = result[index].with_attachments(())
        return result


def _current_user_index(turns: Sequence[ConversationTurn]) -> int | None:
    for index in range(len(turns) - 1, -1, -1):
        turn = turns[index]
        if turn.role == "user" and not is_continuation_turn(turn):
            return index
    return None


def _shrink_arguments(call: ToolCallRequest, ceiling: int) -> ToolCallRequest:
    if call.arguments.get(ARGUMENTS_MARKER_KEY) is True:
        return call
    size = len(call.arguments_json())
    if size <= ceiling:
        return call
    return call.with_arguments(
        {
            ARGUMENTS_MARKER_KEY: True,
            "original_chars": size,
            "note": "Arguments from an earlier round were omitted to save space.",
        }
    )
