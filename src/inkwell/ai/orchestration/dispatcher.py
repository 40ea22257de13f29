"""Tool dispatch for model-requested calls.

Routes each :class:`~inkwell.ai.ai_types.ToolCallRequest` to an in-process
capability or to the external provider that advertised it. External calls
race the turn's cancellation token and a per-call timeout. Writes aimed at
the document open in the editor are redirected to the in-process editor
capability so the editor stays the single writer of that file.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from ..ai_types import ToolCallRequest
from ..errors import AbortedError, ErrorCode, ToolExecutionError
from ..tools.base import Capability, CapabilityResult, ToolSet
from ..tools.internal import UPDATE_EDITOR_CONTENT, EditorBridge, editor_capabilities, same_path
from .cancellation import CancellationToken, race

__all__ = ["ToolOutcome", "ToolDispatcher", "truncate_result", "apply_text_edits", "FILE_WRITE_TOOLS"]

LOGGER = logging.getLogger(__name__)

FILE_WRITE_TOOLS = frozenset({"write_file", "edit_file"})


# -----------------------------------------------------------------------------
# Outcome
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolOutcome:
    """Result text fed back to the model as a tool turn."""

    result_text: str
    is_error: bool = False
    redirected_to: str | None = None
    duration_ms: float = 0.0

    @classmethod
    def from_result(
        cls, result: CapabilityResult, *, redirected_to: str | None = None
    ) -> "ToolOutcome":
        return cls(result_text=result.text, is_error=result.is_error, redirected_to=redirected_to)


def truncate_result(text: str, limit: int) -> str:
    """Cut ``text`` so the result including the marker is at most ``limit`` chars."""

    if len(text) <= limit:
        return text
    marker = f"\n\n[truncated: {len(text)} chars total, showing first part]"
    keep = max(0, limit - len(marker))
    return text[:keep] + marker


# -----------------------------------------------------------------------------
# Dispatcher
# -----------------------------------------------------------------------------


class ToolDispatcher:
    """Executes tool calls for one request against a fixed :class:`ToolSet`."""

    def __init__(
        self,
        tools: ToolSet,
        *,
        editor: EditorBridge | None = None,
        timeout_seconds: float = 20.0,
        max_result_chars: int = 50_000,
    ) -> None:
        self._tools = tools
        self._editor = editor
        self._timeout = timeout_seconds
        self._max_result_chars = max_result_chars
        self._editor_writer = self._resolve_editor_writer()

    @property
    def tools(self) -> ToolSet:
        return self._tools

    async def execute(self, call: ToolCallRequest, token: CancellationToken) -> ToolOutcome:
        """Run ``call``; failures come back as ``is_error`` outcomes.

        Raises:
            AbortedError: the token was cancelled before the call finished.
        """

        token.raise_if_cancelled()
        start = time.perf_counter()
        try:
            outcome = await self._dispatch(call, token)
        except AbortedError:
            LOGGER.info("Tool %s interrupted by abort", call.name)
            raise
        except ToolExecutionError as exc:
            LOGGER.warning("Tool %s failed: %s", call.name, exc.message)
            outcome = ToolOutcome(result_text=f"Error: {exc.message}", is_error=True)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            LOGGER.warning("Tool %s raised: %s", call.name, message)
            outcome = ToolOutcome(result_text=f"Error: {message}", is_error=True)

        duration_ms = (time.perf_counter() - start) * 1000
        text = truncate_result(outcome.result_text, self._max_result_chars)
        LOGGER.debug(
            "Tool %s result: %s, %d chars in %.1fms",
            call.name,
            "ERROR" if outcome.is_error else "OK",
            len(outcome.result_text),
            duration_ms,
        )
        return ToolOutcome(
            result_text=text,
            is_error=outcome.is_error,
            redirected_to=outcome.redirected_to,
            duration_ms=duration_ms,
        )

    async def _dispatch(self, call: ToolCallRequest, token: CancellationToken) -> ToolOutcome:
        target = self._open_document_target(call)
        if target is not None:
            return await self._redirect_to_editor(call, *target)

        capability = self._tools.internal.get(call.name)
        if capability is not None:
            return ToolOutcome.from_result(await self._invoke_internal(capability, call.arguments))

        provider = self._tools.external.get(call.name)
        if provider is None:
            raise ToolExecutionError(
                f"Unknown tool: {call.name}",
                error_code=ErrorCode.TOOL_NOT_FOUND,
                tool_name=call.name,
            )
        try:
            result = await race(
                provider.call_tool(call.name, dict(call.arguments)), token, timeout=self._timeout
            )
        except asyncio.TimeoutError as exc:
            raise ToolExecutionError(
                f"Tool {call.name} timed out after {self._timeout:g}s",
                error_code=ErrorCode.TOOL_TIMEOUT,
                tool_name=call.name,
            ) from exc
        if not isinstance(result, CapabilityResult):
            result = CapabilityResult.ok(str(result))
        return ToolOutcome.from_result(result)

    async def _invoke_internal(
        self, capability: Capability, arguments: Mapping[str, Any]
    ) -> CapabilityResult:
        violation = capability.validate(arguments)
        if violation is not None:
            raise ToolExecutionError(
                f"Invalid arguments for {capability.name}: {violation}",
                error_code=ErrorCode.INVALID_ARGUMENTS,
                tool_name=capability.name,
            )
        return await capability.invoke(arguments)

    # ------------------------------------------------------------------
    # Open-document redirect
    # ------------------------------------------------------------------
    def _resolve_editor_writer(self) -> Capability | None:
        capability = self._tools.internal.get(UPDATE_EDITOR_CONTENT)
        if capability is not None:
            return capability
        if self._editor is None:
            return None
        for candidate in editor_capabilities(self._editor):
            if candidate.name == UPDATE_EDITOR_CONTENT:
                return candidate
        return None  # pragma: no cover - editor_capabilities always provides it

    def _open_document_target(self, call: ToolCallRequest) -> tuple[EditorBridge, Capability] | None:
        """Editor and writer to use when ``call`` writes the file open in the editor."""

        editor, writer = self._editor, self._editor_writer
        if call.name not in FILE_WRITE_TOOLS or editor is None or writer is None:
            return None
        path = call.arguments.get("path")
        if isinstance(path, str) and same_path(path, editor.current_file_path()):
            return editor, writer
        return None

    async def _redirect_to_editor(
        self, call: ToolCallRequest, editor: EditorBridge, writer: Capability
    ) -> ToolOutcome:
        LOGGER.info("Redirecting %s on the open document to %s", call.name, UPDATE_EDITOR_CONTENT)
        if call.name == "write_file":
            content = call.arguments.get("content")
        else:
            content = apply_text_edits(editor.document_content(), call.arguments.get("edits"))
        result = await self._invoke_internal(writer, {"content": content})
        return ToolOutcome.from_result(result, redirected_to=UPDATE_EDITOR_CONTENT)


def apply_text_edits(document: str, edits: Any) -> str:
    """Apply ``[{"oldText": ..., "newText": ...}]`` edits in order."""

    if not isinstance(edits, Sequence) or isinstance(edits, (str, bytes)) or not edits:
        raise ToolExecutionError(
            '"edits" must be a non-empty list of {oldText, newText} objects',
            error_code=ErrorCode.INVALID_ARGUMENTS,
            tool_name="edit_file",
        )
    updated = document
    for position, edit in enumerate(edits):
        if not isinstance(edit, Mapping):
            raise ToolExecutionError(
                f"Edit #{position + 1} is not an object",
                error_code=ErrorCode.INVALID_ARGUMENTS,
                tool_name="edit_file",
            )
        old_text = edit.get("oldText")
        new_text = edit.get("newText", "")
        if not isinstance(old_text, str) or not isinstance(new_text, str):
            raise ToolExecutionError(
                f"Edit #{position + 1} needs string oldText and newText",
                error_code=ErrorCode.INVALID_ARGUMENTS,
                tool_name="edit_file",
            )
        if old_text not in updated:
            raise ToolExecutionError(
                f"Edit #{position + 1}: oldText not found in the open document",
                error_code=ErrorCode.TOOL_FAILED,
                tool_name="edit_file",
            )
        updated = updated.replace(old_text, new_text, 1)
    return updated
