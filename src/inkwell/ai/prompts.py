"""Prompt templates for the writing assistant.

Provides the chat system prompt, the synthetic continuation instruction used
when a tool call is cut off by the output limit, the user-visible truncation
notice, and the built-in one-shot writing commands.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

from .ai_types import ProviderConfig

__all__ = [
    "ASSISTANT_NAME",
    "CONTINUE_CONTEXT_CHARS",
    "WritingCommand",
    "WRITING_COMMANDS",
    "CUSTOM_COMMAND_PROMPT",
    "system_prompt",
    "continuation_instruction",
    "truncation_notice",
    "command_user_content",
]

ASSISTANT_NAME = "Inkwell AI"
CONTINUE_CONTEXT_CHARS = 2_000


def system_prompt(
    config: ProviderConfig,
    *,
    tool_count: int = 0,
    current_file_path: str | None = None,
    document_context: str | None = None,
    document_context_chars: int = 1_000,
) -> str:
    """Build the chat system prompt for one request."""

    prompt = (
        f"You are {ASSISTANT_NAME}, a helpful writing assistant integrated into a Markdown editor. "
        f"You are powered by {config.model} ({config.provider_kind.value}). "
        "Help the user with writing, editing, and content creation. "
        "Always respond in Markdown format when producing content."
    )
    if tool_count > 0:
        prompt += (
            " You have access to tools. Use them when they can help answer the user's question."
            " To change the document open in the editor, use update_editor_content."
        )
    if current_file_path:
        current_dir = os.path.dirname(current_file_path)
        if current_dir:
            prompt += f"\n\nCurrent working directory: {current_dir}"
        prompt += f"\nCurrent file: {current_file_path}"
    if document_context and document_context_chars > 0:
        tail = document_context[-document_context_chars:]
        prompt += f"\n\nCurrent document context (last {document_context_chars} chars):\n{tail}"
    return prompt


def continuation_instruction(attempt: int) -> str:
    """User instruction sent after an output-limit cut a tool call short."""

    return (
        "Your previous response hit the output length limit while you were issuing a tool call "
        f"(continuation attempt {attempt}). The text you already produced has been kept above. "
        "Do not repeat it. Re-issue only the tool call now, with complete arguments."
    )


def truncation_notice(attempts: int) -> str:
    return (
        "\n\n---\n*The response was cut off by the model's output limit "
        f"{attempts} time(s) while it was calling a tool, so the tool was not run. "
        "Try asking for a shorter result or splitting the task.*"
    )


# -----------------------------------------------------------------------------
# Built-in writing commands
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class WritingCommand:
    name: str
    system_prompt: str
    requires_selection: bool = False


CUSTOM_COMMAND_PROMPT = (
    "You are a helpful writing assistant. Follow the user's instructions. Output in Markdown format."
)

WRITING_COMMANDS: Mapping[str, WritingCommand] = {
    command.name: command
    for command in (
        WritingCommand(
            "write",
            "You are a helpful writing assistant. Write content based on the user's instructions. "
            "Output in Markdown format. Be concise and well-structured.",
        ),
        WritingCommand(
            "continue",
            "Continue writing from where the text left off. Maintain the same style, tone, and "
            "format. Output in Markdown.",
        ),
        WritingCommand(
            "summarize",
            "Summarize the following text concisely. Keep key points. Output in Markdown.",
            requires_selection=True,
        ),
        WritingCommand(
            "translate",
            "Translate the following text. If the text is in Chinese, translate to English. If in "
            "English, translate to Chinese. Maintain formatting. Output in Markdown.",
            requires_selection=True,
        ),
        WritingCommand(
            "improve",
            "Improve the following text for clarity, coherence, and style. Keep the original "
            "meaning. Output in Markdown.",
            requires_selection=True,
        ),
        WritingCommand(
            "fix-grammar",
            "Fix all grammar, spelling, and punctuation errors in the following text. Keep the "
            "original meaning and style. Output the corrected text only.",
            requires_selection=True,
        ),
        WritingCommand(
            "simplify",
            "Simplify the following text to make it easier to understand. Use simpler words and "
            "shorter sentences. Output in Markdown.",
            requires_selection=True,
        ),
        WritingCommand(
            "expand",
            "Expand on the following text with more details, examples, and explanations. Output "
            "in Markdown.",
            requires_selection=True,
        ),
        WritingCommand(
            "outline",
            "Generate a detailed article outline based on the topic. Use Markdown heading format "
            "(##, ###). Include main sections and subsections.",
        ),
        WritingCommand(
            "explain",
            "Explain the following text in simple terms. If it contains technical concepts, "
            "provide clear explanations. Output in Markdown.",
            requires_selection=True,
        ),
        WritingCommand("custom", CUSTOM_COMMAND_PROMPT),
    )
}


def command_user_content(
    command: str,
    *,
    selected_text: str | None = None,
    document_content: str | None = None,
    custom_prompt: str | None = None,
    target_language: str | None = None,
) -> str:
    """Build the user message for a writing command."""

    if command in ("write", "outline"):
        return custom_prompt or selected_text or ""
    if command == "continue":
        tail = (document_content or "")[-CONTINUE_CONTEXT_CHARS:]
        return f"Continue writing from this text:\n\n{tail}"
    if command == "translate":
        if target_language:
            return f"Translate the following text to {target_language}:\n\n{selected_text or ''}"
        return selected_text or ""
    if command == "custom":
        content = custom_prompt or ""
        if selected_text:
            content += f"\n\nText:\n{selected_text}"
        return content
    return selected_text or (document_content or "")[-CONTINUE_CONTEXT_CHARS:]
