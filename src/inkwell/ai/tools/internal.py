"""In-process capabilities operating on the open editor document."""

from __future__ import annotations

import logging
import os
from typing import Any, Mapping, Protocol, runtime_checkable

from ..ai_types import ToolDefinition
from .base import Capability, CapabilityResult

__all__ = [
    "EditorBridge",
    "UPDATE_EDITOR_CONTENT",
    "READ_EDITOR_CONTENT",
    "editor_capabilities",
    "same_path",
]

LOGGER = logging.getLogger(__name__)

UPDATE_EDITOR_CONTENT = "update_editor_content"
READ_EDITOR_CONTENT = "read_editor_content"


@runtime_checkable
class EditorBridge(Protocol):
    """Editor surface the engine may read and write."""

    def current_file_path(self) -> str | None:
        ...

    def document_content(self) -> str:
        ...

    def replace_content(self, content: str) -> bool:
        """Replace the document; returns ``True`` if it was also saved to disk."""
        ...


def same_path(left: str | None, right: str | None) -> bool:
    if not left or not right:
        return False
    return os.path.normcase(os.path.abspath(os.path.expanduser(left))) == os.path.normcase(
        os.path.abspath(os.path.expanduser(right))
    )


def editor_capabilities(editor: EditorBridge) -> list[Capability]:
    """Return the editor capabilities bound to ``editor``."""

    def update_editor_content(arguments: Mapping[str, Any]) -> CapabilityResult:
        content = arguments.get("content")
        if not isinstance(content, str) or not content:
            return CapabilityResult.error('Error: "content" is required')
        saved = editor.replace_content(content)
        path = editor.current_file_path()
        if path and saved:
            return CapabilityResult.ok(
                f"Content written to editor and saved to {os.path.basename(path)} ({len(content)} chars)."
            )
        if path:
            return CapabilityResult.ok(
                f"Content updated in editor ({len(content)} chars) but failed to save to disk. "
                "The file is marked as unsaved."
            )
        return CapabilityResult.ok(
            f"Content filled into editor ({len(content)} chars). The document is unsaved."
        )

    def read_editor_content(arguments: Mapping[str, Any]) -> CapabilityResult:
        content = editor.document_content()
        if not content:
            return CapabilityResult.ok("The editor is empty.")
        return CapabilityResult.ok(content)

    return [
        Capability(
            definition=ToolDefinition(
                name=UPDATE_EDITOR_CONTENT,
                description=(
                    "Write Markdown content directly into the editor. Use this tool (instead of "
                    "write_file) when you need to fill or replace the current document with "
                    "generated content. If the editor has an open file, it is saved as well."
                ),
                input_schema={
                    "type": "object",
                    "properties": {
                        "content": {
                            "type": "string",
                            "description": "The full Markdown content to write into the editor",
                        }
                    },
                    "required": ["content"],
                },
            ),
            handler=update_editor_content,
        ),
        Capability(
            definition=ToolDefinition(
                name=READ_EDITOR_CONTENT,
                description="Return the full Markdown content currently in the editor.",
                input_schema={"type": "object", "properties": {}},
            ),
            handler=read_editor_content,
        ),
    ]
