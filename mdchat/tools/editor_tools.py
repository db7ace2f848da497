"""Tools that act on the open document."""

from __future__ import annotations

import re
from typing import Any

from mdchat.chat.models import ToolClassification

from . import output as out
from .base import Tool, ToolContext


class GetActiveContextTool(Tool):
    name = "get_active_context"
    classification = ToolClassification.UI
    description = (
        "Retrieves information about the currently active note, including path, selection, and cursor position."
    )
    parameters = {
        "type": "object",
        "properties": {
            "include_content": {
                "type": "boolean",
                "description": "Whether to include the full content of the active file. Defaults to false.",
                "default": False,
            },
        },
        "required": [],
    }

    async def execute(self, args: dict[str, Any], context: ToolContext) -> str:
        document = context.document
        if document is None:
            return "No active Markdown note found."

        line, column = document.get_cursor()
        text = document.get_text()
        selection = document.get_selection()

        parts = [
            f"Active File: {document.path}",
            f"Cursor Position: Line {line + 1}, Column {column + 1}",
            f"Total Lines: {text.count(chr(10)) + 1}",
        ]
        if selection:
            parts.append(f"Currently Selected Text:\n---\n{selection}\n---")
        else:
            parts.append("No text currently selected.")
        if args.get("include_content"):
            parts.append(f"\nFull File Content:\n---\n{text}\n---")
        return "\n".join(parts) + "\n"


class ReplaceInNoteTool(Tool):
    name = "replace_in_note"
    classification = ToolClassification.VAULT
    description = "Replaces text within the active note using string or regex matching."
    parameters = {
        "type": "object",
        "properties": {
            "search": {"type": "string", "description": "The text or regex pattern to search for."},
            "replace": {"type": "string", "description": "The text to replace the match with."},
            "regex": {
                "type": "boolean",
                "description": "Whether to treat the search pattern as a regular expression. Defaults to false.",
                "default": False,
            },
            "case_sensitive": {
                "type": "boolean",
                "description": "Whether the search should be case sensitive. Defaults to false.",
                "default": False,
            },
        },
        "required": ["search", "replace"],
    }

    def is_available(self, context: ToolContext) -> bool:
        return context.document is not None

    async def execute(self, args: dict[str, Any], context: ToolContext) -> str:
        assert context.document is not None
        document = context.document
        search = str(args.get("search", ""))
        replace = str(args.get("replace", ""))
        if not search:
            return out.render(
                [out.error_block("ArgumentError", "Empty search pattern", ["Provide the text to search for"])]
            )

        await context.status(f'Preparing replacement in "{document.path}"...')
        flags = 0 if args.get("case_sensitive") else re.IGNORECASE
        if args.get("regex"):
            pattern, repl = search, replace
        else:
            # literal replacement text, no backreference expansion
            pattern, repl = re.escape(search), lambda _match: replace

        content = document.get_text()
        try:
            new_content, count = re.subn(pattern, repl, content, flags=flags)
        except re.error as e:
            return out.render(
                [
                    out.error_block(
                        "ReplaceError",
                        str(e),
                        [
                            "Verify search pattern syntax (especially for regex mode)",
                            "Check if replacement string contains valid characters",
                        ],
                    )
                ]
            )

        if count == 0 or new_content == content:
            return out.render(
                [
                    out.Header("ℹ️", "NO MATCHES FOUND"),
                    out.KeyValue("File", document.path),
                    out.KeyValue("Search term", f'"{search}"'),
                    out.KeyValue("Status", "No changes made"),
                    out.Separator(),
                    out.suggestions(
                        "get_active_context(include_content: true) - Review the file content",
                        "Try different search term or use regex: true for pattern matching",
                    ),
                ]
            )

        document.set_text(new_content)
        return out.render(
            [
                out.Header("✓", "REPLACED"),
                out.KeyValue("File", document.path),
                out.KeyValue("Replacements", str(count)),
            ]
        )


class ShowNoticeTool(Tool):
    name = "show_notice"
    classification = ToolClassification.UI
    description = "Displays a transient notification to the user."
    parameters = {
        "type": "object",
        "properties": {
            "message": {"type": "string", "description": "The message to display in the notice."},
        },
        "required": ["message"],
    }

    async def execute(self, args: dict[str, Any], context: ToolContext) -> str:
        message = str(args.get("message", ""))
        await context.status(message)
        return f'Successfully displayed notice: "{message}"'


def default_tools() -> list[Tool]:
    return [GetActiveContextTool(), ReplaceInNoteTool(), ShowNoticeTool()]
