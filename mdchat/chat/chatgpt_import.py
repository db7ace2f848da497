"""
ChatGPT export import.

A ChatGPT data export (``conversations.json``) is a list of conversations,
each a tree of message nodes keyed by id. The first child is followed from
the root, so only the main branch is imported; text messages from the user,
assistant and system become session messages and tool traffic is skipped.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from .markdown_codec import ChatMarkdownCodec
from .models import ChatOptions, Message, Role
from .session import ChatSession

logger = logging.getLogger(__name__)

IMPORTED_ROLES = {Role.USER.value, Role.ASSISTANT.value, Role.SYSTEM.value}
_UNSAFE_FILENAME_RE = re.compile(r'[\\/:*?"<>|#^\[\]]')


def load_export(text: str) -> list[dict[str, Any]]:
    """
    Parse an export file into its conversation entries.

    Raises:
        ValueError: If the text is not a JSON list.
    """
    try:
        chats = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError("Invalid ChatGPT JSON format") from e
    if not isinstance(chats, list):
        raise ValueError("Invalid ChatGPT JSON format")
    return [chat for chat in chats if isinstance(chat, dict) and isinstance(chat.get("mapping"), dict)]


def _root_child(mapping: dict[str, Any]) -> str | None:
    root = mapping.get("client-created-root")
    if root is None:
        root = next((node for node in mapping.values() if isinstance(node, dict) and not node.get("parent")), None)
    children = (root or {}).get("children") or []
    return children[0] if children else None


def conversation_to_session(conversation: dict[str, Any], options: ChatOptions | None = None) -> ChatSession:
    """Walk the main branch of one exported conversation into a cleaned-up session."""
    mapping: dict[str, Any] = conversation.get("mapping") or {}
    session = ChatSession(options.model_copy(deep=True) if options else None)

    current_id = _root_child(mapping)
    seen: set[str] = set()
    while current_id and current_id in mapping and current_id not in seen:
        seen.add(current_id)
        node = mapping[current_id] or {}
        message = node.get("message") or {}
        content = message.get("content") or {}
        role = (message.get("author") or {}).get("role")
        parts = content.get("parts") or [""]
        if content.get("content_type") == "text" and role in IMPORTED_ROLES and isinstance(parts[0], str):
            session.append_message(Message(role=Role(role), content=parts[0]))
        children = node.get("children") or []
        current_id = children[0] if children else None

    return session.clean_up()


def unique_file_name(folder: Path, title: str) -> str:
    """A file stem derived from ``title`` that does not clash with a note in ``folder``."""
    base = _UNSAFE_FILENAME_RE.sub("", title or "").strip() or "Untitled"
    name = base
    counter = 1
    while (folder / f"{name}.md").exists():
        name = f"{base} {counter}"
        counter += 1
    return name


def import_export(
    text: str,
    folder: Path,
    codec: ChatMarkdownCodec | None = None,
    options: ChatOptions | None = None,
) -> list[Path]:
    """Write each conversation of an export as a markdown chat in ``folder``."""
    codec = codec or ChatMarkdownCodec()
    folder.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []
    for conversation in load_export(text):
        session = conversation_to_session(conversation, options)
        path = folder / f"{unique_file_name(folder, str(conversation.get('title') or ''))}.md"
        path.write_text(codec.encode(session), encoding="utf-8")
        written.append(path)
        logger.info("Imported conversation '%s' to %s", conversation.get("title"), path)
    return written
