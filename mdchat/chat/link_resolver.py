"""
Note link resolution.

Whole-line ``[[note]]`` links inside message contents are replaced by the text
of the linked note before a request is sent. With recursion on, links inside
linked notes are expanded too, and a linked note that is itself a pending
chat (its last message is a user message with content) is run and replaced by
the assistant's answer. Cycles are reported inline, recursion stops at
``max_depth`` and results of executed chats are cached per resolution.
"""

from __future__ import annotations

import glob
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .markdown_codec import ChatMarkdownCodec
from .models import Role

if TYPE_CHECKING:
    from mdchat.tools.base import FileSystemPort

logger = logging.getLogger(__name__)

LINK_RE = re.compile(r"^!?\[\[(.*?)\]\]$", re.MULTILINE)
_HEADING_RE = re.compile(r"^(#{1,6})\s+(.*?)\s*#*\s*$", re.MULTILINE)

DEFAULT_MAX_DEPTH = 5


@dataclass
class ResolutionContext:
    """State shared by one top-level resolution."""

    root_path: str | None = None
    visited: set[str] = field(default_factory=set)
    depth: int = 0
    cache: dict[str, str] = field(default_factory=dict)


# (markdown, path, context) -> (answer text, updated markdown of the linked chat)
PendingChatRunner = Callable[[str, str, ResolutionContext], Awaitable[tuple[str, str]]]


def parse_link(link: str) -> tuple[str, str | None]:
    """Split ``note#Heading|alias`` into the note path and optional heading."""
    target = link.split("|", 1)[0]
    path, _, subpath = target.partition("#")
    return path.strip(), subpath.strip() or None


def extract_section(text: str, heading: str) -> str | None:
    """The heading line and its body up to the next heading of the same or higher level."""
    headings = list(_HEADING_RE.finditer(text))
    for index, match in enumerate(headings):
        if match.group(2).strip().lower() != heading.lower():
            continue
        level = len(match.group(1))
        end = len(text)
        for following in headings[index + 1 :]:
            if len(following.group(1)) <= level:
                end = following.start()
                break
        return text[match.start() : end].strip()
    return None


class LinkResolver:
    """Expands ``[[note]]`` links through a ``FileSystemPort``."""

    def __init__(
        self,
        files: FileSystemPort,
        codec: ChatMarkdownCodec | None = None,
        recursive: bool = True,
        max_depth: int = DEFAULT_MAX_DEPTH,
        enable_caching: bool = True,
        write_intermediate_results: bool = False,
        chat_runner: PendingChatRunner | None = None,
    ) -> None:
        self.files = files
        self.codec = codec or ChatMarkdownCodec()
        self.recursive = recursive
        self.max_depth = max_depth
        self.enable_caching = enable_caching
        self.write_intermediate_results = write_intermediate_results
        self.chat_runner = chat_runner

    @classmethod
    def from_config(
        cls,
        files: FileSystemPort,
        link_config: dict[str, Any],
        codec: ChatMarkdownCodec | None = None,
        chat_runner: PendingChatRunner | None = None,
    ) -> LinkResolver:
        """Build from the ``chat.service.link_resolution`` section."""
        max_depth = link_config.get("max_depth", DEFAULT_MAX_DEPTH)
        if isinstance(max_depth, bool) or not isinstance(max_depth, int) or max_depth < 1:
            raise ValueError("link_resolution.max_depth must be a positive integer")
        return cls(
            files,
            codec,
            recursive=bool(link_config.get("recursive", True)),
            max_depth=max_depth,
            enable_caching=bool(link_config.get("enable_caching", True)),
            write_intermediate_results=bool(link_config.get("write_intermediate_results", False)),
            chat_runner=chat_runner if link_config.get("execute_pending_chats", True) else None,
        )

    def create_context(self, root_path: str | None) -> ResolutionContext:
        """Fresh context; the root note counts as visited so it cannot link to itself."""
        return ResolutionContext(root_path=root_path, visited={root_path} if root_path else set())

    def is_pending_chat(self, content: str) -> bool:
        """A chat whose last message is a user message that has content."""
        session = self.codec.decode(content)
        if not session.valid_chat or not session.messages:
            return False
        last = session.messages[-1]
        return last.role == Role.USER and bool(last.content.strip())

    async def resolve_links(
        self,
        content: str,
        source_path: str | None,
        context: ResolutionContext | None = None,
    ) -> str:
        """Replace every whole-line link in ``content``; unresolvable links stay as written."""
        matches = list(LINK_RE.finditer(content))
        if not matches:
            return content
        if context is None:
            context = self.create_context(source_path)

        parts: list[str] = []
        last_end = 0
        for match in matches:
            parts.append(content[last_end : match.start()])
            parts.append(await self.retrieve_link_content(match.group(1), source_path, context, match.group(0)))
            last_end = match.end()
        parts.append(content[last_end:])
        return "".join(parts)

    async def retrieve_link_content(
        self,
        link: str,
        source_path: str | None,
        context: ResolutionContext,
        original: str | None = None,
    ) -> str:
        """Text for one link: a heading section, a resolved note or the link itself."""
        path, heading = parse_link(link)
        target = self.files.resolve_link(path, source_path) if path else source_path
        if target is None:
            logger.debug("Link target not found: %s", link)
            return original if original is not None else f"[[{link}]]"

        if heading:
            try:
                section = extract_section(self.files.read_text(target), heading)
            except (OSError, UnicodeDecodeError) as e:
                logger.error("Could not read linked note %s: %s", target, e)
                return f"[[{target}]] (Error: {e})"
            if section is not None:
                return section

        return await self.resolve_file(target, context)

    async def resolve_file(self, path: str, context: ResolutionContext) -> str:
        """Content of a linked note, with its own links and pending chat resolved."""
        if not self.recursive:
            return self._read_or_error(path)

        if path in context.visited:
            logger.error("Circular note link detected: %s", path)
            return f"[[{path}]] (Error: Circular dependency)"

        if context.depth >= self.max_depth:
            logger.warning("Max link depth (%d) reached at: %s", self.max_depth, path)
            return self._read_or_error(path)

        if self.enable_caching and path in context.cache:
            logger.debug("Link cache hit for: %s", path)
            return context.cache[path]

        context.visited.add(path)
        context.depth += 1
        try:
            content = self.files.read_text(path)
            if self.chat_runner is None or not self.is_pending_chat(content):
                return await self.resolve_links(content, path, context)

            logger.info("→ Link[%s]: running linked chat", path)
            answer, updated = await self.chat_runner(content, path, context)
            if self.enable_caching:
                context.cache[path] = answer
            if self.write_intermediate_results and path != context.root_path:
                self.files.write_text(path, updated)
                logger.info("← Link[%s]: wrote linked chat result", path)
            return answer
        except (OSError, UnicodeDecodeError) as e:
            logger.error("Error resolving linked note %s: %s", path, e)
            return f"[[{path}]] (Error: {e})"
        finally:
            context.depth -= 1
            context.visited.discard(path)

    def _read_or_error(self, path: str) -> str:
        try:
            return self.files.read_text(path)
        except (OSError, UnicodeDecodeError) as e:
            logger.error("Could not read linked note %s: %s", path, e)
            return f"[[{path}]] (Error: {e})"


class LocalFileSystem:
    """``FileSystemPort`` over a directory of markdown notes."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def resolve_link(self, link: str, source_path: str | None = None) -> str | None:
        """
        Look for the note next to the linking note, then under the root, then
        anywhere in the tree by file name. ``.md`` is implied when the link has
        no extension.
        """
        names = [link] if Path(link).suffix else [f"{link}.md", link]
        bases = [Path(source_path).parent] if source_path else []
        bases.append(self.root)
        for base in bases:
            for name in names:
                candidate = base / name
                if candidate.is_file():
                    return str(candidate.resolve())
        for name in names:
            for candidate in sorted(self.root.rglob(glob.escape(Path(name).name))):
                if candidate.is_file():
                    return str(candidate.resolve())
        return None

    def read_text(self, path: str) -> str:
        return Path(path).read_text(encoding="utf-8")

    def write_text(self, path: str, text: str) -> None:
        Path(path).write_text(text, encoding="utf-8")
