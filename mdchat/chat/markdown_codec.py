"""
Markdown Conversation Codec

Maps a markdown document to a ChatSession and back:
- Role headers (``# role: User`` by default) split the document into messages
- Text before the first header is the preamble
- A fenced ``json`` block (or YAML front matter) in the preamble holds the
  chat options

Known limitation: a message whose content has a line that is itself a role
header is split at that line on the next decode. Nothing is escaped.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

import yaml
from pydantic import ValidationError

from .models import ChatOptions, LineRange, Message, Role, system_message, user_message
from .session import ChatSession

logger = logging.getLogger(__name__)

DEFAULT_ROLE_FORMATTER = "# role: {role}"
ROLE_KEYWORDS: tuple[str, ...] = tuple(role.value for role in Role)

_FRONT_MATTER_RE = re.compile(r"^---\n([\s\S]+?)\n---")
_ALL_CODE_BLOCKS_RE = re.compile(r"^```(\w*)\n([\s\S]*?)\n```", re.MULTILINE)


@dataclass(frozen=True)
class CodeBlock:
    """A fenced code block found in markdown."""

    language: str
    code: str


def _code_block_re(language: str) -> re.Pattern[str]:
    return re.compile(rf"```{re.escape(language)}\n([\s\S]*?)\n```", re.IGNORECASE)


def extract_code_block(markdown: str, language: str) -> str | None:
    """Return the body of the first ``language`` code block, or None."""
    match = _code_block_re(language).search(markdown)
    return match.group(1) if match else None


def extract_all_code_blocks(markdown: str) -> list[CodeBlock]:
    """Return every fenced code block; blocks without a language are plaintext."""
    return [
        CodeBlock(language=(lang or "plaintext").strip() or "plaintext", code=code.strip())
        for lang, code in _ALL_CODE_BLOCKS_RE.findall(markdown)
    ]


def change_code_block(text: str, language: str, new_text: str) -> str:
    """Replace the first ``language`` code block, or append one if absent."""
    block = f"```{language}\n{new_text}\n```"
    pattern = _code_block_re(language)
    if not pattern.search(text):
        return f"{text}\n{block}"
    return pattern.sub(lambda _m: block, text, count=1)


def normalize_newlines(text: str) -> str:
    """Convert CRLF and lone CR line endings to LF."""
    return text.replace("\r\n", "\n").replace("\r", "\n")


def try_json_parse(text: str) -> Any:
    """Parse JSON, returning the original string when it is not valid JSON."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


class ChatMarkdownCodec:
    """Decodes markdown into a ChatSession and encodes it back."""

    def __init__(
        self,
        role_formatter: str = DEFAULT_ROLE_FORMATTER,
        use_yaml_front_matter: bool = False,
        agent_mode: bool = True,
    ) -> None:
        if "{role}" not in role_formatter:
            raise ValueError("role_formatter must contain a '{role}' placeholder")
        self.role_formatter = role_formatter
        self.use_yaml_front_matter = use_yaml_front_matter
        self.agent_mode = agent_mode
        self._role_re = self._build_role_pattern(role_formatter)

    @staticmethod
    def _build_role_pattern(role_formatter: str) -> re.Pattern[str]:
        keywords = "|".join(ROLE_KEYWORDS)
        parts = [re.escape(part) for part in role_formatter.split("{role}")]
        body = f"({keywords})".join(parts)
        return re.compile(rf"^{body}$", re.IGNORECASE | re.MULTILINE)

    @property
    def role_pattern(self) -> re.Pattern[str]:
        """Regex matching a whole role-header line; group 1 is the keyword."""
        return self._role_re

    def format_role(self, role: Role) -> str:
        """Render the header line for a role, title-cased."""
        return self.role_formatter.replace("{role}", role.value.title())

    def is_chat(self, markdown: str) -> bool:
        """True when the text contains at least one role header."""
        return self._role_re.search(normalize_newlines(markdown)) is not None

    # ------------------------------------------------------------------
    # decode
    # ------------------------------------------------------------------

    def decode(
        self,
        markdown: str,
        default_options: ChatOptions | None = None,
        system_prompt: str = "",
    ) -> ChatSession:
        """
        Parse markdown into a session.

        Never raises on content: a document without role headers becomes a
        system prompt plus a single user message, and a malformed options block
        leaves the default options in place.
        """
        markdown = normalize_newlines(markdown)
        options = (default_options or ChatOptions()).model_copy(deep=True)
        normalized = "\n" + markdown.strip() + "\n"
        matches = list(self._role_re.finditer(normalized))

        session = ChatSession(options)

        if not matches:
            logger.debug("No role headers found, treating document as one user message")
            session.valid_chat = False
            session.append_message(
                [system_message(system_prompt), user_message(markdown.strip())]
            )
            return session

        session.preamble = normalized[: matches[0].start()].strip()

        for index, match in enumerate(matches):
            content_start = match.end()
            content_end = matches[index + 1].start() if index + 1 < len(matches) else len(normalized)
            first_line = normalized.count("\n", 0, content_start)
            last_line = max(first_line, normalized.count("\n", 0, content_end) - 2)
            session.append_message(
                Message(
                    role=Role(match.group(1).lower()),
                    content=normalized[content_start:content_end].strip(),
                ),
                [LineRange(start=first_line, end=last_line)],
            )

        session.options = self._parse_preamble_options(session.preamble, options)
        return session

    def _parse_preamble_options(self, preamble: str, options: ChatOptions) -> ChatOptions:
        """Layer options found in the preamble over ``options``."""
        overrides: Any = None

        options_str = extract_code_block(preamble, "json")
        if options_str is not None:
            try:
                overrides = json.loads(options_str)
            except json.JSONDecodeError as e:
                logger.warning("Ignoring malformed chat options block: %s", e)
                return options
        else:
            front_matter = _FRONT_MATTER_RE.match(preamble)
            if not front_matter:
                return options
            try:
                overrides = yaml.safe_load(front_matter.group(1))
            except yaml.YAMLError as e:
                logger.warning("Ignoring malformed front matter: %s", e)
                return options

        if not isinstance(overrides, dict):
            logger.warning("Chat options block is not an object, ignoring it")
            return options

        try:
            return options.merged(overrides)
        except ValidationError as e:
            logger.warning("Chat options failed validation, keeping defaults: %s", e)
            return options

    # ------------------------------------------------------------------
    # encode
    # ------------------------------------------------------------------

    def encode(self, session: ChatSession) -> str:
        """Serialize options and messages back to markdown."""
        options = session.options.to_dict()
        options.pop("messages", None)
        if not self.agent_mode:
            options.pop("tools", None)

        if self.use_yaml_front_matter:
            rest = _code_block_re("json").sub("", session.preamble, count=1)
            rest = re.sub(r"---\n[\s\S]+?\n---", "", rest, count=1).strip()
            dumped = yaml.safe_dump(options, sort_keys=False, allow_unicode=True)
            prechat = f"---\n{dumped}---\n{rest}"
        else:
            prechat = change_code_block(session.preamble, "json", json.dumps(options, indent=2))

        chat_text = "\n".join(
            f"{self.format_role(m.role)}\n{m.content.strip()}" for m in session.messages
        )
        return f"{prechat.strip()}\n{chat_text}"
