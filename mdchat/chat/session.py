"""
Chat Session

In-memory conversation state: the ordered message list, the chat options and
the editor annotations derived from the last decoded document. Knows nothing
about HTTP, files, tools or markdown.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from .models import ChatOptions, LineRange, Message, Role, user_message

logger = logging.getLogger(__name__)


class ChatSession:
    """Messages, options and per-message line ranges for one conversation."""

    def __init__(self, options: ChatOptions | None = None) -> None:
        self.options: ChatOptions = options or ChatOptions()
        self.messages: list[Message] = []
        self.line_ranges: list[LineRange] = []
        self.preamble: str = ""
        self.valid_chat: bool = True

    def append_message(
        self,
        message: Message | Iterable[Message],
        line_ranges: list[LineRange] | None = None,
    ) -> ChatSession:
        """
        Append one or more messages, keeping line_ranges aligned with messages.

        Ranges are only taken when one is supplied for every message; otherwise
        empty ranges are recorded.
        """
        if isinstance(message, Message):
            messages = [message]
        else:
            messages = list(message)

        self.messages.extend(messages)
        if line_ranges is not None and len(line_ranges) == len(messages):
            self.line_ranges.extend(line_ranges)
        else:
            self.line_ranges.extend(LineRange() for _ in messages)
        return self

    def clean_up(self) -> ChatSession:
        """
        Drop empty messages and leave an empty user message at the end.

        System messages are kept even when empty.
        """
        kept = [
            (msg, rng)
            for msg, rng in zip(self.messages, self.line_ranges, strict=False)
            if msg.role == Role.SYSTEM or msg.content.strip()
        ]
        removed = len(self.messages) - len(kept)
        self.messages = [msg for msg, _ in kept]
        self.line_ranges = [rng for _, rng in kept]
        if removed:
            logger.debug("Removed %d empty messages", removed)

        if not self.messages or self.messages[-1].role != Role.USER:
            self.append_message(user_message(""))
        return self

    def reverse_roles(self) -> ChatSession:
        """Swap user and assistant roles, e.g. for imported transcripts."""
        swap = {Role.USER: Role.ASSISTANT, Role.ASSISTANT: Role.USER}
        self.messages = [
            msg.model_copy(update={"role": swap[msg.role]}) if msg.role in swap else msg
            for msg in self.messages
        ]
        return self

    def chat_text(self, format_role: Callable[[Role], str]) -> str:
        """Render messages as header line + content, joined by newlines."""
        return "\n".join(f"{format_role(m.role)}\n{m.content}" for m in self.messages)

    def set_model(self, model: str) -> ChatSession:
        self.options.model = model
        return self

    def set_max_tokens(self, max_tokens: int | None) -> ChatSession:
        if max_tokens is not None:
            self.options.max_completion_tokens = max_tokens
        return self

    def clone(self) -> ChatSession:
        """Deep copy of the session."""
        other = ChatSession(self.options.model_copy(deep=True))
        other.messages = [m.model_copy(deep=True) for m in self.messages]
        other.line_ranges = [r.model_copy() for r in self.line_ranges]
        other.preamble = self.preamble
        other.valid_chat = self.valid_chat
        return other
