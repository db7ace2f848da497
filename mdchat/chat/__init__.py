"""
Chat Module

Conversation model, markdown codec and session state. The orchestrator and
tool executor live in their own submodules.
"""

from .markdown_codec import ChatMarkdownCodec
from .models import ChatOptions, ChatRequest, Message, Role, StreamDelta, ToolCall
from .session import ChatSession

__all__ = [
    "ChatMarkdownCodec",
    "ChatOptions",
    "ChatRequest",
    "ChatSession",
    "Message",
    "Role",
    "StreamDelta",
    "ToolCall",
]
