"""
Chat Engine Data Models

Data structures for the conversation engine: messages exchanged with the
chat-completions API, tool definitions, streaming deltas, chat options and the
outgoing request buffer. All strongly typed with Pydantic.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ==============================================================================
# ROLES AND MESSAGES
# ==============================================================================


class Role(str, Enum):
    """Message author roles understood by the codec and the API."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    DEVELOPER = "developer"
    TOOL = "tool"


class FunctionCall(BaseModel):
    """Function call within a tool call."""

    name: str
    arguments: str = Field(default="{}")  # JSON string, untrusted


class ToolCall(BaseModel):
    """Tool call requested by the model."""

    id: str
    type: Literal["function"] = "function"
    function: FunctionCall

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCall:
        """Create ToolCall from an API dict, tolerating missing arguments."""
        function = data.get("function") or {}
        return cls(
            id=data["id"],
            type=data.get("type") or "function",
            function=FunctionCall(
                name=function["name"],
                arguments=function.get("arguments") or "{}",
            ),
        )


class Message(BaseModel):
    """A single conversation message."""

    role: Role
    content: str = ""
    tool_call_id: str | None = None
    tool_calls: list[ToolCall] | None = None

    @field_validator("content", mode="before")
    @classmethod
    def validate_content(cls, v: Any) -> str:
        """API replies may carry null content next to tool calls."""
        return "" if v is None else v

    @field_validator("tool_calls")
    @classmethod
    def validate_tool_calls(cls, v: list[ToolCall] | None) -> list[ToolCall] | None:
        """Convert empty tool_calls list to None to avoid API errors."""
        if v is not None and len(v) == 0:
            return None
        return v

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        """Create Message from an API dict (choices[0].message or a request entry)."""
        tool_calls = None
        if data.get("tool_calls"):
            tool_calls = [ToolCall.from_dict(tc) for tc in data["tool_calls"]]
        return cls(
            role=data.get("role") or Role.ASSISTANT,
            content=data.get("content"),
            tool_call_id=data.get("tool_call_id"),
            tool_calls=tool_calls,
        )

    def to_api(self) -> dict[str, Any]:
        """Convert to the wire format, omitting absent optional fields."""
        result: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            result["tool_calls"] = [tc.model_dump() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            result["tool_call_id"] = self.tool_call_id
        return result


def system_message(content: str) -> Message:
    return Message(role=Role.SYSTEM, content=content)


def user_message(content: str) -> Message:
    return Message(role=Role.USER, content=content)


def assistant_message(content: str = "", tool_calls: list[ToolCall] | None = None) -> Message:
    return Message(role=Role.ASSISTANT, content=content, tool_calls=tool_calls)


def tool_message(content: str, tool_call_id: str) -> Message:
    return Message(role=Role.TOOL, content=content, tool_call_id=tool_call_id)


class LineRange(BaseModel):
    """Source lines a message body occupies in the document (editor annotation)."""

    start: int = 0
    end: int = 0


# ==============================================================================
# TOOL DEFINITIONS AND SCHEMAS
# ==============================================================================


class ToolClassification(str, Enum):
    """Coarse capability categories used to gate tools."""

    UI = "UI"
    VAULT = "Vault"
    SYSTEM = "System"
    AI = "AI"


class ToolFunctionParameters(BaseModel):
    """Function parameters schema for tools."""

    model_config = ConfigDict(extra="allow")

    type: Literal["object"] = "object"
    properties: dict[str, Any] = Field(default_factory=dict)
    required: list[str] = Field(default_factory=list)


class ToolFunctionDefinition(BaseModel):
    """Tool function definition."""

    name: str
    description: str
    parameters: ToolFunctionParameters


class ToolDefinition(BaseModel):
    """Complete tool definition for the chat-completions API."""

    type: Literal["function"] = "function"
    function: ToolFunctionDefinition


# ==============================================================================
# OPTIONS AND REQUESTS
# ==============================================================================


class ChatOptions(BaseModel):
    """
    Per-conversation request options stored in the document.

    Unknown keys are kept as extra fields so a load/edit/save cycle never
    drops provider-specific settings.
    """

    model_config = ConfigDict(extra="allow")

    model: str = ""
    max_completion_tokens: int | None = None
    stream: bool = True
    tools: list[str] | None = None

    def merged(self, overrides: dict[str, Any]) -> ChatOptions:
        """Return a copy with the given keys layered on top."""
        data = self.to_dict()
        data.update(overrides)
        return ChatOptions.model_validate(data)

    def to_dict(self) -> dict[str, Any]:
        """Dump including extra keys; a null survives only when it was set explicitly."""
        explicit = self.model_fields_set | set(self.model_extra or {})
        return {k: v for k, v in self.model_dump().items() if v is not None or k in explicit}


class ChatRequest(BaseModel):
    """Outgoing chat-completion request buffer, grown by the tool loop."""

    model_config = ConfigDict(extra="allow")

    model: str
    messages: list[dict[str, Any]] = Field(default_factory=list)
    tools: list[ToolDefinition] | None = None
    stream: bool = False

    def add_message(self, message: Message) -> None:
        self.messages.append(message.to_api())

    def to_payload(self) -> dict[str, Any]:
        """Produce the JSON body, dropping None values and an empty tool list."""
        payload = self.model_dump(exclude_none=True)
        if not payload.get("tools"):
            payload.pop("tools", None)
        return payload


# ==============================================================================
# STREAMING MODELS
# ==============================================================================


class StreamDelta(BaseModel):
    """Text fragment surfaced to the delta callback."""

    role: Role | None = None
    content: str = ""
