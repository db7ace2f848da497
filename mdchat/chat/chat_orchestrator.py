"""
Chat Orchestrator

Coordination layer for one markdown conversation: decodes the document into a
session, builds requests, drives the LLM client through tool-call rounds and
encodes the result back to markdown.
"""

from __future__ import annotations

import inspect
import logging
import re
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict

from mdchat.clients.errors import LLMClientError
from mdchat.config import Configuration
from mdchat.tools.editor_tools import default_tools
from mdchat.tools.registry import ToolRegistry

from .link_resolver import LinkResolver, ResolutionContext
from .logging_utils import log_llm_reply
from .markdown_codec import DEFAULT_ROLE_FORMATTER, ChatMarkdownCodec
from .models import (
    ChatOptions,
    ChatRequest,
    Message,
    Role,
    StreamDelta,
    assistant_message,
    system_message,
    user_message,
)
from .session import ChatSession
from .tool_executor import ToolExecutor

if TYPE_CHECKING:
    from mdchat.clients.llm_client import LLMClient, StatusCallback, StreamCallback
    from mdchat.tools.base import FileSystemPort

logger = logging.getLogger(__name__)

CHAT_SYSTEM_PROMPT = (
    "You are a markdown chat processor.\n\n"
    "You will receive:\n\n"
    "- A chat conversation enclosed within <Conversation> and </Conversation> tags.\n"
    "- A command or instruction immediately after the conversation.\n\n"
    "Your task:\n\n"
    "1. Extract the chat content inside the <Conversation> and </Conversation> tags.\n"
    "2. Follow the command to process, summarize, clarify, or modify the chat.\n"
    "3. Return only the final processed chat in markdown format, without any tags or instructions.\n\n"
    "Use this workflow to accurately handle the chat based on the instruction."
)

SELECTION_SYSTEM_PROMPT = (
    "You are a markdown content processor.\n\n"
    "You will receive:\n\n"
    "- A selected piece of markdown text inside <Selection> and </Selection> tags.\n"
    "- A command or instruction immediately after the selection.\n\n"
    "Your job:\n\n"
    "1. Extract the markdown inside the <Selection> and </Selection> tags.\n"
    "2. Follow the command to process or expand that markdown.\n"
    "3. Return only the processed markdown content, without tags or instructions.\n\n"
    "Use this workflow to help modify markdown content accurately."
)

ORPHAN_TOOL_PREFIX = "Tool output:\n"

_CONVERSATION_TAGS_RE = re.compile(r"^<Conversation>|</Conversation>$", re.IGNORECASE)
_SELECTION_TAGS_RE = re.compile(r"^<Selection>|</Selection>$", re.IGNORECASE)


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class TurnResult(BaseModel):
    """Outcome of one turn: the assistant message, or a readable error."""

    model_config = ConfigDict(frozen=True)

    message: Message | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ChatOrchestrator:
    """
    Conversation orchestrator
    1. Loads a markdown document into a session
    2. Builds the request with the enabled tools
    3. Loops through tool rounds until the model answers
    4. Appends the answer and renders the document again
    """

    def __init__(
        self,
        configuration: Configuration,
        llm_client: LLMClient,
        registry: ToolRegistry | None = None,
        status_callback: StatusCallback | None = None,
        files: FileSystemPort | None = None,
    ) -> None:
        self.configuration = configuration
        self.llm_client = llm_client
        self.status_callback = status_callback
        self.files = files
        self.source_path: str | None = None
        self.chat_conf = configuration.get_chat_service_config()
        self.agent_mode = bool(self.chat_conf.get("agent_mode", True))

        self.codec = ChatMarkdownCodec(
            role_formatter=self.chat_conf.get("role_formatter", DEFAULT_ROLE_FORMATTER),
            use_yaml_front_matter=bool(self.chat_conf.get("use_yaml_front_matter", False)),
            agent_mode=self.agent_mode,
        )

        if registry is None:
            registry = ToolRegistry(configuration.get_tool_policy(), endpoint=llm_client.endpoint)
            for tool in default_tools():
                registry.register(tool)
            for name in configuration.get_disabled_tools():
                registry.disable(name)
        self.registry = registry
        self.tool_executor = ToolExecutor(
            registry,
            configuration.get_max_tool_hops(),
            logging_config=self.chat_conf.get("logging", {}),
        )

        link_config = self.chat_conf.get("link_resolution", {}) or {}
        self.link_resolver: LinkResolver | None = None
        if files is not None and link_config.get("enabled", False):
            self.link_resolver = LinkResolver.from_config(files, link_config, self.codec, self._run_linked_chat)

        self.session = ChatSession(self.default_options())

    # ------------------------------------------------------------------
    # session handling
    # ------------------------------------------------------------------

    def default_options(self) -> ChatOptions:
        tool_names = self.registry.get_name_list() if self.agent_mode else None
        return self.configuration.default_options(tool_names)

    def load_markdown(self, markdown: str, path: str | None = None) -> ChatSession:
        """
        Replace the session with the conversation decoded from ``markdown``.

        ``path`` is where the document lives; note links resolve relative to it.
        """
        self.source_path = path
        self.session = self.codec.decode(
            markdown,
            default_options=self.default_options(),
            system_prompt=self.configuration.get_system_prompt(),
        )
        logger.info(
            "Loaded conversation: %d messages, model=%s, valid_chat=%s",
            len(self.session.messages),
            self.session.options.model,
            self.session.valid_chat,
        )
        return self.session

    @property
    def markdown(self) -> str:
        return self.codec.encode(self.session)

    @property
    def chat_text(self) -> str:
        return self.session.chat_text(self.codec.format_role)

    def _render_chat_text(self, messages: Iterable[Message]) -> str:
        return "\n".join(f"{self.codec.format_role(m.role)}\n{m.content}" for m in messages)

    def append_message(self, *messages: Message) -> ChatOrchestrator:
        """
        Append messages, merging into the last message when it has the same
        role and ``auto_concat_messages`` is enabled.
        """
        concat = bool(self.chat_conf.get("auto_concat_messages", False))
        for message in messages:
            last = self.session.messages[-1] if self.session.messages else None
            if concat and last is not None and last.role == message.role:
                self.session.messages[-1] = last.model_copy(update={"content": last.content + message.content})
            else:
                self.session.append_message(message.model_copy(update={"content": message.content.strip()}))
        return self

    def clean_up(self) -> ChatOrchestrator:
        self.session.clean_up()
        return self

    # ------------------------------------------------------------------
    # requests
    # ------------------------------------------------------------------

    def _wire_messages(self, messages: Iterable[Message]) -> list[dict[str, Any]]:
        """
        Messages as sent to the endpoint.

        Tool messages read back from a document have lost their call id, so
        they go out as user messages.
        """
        drop_empty = bool(self.chat_conf.get("remove_empty_messages", True))
        wire: list[dict[str, Any]] = []
        for message in messages:
            paired = bool(message.tool_calls) or message.tool_call_id is not None
            if drop_empty and not paired and not message.content.strip():
                continue
            if message.role == Role.TOOL and message.tool_call_id is None:
                message = user_message(ORPHAN_TOOL_PREFIX + message.content)
            wire.append(message.to_api())

        # Gemini rejects a conversation holding only a system message
        if (
            len(wire) == 1
            and wire[0]["role"] == Role.SYSTEM.value
            and self.llm_client.endpoint.provider == "gemini"
        ):
            wire.append(user_message("Introduce yourself.").to_api())
        return wire

    def build_request(self, messages: Iterable[Message] | None = None) -> ChatRequest:
        """Request for the current session: options, messages and usable tool definitions."""
        options = self.session.options.to_dict()
        tool_names = options.pop("tools", None) or []
        definitions = self.registry.get_definitions(tool_names) if self.agent_mode else []
        return ChatRequest.model_validate(
            {
                **options,
                "messages": self._wire_messages(self.session.messages if messages is None else messages),
                "tools": definitions or None,
            }
        )

    async def resolve_messages(
        self,
        messages: Iterable[Message],
        context: ResolutionContext | None = None,
    ) -> list[Message]:
        """Copies of ``messages`` with their note links expanded; as-is when resolution is off."""
        if self.link_resolver is None:
            return list(messages)
        if context is None:
            context = self.link_resolver.create_context(self.source_path)
        resolved: list[Message] = []
        for message in messages:
            content = await self.link_resolver.resolve_links(message.content, self.source_path, context)
            resolved.append(message if content == message.content else message.model_copy(update={"content": content}))
        return resolved

    async def prepare_request(self, context: ResolutionContext | None = None) -> ChatRequest:
        """``build_request`` over the session messages with note links expanded."""
        return self.build_request(await self.resolve_messages(self.session.messages, context))

    async def _run_linked_chat(self, markdown: str, path: str, context: ResolutionContext) -> tuple[str, str]:
        """Complete a linked pending chat; returns its answer and its updated markdown."""
        linked = ChatOrchestrator(self.configuration, self.llm_client, self.registry, self.status_callback, self.files)
        linked.load_markdown(markdown, path)
        result = await linked.complete_chat_response(context=context)
        if not result.ok or result.message is None:
            return f"[[{path}]] (Error: {result.error})", markdown
        return result.message.content, linked.markdown

    def _one_shot_request(self, messages: list[Message]) -> ChatRequest:
        options = self.session.options.to_dict()
        options.pop("tools", None)
        return ChatRequest.model_validate({**options, "messages": [m.to_api() for m in messages]})

    def _tool_status_sink(self, stream_callback: StreamCallback | None) -> Callable[[str], Any]:
        """Route tool progress into the stream when there is one."""

        async def sink(message: str) -> None:
            if stream_callback is not None:
                await _maybe_await(stream_callback(StreamDelta(role=Role.TOOL, content=f"\n{message}")))
            elif self.status_callback is not None:
                await _maybe_await(self.status_callback(message))

        return sink

    async def send_chat_request(
        self,
        request: ChatRequest,
        stream_callback: StreamCallback | None = None,
    ) -> Message:
        """
        Send ``request`` and follow tool calls until the model answers.

        Executed tool rounds are appended to the session and to ``request``.
        Stops after ``max_tool_hops`` rounds with a warning appended to the
        content of the last reply.
        """
        self.registry.set_status_callback(self._tool_status_sink(stream_callback))
        hops = 0
        while True:
            reply = await self.llm_client.fetch_response(request, stream_callback, self.status_callback)
            log_llm_reply(reply, f"hop {hops}", self.chat_conf)
            if not reply.tool_calls:
                return reply

            should_stop, warning = self.tool_executor.check_tool_hop_limit(hops)
            if should_stop:
                content = f"{reply.content}\n\n{warning}" if reply.content else str(warning)
                return reply.model_copy(update={"content": content, "tool_calls": None})

            if not await self.tool_executor.execute_tool_calls(reply.tool_calls, self.session, request, reply):
                return reply
            hops += 1

    async def complete_chat_response(
        self,
        stream_callback: StreamCallback | None = None,
        context: ResolutionContext | None = None,
    ) -> TurnResult:
        """
        Run one turn and append the answer plus an empty user message.

        Transport and response errors are returned as ``TurnResult.error``.
        ``context`` carries an ongoing note-link resolution into a linked chat.
        """
        request = await self.prepare_request(context)
        try:
            reply = await self.send_chat_request(request, stream_callback)
        except LLMClientError as e:
            logger.error("Error in chat completion: %s", e)
            return TurnResult(error=e.user_message)

        self.append_message(assistant_message(reply.content), user_message(""))
        return TurnResult(message=reply)

    async def process_chat_with_template(self, template_prompt: str) -> TurnResult:
        """Apply an instruction to the whole conversation, without tools."""
        if self.session.messages and not self.session.messages[-1].content.strip():
            self.session.messages.pop()
            self.session.line_ranges.pop()

        chat_text = self._render_chat_text(await self.resolve_messages(self.session.messages))
        request = self._one_shot_request(
            [
                system_message(CHAT_SYSTEM_PROMPT),
                user_message(f"<Conversation>\n{chat_text}\n\n</Conversation>"),
                user_message(template_prompt),
            ]
        )
        return await self._one_shot(request, _CONVERSATION_TAGS_RE)

    async def selection_response(
        self,
        template_prompt: str,
        selected_text: str,
        file_text: str | None = None,
    ) -> TurnResult:
        """Apply an instruction to a selected piece of markdown, without tools."""
        if not selected_text:
            return TurnResult(message=assistant_message(selected_text))

        system_prompt = SELECTION_SYSTEM_PROMPT
        if file_text:
            system_prompt += f"\n\n---\n\nHere's the whole file that's being edited:\n<Markdown>\n{file_text}\n</Markdown>"

        request = self._one_shot_request(
            [
                system_message(system_prompt),
                user_message(f"<Selection>{selected_text}</Selection>"),
                user_message(template_prompt),
            ]
        )
        return await self._one_shot(request, _SELECTION_TAGS_RE)

    async def _one_shot(self, request: ChatRequest, tags: re.Pattern[str]) -> TurnResult:
        try:
            reply = await self.llm_client.fetch_response(request, status_callback=self.status_callback)
        except LLMClientError as e:
            logger.error("Error in one-shot request: %s", e)
            return TurnResult(error=e.user_message)
        return TurnResult(message=assistant_message(tags.sub("", reply.content).strip()))

    async def list_models(self) -> list[str]:
        return await self.llm_client.list_models()
