"""
Tool Execution Handler

Runs the tool calls of one assistant reply against the registry and records
the exchange in both the session and the outgoing request, keeping every
recorded tool call paired with exactly one tool message.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from .argument_repair import fix_duplicated_arguments
from .logging_utils import (
    log_tool_args_error,
    log_tool_arguments,
    log_tool_execution_error,
    log_tool_execution_start,
    log_tool_execution_success,
    log_tool_results,
)
from .models import ChatRequest, Message, Role, ToolCall, tool_message

if TYPE_CHECKING:
    from mdchat.tools.registry import ToolRegistry

    from .session import ChatSession

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOOL_HOPS = 8


class ToolExecutor:
    """Executes tool calls sequentially and appends paired results."""

    def __init__(
        self,
        registry: ToolRegistry,
        max_tool_hops: int = DEFAULT_MAX_TOOL_HOPS,
        logging_config: dict[str, Any] | None = None,
    ) -> None:
        self.registry = registry
        self.max_tool_hops = max_tool_hops
        logging_config = logging_config or {}
        self.arguments_truncate = logging_config.get("tool_arguments", 500)
        self.results_truncate = logging_config.get("tool_results", 200)

    async def _run_call(self, call: ToolCall, index: int, total: int) -> str:
        tool_name = call.function.name
        arguments = fix_duplicated_arguments(call.function.arguments or "{}")
        try:
            args: Any = json.loads(arguments or "{}")
        except json.JSONDecodeError as e:
            log_tool_args_error(tool_name, e)
            return f"Error: Invalid JSON arguments: {e}"
        if not isinstance(args, dict):
            log_tool_execution_error(tool_name, "arguments are not a JSON object")
            return "Error: Tool arguments must be a JSON object"

        log_tool_arguments(tool_name, args, f"call {index + 1}/{total}", self.arguments_truncate)
        log_tool_execution_start(tool_name, index, total)
        result = await self.registry.execute_tool(tool_name, args)
        if result.startswith("Error:"):
            log_tool_execution_error(tool_name, result)
        else:
            log_tool_execution_success(tool_name, len(result))
        log_tool_results(tool_name, result, f"call {index + 1}/{total}", self.results_truncate)
        return result

    async def execute_tool_calls(
        self,
        calls: list[ToolCall],
        session: ChatSession,
        request: ChatRequest,
        assistant_message: Message | None = None,
    ) -> bool:
        """
        Execute the resolvable calls and record them.

        Calls naming no usable tool are skipped and never recorded. When at
        least one call ran, the assistant message (with ``tool_calls`` narrowed
        to the executed calls) followed by one tool message per executed call
        is appended to ``session`` and ``request``.

        Returns:
            True if any tool was executed.
        """
        runnable = [call for call in calls if self.registry.get_tool(call.function.name) is not None]
        skipped = len(calls) - len(runnable)
        if skipped:
            logger.warning("Skipping %d tool calls with no usable tool", skipped)
        if not runnable:
            return False

        logger.info("→ Tool: executing %d tool calls", len(runnable))
        executed: list[tuple[ToolCall, str]] = []
        for index, call in enumerate(runnable):
            executed.append((call, await self._run_call(call, index, len(runnable))))
        logger.info("← Tool: completed all tool executions")

        source = assistant_message or Message(role=Role.ASSISTANT, tool_calls=calls)
        executed_ids = {call.id for call, _ in executed}
        kept_calls = [call for call in (source.tool_calls or calls) if call.id in executed_ids]
        recorded = source.model_copy(update={"content": source.content or "", "tool_calls": kept_calls or None})

        session.append_message(recorded)
        request.add_message(recorded)
        for call, result in executed:
            reply = tool_message(result, call.id)
            session.append_message(reply)
            request.add_message(reply)
        return True

    @staticmethod
    def filter_out_uncalled_tool_calls(group: list[Message]) -> list[Message]:
        """
        Drop from the leading assistant message every tool call that has no
        matching tool message in the rest of the group.
        """
        if not group:
            return group
        agent, *responses = group
        if not agent.tool_calls:
            return group
        answered = {msg.tool_call_id for msg in responses if msg.tool_call_id}
        kept = [call for call in agent.tool_calls if call.id in answered]
        return [agent.model_copy(update={"tool_calls": kept or None}), *responses]

    def check_tool_hop_limit(self, hops: int) -> tuple[bool, str | None]:
        """
        Check if tool call hop limit has been reached.

        Returns:
            tuple: (should_stop, warning_message)
        """
        if hops >= self.max_tool_hops:
            warning_msg = (
                f"⚠️ Reached maximum tool call limit ({self.max_tool_hops}). Stopping to prevent infinite recursion."
            )
            logger.warning("Maximum tool hops (%d) reached, stopping recursion", self.max_tool_hops)
            return True, warning_msg
        return False, None
