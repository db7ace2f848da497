"""
Chat Logging Utilities

Shared logging helpers with per-module feature flags, so the turn loop and
the tool executor log in one consistent arrow style.
"""

from __future__ import annotations

import logging
from typing import Any

from .models import Message

logger = logging.getLogger(__name__)

_module_features: dict[str, dict[str, bool]] = {}


def set_module_features(features: dict[str, dict[str, bool]]) -> None:
    """Install feature flags, e.g. ``{"chat": {"llm_replies": True}}``."""
    _module_features.clear()
    _module_features.update({module: dict(flags) for module, flags in features.items()})


def should_log_feature(module: str, feature: str) -> bool:
    """Check if a specific logging feature is enabled."""
    return _module_features.get(module, {}).get(feature, False)


def _truncate(text: str, length: int) -> str:
    return text[:length] + "..." if len(text) > length else text


def log_llm_reply(reply: Message, context: str, chat_conf: dict[str, Any]) -> None:
    """
    Log an assistant reply, truncated to ``chat.service.logging.llm_reply``.

    Args:
        reply: The assistant message returned by the endpoint
        context: Descriptive context for the log entry
        chat_conf: Chat service configuration containing logging settings
    """
    if not should_log_feature("chat", "llm_replies"):
        return

    truncate_length = chat_conf.get("logging", {}).get("llm_reply", 500)
    log_parts = [f"LLM Reply ({context}):"]

    if reply.content:
        log_parts.append(f"Content: {_truncate(reply.content, truncate_length)}")

    if reply.tool_calls:
        log_parts.append(f"Tool calls: {len(reply.tool_calls)}")
        for i, call in enumerate(reply.tool_calls):
            log_parts.append(f"  [{i}] {call.function.name}")

    logger.info(" | ".join(log_parts))


def log_tool_execution_start(tool_name: str, call_index: int = 0, total_calls: int = 1) -> None:
    if not should_log_feature("chat", "tool_execution"):
        return
    if total_calls > 1:
        logger.info("→ Tool[%s]: executing tool call %d/%d", tool_name, call_index + 1, total_calls)
    else:
        logger.info("→ Tool[%s]: executing tool", tool_name)


def log_tool_execution_success(tool_name: str, content_length: int) -> None:
    if not should_log_feature("chat", "tool_execution"):
        return
    logger.info("← Tool[%s]: success, content length: %d", tool_name, content_length)


def log_tool_execution_error(tool_name: str, error_msg: str) -> None:
    logger.error("← Tool[%s]: failed with error: %s", tool_name, error_msg)


def log_tool_args_error(tool_name: str, error: Exception) -> None:
    """Log malformed tool arguments."""
    logger.error("Malformed JSON arguments for %s: %s", tool_name, error)


def log_tool_arguments(tool_name: str, arguments: dict[str, Any], context: str, truncate_length: int = 500) -> None:
    """Log the arguments a tool is called with."""
    if not should_log_feature("chat", "tool_arguments"):
        return
    logger.info("→ Tool[%s]: arguments (%s): %s", tool_name, context, _truncate(str(arguments), truncate_length))


def log_tool_results(tool_name: str, results: str, context: str, truncate_length: int = 200) -> None:
    """Log the text a tool returned."""
    if not should_log_feature("chat", "tool_results"):
        return
    logger.info("← Tool[%s]: results (%s): %s", tool_name, context, _truncate(results, truncate_length))
