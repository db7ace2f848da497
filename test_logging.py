#!/usr/bin/env python3
"""Tests for logging configuration and feature-gated log helpers."""

from __future__ import annotations

import logging

from mdchat.chat.logging_utils import (
    log_llm_reply,
    log_tool_arguments,
    set_module_features,
    should_log_feature,
)
from mdchat.chat.models import FunctionCall, Message, Role, ToolCall
from mdchat.main import build_parser, configure_logging


def test_configure_logging_sets_levels_and_features():
    configure_logging(
        {
            "level": "WARNING",
            "modules": {
                "chat": {"level": "DEBUG", "enable_features": {"llm_replies": True}},
                "clients": {"level": "ERROR"},
            },
        }
    )

    assert logging.getLogger().level == logging.WARNING
    assert logging.getLogger("mdchat.chat").level == logging.DEBUG
    assert logging.getLogger("mdchat.tools").level == logging.DEBUG
    assert logging.getLogger("mdchat.clients").level == logging.ERROR
    assert should_log_feature("chat", "llm_replies") is True
    assert should_log_feature("chat", "tool_results") is False
    assert should_log_feature("clients", "http_requests") is False


def test_llm_reply_logging_is_feature_gated(caplog):
    reply = Message(
        role=Role.ASSISTANT,
        content="x" * 50,
        tool_calls=[ToolCall(id="c1", function=FunctionCall(name="show_notice"))],
    )

    set_module_features({"chat": {"llm_replies": False}})
    with caplog.at_level(logging.INFO, logger="mdchat.chat.logging_utils"):
        log_llm_reply(reply, "hop 0", {"logging": {"llm_reply": 10}})
    assert caplog.records == []

    set_module_features({"chat": {"llm_replies": True}})
    with caplog.at_level(logging.INFO, logger="mdchat.chat.logging_utils"):
        log_llm_reply(reply, "hop 0", {"logging": {"llm_reply": 10}})
    message = caplog.records[-1].getMessage()
    assert "LLM Reply (hop 0)" in message
    assert "Content: xxxxxxxxxx..." in message
    assert "[0] show_notice" in message


def test_tool_arguments_are_truncated(caplog):
    set_module_features({"chat": {"tool_arguments": True}})

    with caplog.at_level(logging.INFO, logger="mdchat.chat.logging_utils"):
        log_tool_arguments("echo", {"text": "y" * 100}, "call 1/1", truncate_length=20)

    message = caplog.records[-1].getMessage()
    assert message.startswith("→ Tool[echo]: arguments (call 1/1): ")
    assert message.endswith("...")
    set_module_features({})


def test_cli_arguments():
    args = build_parser().parse_args(["chat", "notes.md", "--no-stream", "--model", "gpt-4o"])

    assert args.command == "chat"
    assert str(args.file) == "notes.md"
    assert args.no_stream is True
    assert args.model == "gpt-4o"
    assert build_parser().parse_args(["models"]).command == "models"


def test_cli_import_arguments():
    args = build_parser().parse_args(["import", "conversations.json", "--out", "chats"])

    assert args.command == "import"
    assert str(args.export) == "conversations.json"
    assert str(args.out) == "chats"
    assert str(build_parser().parse_args(["import", "conversations.json"]).out) == "."
