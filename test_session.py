#!/usr/bin/env python3
"""Tests for in-memory session operations."""

from __future__ import annotations

from mdchat.chat.models import ChatOptions, LineRange, Message, Role, assistant_message, user_message
from mdchat.chat.session import ChatSession


def _session(*messages: Message) -> ChatSession:
    return ChatSession(ChatOptions(model="m")).append_message(list(messages))


def test_append_keeps_line_ranges_aligned():
    session = ChatSession()

    session.append_message(user_message("a"))
    session.append_message([assistant_message("b"), user_message("c")], [LineRange(start=2, end=3), LineRange(start=4, end=4)])
    session.append_message([user_message("d"), user_message("e")], [LineRange(start=9, end=9)])

    assert len(session.line_ranges) == len(session.messages) == 5
    assert session.line_ranges[1] == LineRange(start=2, end=3)
    assert session.line_ranges[3] == LineRange()


def test_clean_up_removes_empty_and_ends_with_user():
    session = _session(
        Message(role=Role.SYSTEM, content=""),
        user_message("  "),
        user_message("question"),
        assistant_message("answer"),
    )

    session.clean_up()

    assert [(m.role, m.content) for m in session.messages] == [
        (Role.SYSTEM, ""),
        (Role.USER, "question"),
        (Role.ASSISTANT, "answer"),
        (Role.USER, ""),
    ]
    assert len(session.line_ranges) == 4


def test_clean_up_does_not_stack_user_messages():
    session = _session(user_message("question"))

    session.clean_up().clean_up()

    assert [(m.role, m.content) for m in session.messages] == [(Role.USER, "question")]


def test_reverse_roles():
    session = _session(Message(role=Role.SYSTEM, content="s"), user_message("u"), assistant_message("a"))

    session.reverse_roles()

    assert [m.role for m in session.messages] == [Role.SYSTEM, Role.ASSISTANT, Role.USER]


def test_chat_text():
    session = _session(user_message("hi"), assistant_message("hello"))

    assert session.chat_text(lambda role: f"## {role.value}") == "## user\nhi\n## assistant\nhello"


def test_setters_and_clone_are_independent():
    session = _session(user_message("hi"))
    session.set_model("gpt-x").set_max_tokens(42).set_max_tokens(None)

    other = session.clone()
    other.messages[0] = user_message("changed")
    other.set_model("gpt-y")

    assert session.options.model == "gpt-x"
    assert session.options.max_completion_tokens == 42
    assert session.messages[0].content == "hi"
    assert other.options.model == "gpt-y"


def test_message_wire_format():
    assert user_message("hi").to_api() == {"role": "user", "content": "hi"}
    message = Message.from_dict({"role": "assistant", "content": None, "tool_calls": []})
    assert message.content == ""
    assert message.tool_calls is None
