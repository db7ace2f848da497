#!/usr/bin/env python3
"""Tests for the streamed response parser and the LLM HTTP client."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from mdchat.chat.models import ChatRequest, Role, StreamDelta
from mdchat.clients.errors import LLMResponseError, LLMTransportError
from mdchat.clients.llm_client import LLMClient, StreamParser, StreamState
from mdchat.config import EndpointConfig


def _event(content: str | None = None, **delta) -> str:
    if content is not None:
        delta["content"] = content
    return "data: " + json.dumps({"choices": [{"delta": delta}]}) + "\n"


HELLO_STREAM = _event("Hel") + _event("lo") + "data: [DONE]\n"


def _endpoint(base_url: str = "https://api.openai.com/v1") -> EndpointConfig:
    return EndpointConfig(name="Test", base_url=base_url, api_key="test-key", default_model="gpt-test")


def _client(handler, base_url: str = "https://api.openai.com/v1") -> LLMClient:
    return LLMClient(_endpoint(base_url), transport=httpx.MockTransport(handler))


def _request(stream: bool = False, **extra) -> ChatRequest:
    return ChatRequest(model="gpt-test", messages=[{"role": "user", "content": "Hi"}], stream=stream, **extra)


def _completion(message: dict) -> dict:
    return {"choices": [{"message": message, "finish_reason": "stop"}]}


# ------------------------------------------------------------------
# StreamParser
# ------------------------------------------------------------------


def test_parser_concatenates_deltas():
    parser = StreamParser()

    fragments = list(parser.feed(HELLO_STREAM))

    assert fragments == ["Hel", "lo"]
    assert parser.state == StreamState.DONE
    message = parser.message()
    assert message.role == Role.ASSISTANT
    assert message.content == "Hello"
    assert message.tool_calls is None


@pytest.mark.parametrize("size", [1, 3, 7, 20])
def test_parser_handles_lines_split_across_chunks(size):
    parser = StreamParser()
    fragments: list[str] = []

    for start in range(0, len(HELLO_STREAM), size):
        fragments.extend(parser.feed(HELLO_STREAM[start : start + size]))

    assert "".join(fragments) == "Hello"
    assert parser.content == "Hello"
    assert parser.done


def test_parser_skips_malformed_events():
    parser = StreamParser()
    body = _event("a") + "data: {not json\n" + ": keep-alive\n\n" + _event("b") + "data: [DONE]\n"

    assert list(parser.feed(body)) == ["a", "b"]
    assert parser.malformed_events == 1
    assert parser.content == "ab"


def test_parser_ignores_events_after_done():
    parser = StreamParser()
    list(parser.feed(_event("a") + "data: [DONE]\n"))

    assert list(parser.feed(_event("late"))) == []
    assert parser.content == "a"


def test_parser_finish_processes_unterminated_line():
    parser = StreamParser()
    assert list(parser.feed(_event("a") + _event("b").rstrip("\n"))) == ["a"]

    assert list(parser.finish()) == ["b"]
    assert parser.content == "ab"
    assert parser.state == StreamState.DONE


def test_parser_accumulates_tool_calls_by_index():
    parser = StreamParser()
    body = (
        _event(tool_calls=[{"index": 0, "id": "call_1", "type": "function", "function": {"name": "show_notice", "arguments": ""}}])
        + _event(tool_calls=[{"index": 1, "id": "call_2", "function": {"name": "get_active_context", "arguments": "{}"}}])
        + _event(tool_calls=[{"index": 0, "function": {"arguments": '{"message"'}}])
        + _event(tool_calls=[{"index": 0, "function": {"arguments": ': "hi"}'}}])
        + "data: [DONE]\n"
    )

    assert list(parser.feed(body)) == []
    calls = parser.message().tool_calls

    assert calls is not None
    assert [(c.id, c.function.name, c.function.arguments) for c in calls] == [
        ("call_1", "show_notice", '{"message": "hi"}'),
        ("call_2", "get_active_context", "{}"),
    ]


def test_parser_drops_incomplete_tool_calls():
    parser = StreamParser()
    body = _event(tool_calls=[{"index": 0, "function": {"arguments": "{}"}}]) + "data: [DONE]\n"

    list(parser.feed(body))

    assert parser.message().tool_calls is None


# ------------------------------------------------------------------
# LLMClient, streaming
# ------------------------------------------------------------------


def test_streaming_fetch_calls_back_per_delta():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, text=HELLO_STREAM)

    deltas: list[str] = []

    def on_delta(delta: StreamDelta) -> bool:
        deltas.append(delta.content)
        return True

    async def run():
        async with _client(handler) as client:
            return await client.fetch_response(_request(stream=True), on_delta)

    message = asyncio.run(run())

    assert deltas == ["Hel", "lo"]
    assert message.role == Role.ASSISTANT
    assert message.content == "Hello"
    assert seen[0]["stream"] is True


def test_streaming_stops_when_callback_returns_false():
    body = _event("Hel") + _event("lo") + _event(" world") + "data: [DONE]\n"
    calls: list[str] = []

    async def on_delta(delta: StreamDelta) -> bool:
        calls.append(delta.content)
        return False

    async def run():
        async with _client(lambda request: httpx.Response(200, text=body)) as client:
            return await client.fetch_response(_request(stream=True), on_delta)

    message = asyncio.run(run())

    assert calls == ["Hel"]
    assert message.content == "Hel"


def test_streaming_callback_returning_none_keeps_going():
    async def run():
        async with _client(lambda request: httpx.Response(200, text=HELLO_STREAM)) as client:
            return await client.fetch_response(_request(stream=True), lambda delta: None)

    assert asyncio.run(run()).content == "Hello"


def test_stream_flag_without_callback_reads_whole_body():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json=_completion({"role": "assistant", "content": "Hello"}))

    async def run():
        async with _client(handler) as client:
            return await client.fetch_response(_request(stream=True))

    assert asyncio.run(run()).content == "Hello"
    assert seen[0]["stream"] is False


# ------------------------------------------------------------------
# LLMClient, single response
# ------------------------------------------------------------------


def test_non_stream_response_and_request_shape():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json=_completion(
                {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [{"id": "c1", "type": "function", "function": {"name": "show_notice", "arguments": "{}"}}],
                }
            ),
        )

    async def run():
        async with _client(handler) as client:
            return await client.fetch_response(_request(max_completion_tokens=100))

    message = asyncio.run(run())

    assert message.content == ""
    assert message.tool_calls is not None and message.tool_calls[0].function.name == "show_notice"
    request = seen[0]
    assert request.url.path == "/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer test-key"
    body = json.loads(request.content)
    assert body["model"] == "gpt-test"
    assert body["max_completion_tokens"] == 100
    assert body["messages"] == [{"role": "user", "content": "Hi"}]
    assert "tools" not in body


def test_reply_role_is_always_assistant():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_completion({"role": "user", "content": "odd"}))

    async def run():
        async with _client(handler) as client:
            return await client.fetch_response(_request())

    assert asyncio.run(run()).role == Role.ASSISTANT


@pytest.mark.parametrize(
    "body",
    [
        {"choices": []},
        {"object": "chat.completion"},
        {"choices": [{"finish_reason": "stop"}]},
    ],
)
def test_missing_choices_or_message_is_response_error(body):
    async def run():
        async with _client(lambda request: httpx.Response(200, json=body)) as client:
            return await client.fetch_response(_request())

    with pytest.raises(LLMResponseError):
        asyncio.run(run())


def test_single_reply_drops_incomplete_tool_calls():
    message = {
        "role": "assistant",
        "content": None,
        "tool_calls": [
            {"type": "function", "function": {"name": "x", "arguments": "{}"}},
            {"id": "c2", "type": "function", "function": {"arguments": "{}"}},
            {"id": "c3", "type": "function", "function": {"name": "show_notice", "arguments": "{}"}},
        ],
    }

    async def run():
        async with _client(lambda request: httpx.Response(200, json=_completion(message))) as client:
            return await client.fetch_response(_request())

    reply = asyncio.run(run())
    assert [call.id for call in reply.tool_calls] == ["c3"]
    assert reply.content == ""


def test_single_reply_with_only_incomplete_tool_calls_has_none():
    message = {"role": "assistant", "content": "hi", "tool_calls": [{"function": {"name": "x"}}]}

    async def run():
        async with _client(lambda request: httpx.Response(200, json=_completion(message))) as client:
            return await client.fetch_response(_request())

    reply = asyncio.run(run())
    assert reply.tool_calls is None
    assert reply.content == "hi"


@pytest.mark.parametrize(
    "message",
    [
        {"role": "bot", "content": "hi"},
        {"role": "assistant", "content": {"text": "hi"}},
        "hi",
    ],
)
def test_malformed_reply_message_is_response_error(message):
    async def run():
        async with _client(lambda request: httpx.Response(200, json=_completion(message))) as client:
            return await client.fetch_response(_request())

    with pytest.raises(LLMResponseError) as exc_info:
        asyncio.run(run())
    assert "Malformed message" in exc_info.value.user_message


def test_unparsable_body_is_response_error():
    async def run():
        async with _client(lambda request: httpx.Response(200, text="<html>")) as client:
            return await client.fetch_response(_request())

    with pytest.raises(LLMResponseError):
        asyncio.run(run())


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        (401, "Authentication failed"),
        (429, "Rate limit exceeded"),
        (403, "Access forbidden"),
        (404, "Endpoint not found"),
        (503, "Server error"),
    ],
)
def test_status_errors_map_to_user_messages(status, expected):
    async def run():
        async with _client(lambda request: httpx.Response(status, text="nope")) as client:
            return await client.fetch_response(_request())

    with pytest.raises(LLMTransportError) as exc_info:
        asyncio.run(run())

    assert exc_info.value.status_code == status
    assert expected in exc_info.value.user_message


def test_api_error_message_is_extracted():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"message": "model not found: gpt-9"}})

    async def run():
        async with _client(handler) as client:
            return await client.fetch_response(_request(stream=True), lambda delta: True)

    with pytest.raises(LLMTransportError) as exc_info:
        asyncio.run(run())

    assert "model not found: gpt-9" in exc_info.value.user_message
    assert "model not found: gpt-9" in str(exc_info.value)


def test_connection_failure_is_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def run():
        async with _client(handler) as client:
            return await client.fetch_response(_request())

    with pytest.raises(LLMTransportError) as exc_info:
        asyncio.run(run())

    assert "Network error" in exc_info.value.user_message


def test_status_callback_brackets_the_request():
    statuses: list[str] = []

    async def run():
        async with _client(lambda request: httpx.Response(200, json=_completion({"content": "x"}))) as client:
            return await client.fetch_response(_request(), status_callback=statuses.append)

    asyncio.run(run())

    assert statuses == ["running: gpt-test", ""]


def test_mistral_receives_max_tokens():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json=_completion({"content": "ok"}))

    async def run():
        async with _client(handler, "https://api.mistral.ai/v1") as client:
            return await client.fetch_response(_request(max_completion_tokens=64))

    asyncio.run(run())

    assert seen[0]["max_tokens"] == 64
    assert "max_completion_tokens" not in seen[0]


def test_anthropic_headers():
    client = LLMClient(_endpoint("https://api.anthropic.com/v1/"), transport=httpx.MockTransport(lambda r: httpx.Response(200)))

    headers = client.get_headers()

    assert headers["x-api-key"] == "test-key"
    assert headers["anthropic-version"] == "2023-06-01"
    assert "Authorization" not in headers
    asyncio.run(client.close())


def test_list_models_strips_vendor_prefix():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/models"
        return httpx.Response(200, json={"data": [{"id": "openai/gpt-4o"}, {"id": "gpt-4.1"}, {"object": "model"}]})

    async def run():
        async with _client(handler) as client:
            return await client.list_models()

    assert asyncio.run(run()) == ["gpt-4o", "gpt-4.1"]


def test_list_models_failure_returns_empty_list():
    async def run():
        async with _client(lambda request: httpx.Response(500)) as client:
            return await client.list_models()

    assert asyncio.run(run()) == []


def test_streamed_and_single_responses_agree():
    fragments = ["The ", "quick ", "fox"]
    stream = "".join(_event(part) for part in fragments) + "data: [DONE]\n"
    single = _completion({"role": "assistant", "content": "".join(fragments)})

    async def run(handler, stream_flag):
        async with _client(handler) as client:
            return await client.fetch_response(_request(stream=stream_flag), lambda delta: True)

    streamed = asyncio.run(run(lambda request: httpx.Response(200, text=stream), True))
    whole = asyncio.run(run(lambda request: httpx.Response(200, json=single), False))

    assert streamed == whole
