"""
LLM HTTP client for OpenAI-compatible chat-completions endpoints.

One call to ``fetch_response`` is one request/response cycle. Streaming
responses are decoded by ``StreamParser``, a small line-buffering state
machine, and fragments are handed to the caller's delta callback as they
arrive. Both paths return a single assistant ``Message``.
"""

from __future__ import annotations

import inspect
import json
import logging
import re
import time
from collections.abc import Awaitable, Callable, Iterator
from enum import Enum
from typing import Any

import httpx
from pydantic import ValidationError

from mdchat.chat.logging_utils import should_log_feature
from mdchat.chat.models import ChatRequest, Message, Role, StreamDelta, ToolCall
from mdchat.config import Configuration, EndpointConfig

from .errors import LLMResponseError, LLMTransportError, status_error

logger = logging.getLogger(__name__)

StreamCallback = Callable[[StreamDelta], "bool | None | Awaitable[bool | None]"]
StatusCallback = Callable[[str], "None | Awaitable[None]"]

HTTP_OK = 200


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _drop_incomplete_tool_calls(raw: Any) -> dict[str, Any]:
    """Remove tool calls missing an id or a function name, as the stream parser does."""
    if not isinstance(raw, dict):
        raise TypeError(f"message is {type(raw).__name__}, not an object")
    calls = raw.get("tool_calls")
    if not calls:
        return raw
    complete = [
        call
        for call in calls
        if isinstance(call, dict)
        and call.get("id")
        and isinstance(call.get("function"), dict)
        and call["function"].get("name")
    ]
    if len(complete) < len(calls):
        logger.debug("Dropping %d incomplete tool call(s) from response", len(calls) - len(complete))
    return {**raw, "tool_calls": complete}


class StreamState(str, Enum):
    """Phases of a streamed response."""

    AWAITING_BYTES = "awaiting_bytes"
    BUFFERING = "buffering"
    EMITTING_DELTA = "emitting_delta"
    DONE = "done"
    FAILED = "failed"


class StreamParser:
    """
    Incremental decoder for ``data:``-prefixed event lines.

    Text is buffered until a newline completes a line; the incomplete tail is
    kept for the next chunk. ``feed`` is a generator that processes one line
    per step, so a consumer that stops iterating leaves later lines untouched.
    """

    DATA_PREFIX = "data:"
    DONE_TOKEN = "[DONE]"

    def __init__(self) -> None:
        self.state = StreamState.AWAITING_BYTES
        self.finish_reason: str | None = None
        self._buffer = ""
        self._parts: list[str] = []
        self._tool_calls: list[dict[str, Any]] = []
        self.malformed_events = 0

    @property
    def done(self) -> bool:
        return self.state in (StreamState.DONE, StreamState.FAILED)

    @property
    def content(self) -> str:
        return "".join(self._parts)

    def feed(self, chunk: str) -> Iterator[str]:
        """Buffer a chunk and yield the content fragment of each complete line."""
        if self.done:
            return
        self.state = StreamState.BUFFERING
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        yield from self._process_lines(lines)
        if not self.done:
            self.state = StreamState.AWAITING_BYTES

    def finish(self) -> Iterator[str]:
        """Process a final line that arrived without a trailing newline."""
        if self.done:
            return
        tail, self._buffer = self._buffer, ""
        if tail.strip():
            yield from self._process_lines([tail])
        self.state = StreamState.DONE

    def stop(self) -> None:
        """End the stream early; accumulated content is kept."""
        self.state = StreamState.DONE

    def fail(self) -> None:
        self.state = StreamState.FAILED

    def _process_lines(self, lines: list[str]) -> Iterator[str]:
        for line in lines:
            fragment = self._process_line(line)
            if self.done:
                return
            if fragment:
                self.state = StreamState.EMITTING_DELTA
                yield fragment
                if self.done:
                    return
                self.state = StreamState.BUFFERING

    def _process_line(self, line: str) -> str | None:
        line = line.strip()
        if not line.startswith(self.DATA_PREFIX):
            return None

        data = line[len(self.DATA_PREFIX) :].strip()
        if data == self.DONE_TOKEN:
            self.state = StreamState.DONE
            return None

        try:
            chunk = json.loads(data)
        except json.JSONDecodeError as e:
            self.malformed_events += 1
            logger.warning("Skipping malformed stream event: %s", e)
            return None
        if not isinstance(chunk, dict):
            return None

        choices = chunk.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return None
        choice: dict[str, Any] = choices[0]
        delta: dict[str, Any] = choice.get("delta") or {}

        if choice.get("finish_reason"):
            self.finish_reason = choice["finish_reason"]

        for tool_call_delta in delta.get("tool_calls") or []:
            self._accumulate_tool_call_delta(tool_call_delta)

        content = delta.get("content")
        if content:
            self._parts.append(content)
            return content
        return None

    def _accumulate_tool_call_delta(self, delta: dict[str, Any]) -> None:
        """
        Merge a partial tool call into the call at the same index.

        The id, type and name arrive once; arguments arrive in pieces and are
        concatenated.
        """
        index = delta.get("index")
        if index is None:
            index = len(self._tool_calls)

        while len(self._tool_calls) <= index:
            self._tool_calls.append({"id": None, "type": "function", "function": {"name": None, "arguments": ""}})

        current_call = self._tool_calls[index]
        if delta.get("id"):
            current_call["id"] = delta["id"]
        if delta.get("type"):
            current_call["type"] = delta["type"]

        function_delta = delta.get("function") or {}
        if function_delta.get("name"):
            current_call["function"]["name"] = function_delta["name"]
        if function_delta.get("arguments"):
            current_call["function"]["arguments"] += function_delta["arguments"]

    def tool_calls(self) -> list[ToolCall]:
        """Completed tool calls; fragments missing an id or name are dropped."""
        complete: list[ToolCall] = []
        for call in self._tool_calls:
            if call.get("id") and call["function"].get("name"):
                complete.append(ToolCall.from_dict(call))
            else:
                logger.debug("Dropping incomplete streamed tool call: %s", call)
        return complete

    def message(self) -> Message:
        return Message(role=Role.ASSISTANT, content=self.content, tool_calls=self.tool_calls() or None)


class LLMClient:
    """Async HTTP client for one chat-completions endpoint."""

    def __init__(
        self,
        endpoint: EndpointConfig,
        pool_config: dict[str, Any] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = endpoint
        pool = pool_config or {}
        self.client = httpx.AsyncClient(
            base_url=endpoint.base_url,
            headers=self.get_headers(),
            timeout=pool.get("request_timeout_seconds", 120.0),
            http2=True,
            limits=httpx.Limits(
                max_connections=pool.get("max_connections", 10),
                max_keepalive_connections=pool.get("max_keepalive_connections", 5),
                keepalive_expiry=pool.get("keepalive_expiry_seconds", 30.0),
            ),
            transport=transport,
            trust_env=False,
        )
        logger.info("LLM client initialized for %s (%s)", endpoint.name, self.provider)

    @classmethod
    def from_configuration(cls, configuration: Configuration) -> LLMClient:
        """Build a client for the configured active endpoint."""
        return cls(configuration.get_endpoint(), configuration.get_connection_pool_config())

    @property
    def provider(self) -> str:
        return self.endpoint.provider

    def get_headers(self) -> dict[str, str]:
        """Auth headers; Anthropic uses its own key header."""
        if self.provider == "anthropic":
            return {
                "x-api-key": self.endpoint.api_key,
                "anthropic-version": "2023-06-01",
                "content-type": "application/json",
            }
        return {
            "Authorization": f"Bearer {self.endpoint.api_key}",
            "content-type": "application/json",
        }

    def _build_payload(self, request: ChatRequest, stream: bool) -> dict[str, Any]:
        """
        Build the JSON body from the request, passing through every option.

        Mistral expects ``max_tokens`` where others take ``max_completion_tokens``.
        """
        payload = request.to_payload()
        payload["stream"] = stream

        if self.provider == "mistral" and payload.get("max_completion_tokens"):
            payload["max_tokens"] = payload.pop("max_completion_tokens")

        return payload

    def _log_http_request(
        self,
        method: str,
        url: str,
        status_code: int | None = None,
        duration_ms: float | None = None,
    ) -> None:
        """Log HTTP request details when the clients.http_requests feature is on."""
        if not should_log_feature("clients", "http_requests"):
            return
        message_parts = [f"HTTP {method} {url}"]
        if status_code is not None:
            message_parts.append(f"Status: {status_code}")
        if duration_ms is not None:
            message_parts.append(f"Duration: {duration_ms:.2f}ms")
        logger.debug(" | ".join(message_parts))

    async def fetch_response(
        self,
        request: ChatRequest,
        stream_callback: StreamCallback | None = None,
        status_callback: StatusCallback | None = None,
    ) -> Message:
        """
        Perform one request/response cycle.

        Streams when the request asks for it and a callback is given; otherwise
        reads the whole body. Returns the assistant message either way.

        Raises:
            LLMTransportError: Connection failure or non-success status.
            LLMResponseError: Body that is not a usable completion.
        """
        stream = bool(request.stream and stream_callback is not None)
        payload = self._build_payload(request, stream)
        logger.info("→ LLM: sending request, model=%s, stream=%s", payload.get("model"), stream)
        if status_callback:
            await _maybe_await(status_callback(f"running: {payload.get('model')}"))

        start_time = time.monotonic()
        try:
            if stream:
                assert stream_callback is not None
                message = await self._fetch_streaming(payload, stream_callback)
            else:
                message = await self._fetch_once(payload)
        except httpx.HTTPError as e:
            logger.error("HTTP error talking to %s: %s", self.endpoint.name, e)
            raise LLMTransportError(
                f"Network request failed: {e!s}",
                f"Network error: Unable to connect to {self.endpoint.name}. Check your internet connection.",
            ) from e
        finally:
            if status_callback:
                await _maybe_await(status_callback(""))

        duration_ms = (time.monotonic() - start_time) * 1000
        logger.info(
            "← LLM: response complete in %.0fms, content length=%d, tool calls=%d",
            duration_ms,
            len(message.content),
            len(message.tool_calls or []),
        )
        return message

    async def _fetch_once(self, payload: dict[str, Any]) -> Message:
        start_time = time.monotonic()
        response = await self.client.post("/chat/completions", json=payload)
        self._log_http_request("POST", "/chat/completions", response.status_code, (time.monotonic() - start_time) * 1000)

        if response.status_code != HTTP_OK:
            raise self._status_error(response, response.text)

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise LLMResponseError(
                f"Failed to parse API response: {e}",
                f"Error parsing response from {self.endpoint.name}: {e}",
            ) from e

        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices or not isinstance(choices, list):
            logger.error("Invalid API response structure: %s", data)
            raise LLMResponseError(
                "Invalid API response structure: Missing choices",
                f"Invalid response from {self.endpoint.name}: Missing or empty choices array.",
            )
        raw_message = choices[0].get("message") if isinstance(choices[0], dict) else None
        if not raw_message:
            logger.error("Invalid API response structure: %s", data)
            raise LLMResponseError(
                "Invalid API response structure: Missing message",
                f"Invalid response from {self.endpoint.name}: Missing message in response.",
            )

        try:
            message = Message.from_dict(_drop_incomplete_tool_calls(raw_message))
        except (KeyError, TypeError, AttributeError, ValidationError) as e:
            logger.error("Invalid message in API response: %s", raw_message)
            raise LLMResponseError(
                f"Invalid API response message: {e}",
                f"Invalid response from {self.endpoint.name}: Malformed message in response.",
            ) from e
        return message.model_copy(update={"role": Role.ASSISTANT})

    async def _fetch_streaming(self, payload: dict[str, Any], stream_callback: StreamCallback) -> Message:
        parser = StreamParser()
        async with self.client.stream(
            "POST",
            "/chat/completions",
            json=payload,
            headers={"Accept": "text/event-stream", "Accept-Encoding": "identity"},
        ) as response:
            if response.status_code != HTTP_OK:
                body = (await response.aread()).decode("utf-8", errors="replace")
                parser.fail()
                raise self._status_error(response, body)

            try:
                async for chunk in response.aiter_text():
                    for fragment in parser.feed(chunk):
                        keep_going = await _maybe_await(stream_callback(StreamDelta(content=fragment)))
                        if keep_going is False:
                            logger.info("Stream stopped by caller")
                            parser.stop()
                            break
                    if parser.done:
                        break

                for fragment in parser.finish():
                    await _maybe_await(stream_callback(StreamDelta(content=fragment)))
            except httpx.HTTPError:
                parser.fail()
                raise

        if parser.malformed_events:
            logger.warning("Stream finished with %d malformed events skipped", parser.malformed_events)
        logger.debug("Stream finished, finish_reason=%s", parser.finish_reason)
        return parser.message()

    def _status_error(self, response: httpx.Response, body: str) -> LLMTransportError:
        error = status_error(
            self.endpoint.name,
            self.endpoint.base_url,
            response.status_code,
            response.reason_phrase,
            body,
        )
        logger.error("%s", error)
        return error

    async def list_models(self) -> list[str]:
        """Model ids offered by the endpoint, without any ``vendor/`` prefix."""
        logger.info("→ LLM: fetching models from %s", self.endpoint.name)
        try:
            response = await self.client.get("/models")
            response.raise_for_status()
            data = response.json().get("data", [])
        except (httpx.HTTPError, json.JSONDecodeError, AttributeError) as e:
            logger.error("Error fetching models: %s", e)
            return []
        return [re.sub(r".+/", "", item["id"]) or item["id"] for item in data if item.get("id")]

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self) -> LLMClient:
        """Async context manager entry."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Async context manager exit."""
        await self.close()
