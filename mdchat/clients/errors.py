"""
LLM client error types.

Each error carries a ``user_message``: one readable line suitable for showing
to the person editing the document, separate from the detailed log message.
"""

from __future__ import annotations

import json
from typing import Any

HTTP_BAD_REQUEST = 400
HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403
HTTP_NOT_FOUND = 404
HTTP_TOO_MANY_REQUESTS = 429
HTTP_SERVER_ERROR = 500


class LLMClientError(Exception):
    """Base class for failures of a chat-completion request."""

    def __init__(self, message: str, user_message: str | None = None) -> None:
        super().__init__(message)
        self.user_message = user_message or message


class LLMTransportError(LLMClientError):
    """Connection failure or non-success HTTP status."""

    def __init__(
        self,
        message: str,
        user_message: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, user_message)
        self.status_code = status_code


class LLMResponseError(LLMClientError):
    """The endpoint answered, but the body is not a usable completion."""


def extract_api_error(body: str) -> str | None:
    """Pull ``error`` or ``error.message`` out of an API error body."""
    try:
        data: Any = json.loads(body)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or not data.get("error"):
        return None
    error = data["error"]
    if isinstance(error, str):
        return error
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return json.dumps(error)


def status_error(endpoint_name: str, base_url: str, status_code: int, reason: str, body: str) -> LLMTransportError:
    """Build the transport error for a non-success response."""
    api_error = extract_api_error(body)
    message = f"API Error: {api_error}" if api_error else f"API Error ({status_code}): {reason}"
    detail = f"{endpoint_name}: {api_error}" if api_error else f"Error from {endpoint_name}: {reason}"

    if status_code == HTTP_UNAUTHORIZED:
        user_message = f"Authentication failed: Please check your API key for {endpoint_name}."
    elif status_code == HTTP_TOO_MANY_REQUESTS:
        user_message = f"Rate limit exceeded for {endpoint_name}. Please wait and try again."
    elif status_code == HTTP_BAD_REQUEST:
        user_message = f"Invalid request: {detail}"
    elif status_code == HTTP_FORBIDDEN:
        user_message = f"Access forbidden: Check your API permissions for {endpoint_name}."
    elif status_code == HTTP_NOT_FOUND:
        user_message = f"Endpoint not found: {base_url} may be incorrect."
    elif status_code >= HTTP_SERVER_ERROR:
        user_message = f"Server error from {endpoint_name}: {reason}. Try again later."
    else:
        user_message = detail

    return LLMTransportError(message, user_message, status_code=status_code)
