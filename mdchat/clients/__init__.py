"""Clients package containing the LLM HTTP client."""

from __future__ import annotations

from .errors import LLMClientError, LLMResponseError, LLMTransportError
from .llm_client import LLMClient, StreamParser

__all__ = ["LLMClient", "LLMClientError", "LLMResponseError", "LLMTransportError", "StreamParser"]
