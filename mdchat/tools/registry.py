"""
Tool registry.

Holds tool handlers by name plus the set of names the conversation has
enabled. A handler is usable when it is registered, reports itself available
and its classification is permitted by the injected ``ToolPolicy``.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from mdchat.chat.models import ToolClassification, ToolDefinition

from .base import DocumentPort, StatusSink, Tool, ToolContext

if TYPE_CHECKING:
    from mdchat.config import EndpointConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolPolicy:
    """Which tool classifications may be offered; unlisted ones are permitted."""

    enabled: Mapping[ToolClassification, bool] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> ToolPolicy:
        """Build from a ``{"UI": true, "Vault": false}`` style mapping."""
        enabled: dict[ToolClassification, bool] = {}
        for key, value in (data or {}).items():
            try:
                enabled[ToolClassification(key)] = bool(value)
            except ValueError:
                logger.warning("Ignoring unknown tool classification in policy: %s", key)
        return cls(enabled)

    def permits(self, classification: ToolClassification) -> bool:
        return self.enabled.get(classification, True)


class ToolRegistry:
    """Registered handlers, the enabled name set and the handler context."""

    def __init__(
        self,
        policy: ToolPolicy | None = None,
        document: DocumentPort | None = None,
        endpoint: EndpointConfig | None = None,
    ) -> None:
        self.policy = policy or ToolPolicy()
        self._all_tools: dict[str, Tool] = {}
        self._enabled: set[str] = set()
        self._status_callback: StatusSink | None = None
        self.context = ToolContext(self.status_update, document, endpoint)

    # ------------------------------------------------------------------
    # registration and enablement
    # ------------------------------------------------------------------

    def register(self, tool: Tool, enabled: bool = True) -> ToolRegistry:
        if tool.name in self._all_tools:
            logger.warning("Replacing already registered tool '%s'", tool.name)
        self._all_tools[tool.name] = tool
        if enabled:
            self._enabled.add(tool.name)
        logger.debug("Registered tool '%s' (%s)", tool.name, tool.classification.value)
        return self

    def enable(self, name: str) -> ToolRegistry:
        self._enabled.add(name)
        return self

    def disable(self, name: str) -> ToolRegistry:
        self._enabled.discard(name)
        return self

    def disable_all(self) -> ToolRegistry:
        self._enabled.clear()
        return self

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------

    def _is_usable(self, tool: Tool) -> bool:
        return self.policy.permits(tool.classification) and tool.is_available(self.context)

    def get_tool(self, name: str) -> Tool | None:
        """The usable handler for ``name``, enabled or not."""
        tool = self._all_tools.get(name)
        if tool is None or not self._is_usable(tool):
            return None
        return tool

    def get_tools(self, names: Iterable[str]) -> list[Tool]:
        return [tool for name in names if (tool := self.get_tool(name)) is not None]

    @property
    def tools(self) -> list[Tool]:
        """Enabled and usable handlers, in registration order."""
        return [tool for name, tool in self._all_tools.items() if name in self._enabled and self._is_usable(tool)]

    def get_name_list(self) -> list[str]:
        return [tool.name for tool in self.tools]

    def get_all_definitions(self) -> list[ToolDefinition]:
        """Definitions of every usable handler, regardless of enablement."""
        return [tool.get_definition() for tool in self._all_tools.values() if self._is_usable(tool)]

    def get_definitions(self, names: Iterable[str]) -> list[ToolDefinition]:
        return [tool.get_definition() for tool in self.get_tools(names)]

    def get_tool_names_by_classification(self, classification: ToolClassification) -> list[str]:
        return [name for name, tool in self._all_tools.items() if tool.classification == classification]

    def classification_for_tool(self, name: str) -> ToolClassification | None:
        tool = self._all_tools.get(name)
        return tool.classification if tool else None

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------

    async def execute_tool(self, name: str, args: dict[str, Any]) -> str:
        """Run a handler. Failures come back as ``Error: ...`` text, never raised."""
        tool = self.get_tool(name)
        if tool is None:
            logger.warning("Tool '%s' not found or not usable", name)
            return f"Error: Unknown tool '{name}'"
        try:
            return await tool.execute(args, self.context)
        except Exception as e:
            logger.error("← Tool[%s]: raised %s: %s", name, type(e).__name__, e)
            return f"Error: {e}"

    def set_status_callback(self, callback: StatusSink | None) -> None:
        self._status_callback = callback

    async def status_update(self, message: str) -> None:
        if self._status_callback is None:
            return
        result = self._status_callback(message)
        if inspect.isawaitable(result):
            await result
