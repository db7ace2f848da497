"""Tool handler base class and the narrow context handlers run with."""

from __future__ import annotations

import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, ClassVar, Protocol

from mdchat.chat.models import (
    ToolClassification,
    ToolDefinition,
    ToolFunctionDefinition,
    ToolFunctionParameters,
)

if TYPE_CHECKING:
    from mdchat.config import EndpointConfig

logger = logging.getLogger(__name__)

StatusSink = Callable[[str], "None | Awaitable[None]"]


class DocumentPort(Protocol):
    """The open document, as seen by editor tools."""

    path: str

    def get_text(self) -> str: ...

    def set_text(self, text: str) -> None: ...

    def get_selection(self) -> str: ...

    def get_cursor(self) -> tuple[int, int]: ...


class FileSystemPort(Protocol):
    """Note storage: resolves ``[[link]]`` targets and reads or writes notes by path."""

    def resolve_link(self, link: str, source_path: str | None = None) -> str | None: ...

    def read_text(self, path: str) -> str: ...

    def write_text(self, path: str, text: str) -> None: ...


class ToolContext:
    """
    What a handler may touch while executing: a status sink, the active
    document (if any) and the endpoint the conversation talks to.
    """

    def __init__(
        self,
        status_sink: StatusSink | None = None,
        document: DocumentPort | None = None,
        endpoint: EndpointConfig | None = None,
    ) -> None:
        self.status_sink = status_sink
        self.document = document
        self.endpoint = endpoint

    async def status(self, message: str) -> None:
        """Forward a progress message to the current sink."""
        if self.status_sink is None:
            logger.debug("Tool status (no sink): %s", message)
            return
        result = self.status_sink(message)
        if inspect.isawaitable(result):
            await result


class Tool(ABC):
    """A callable capability offered to the model."""

    name: ClassVar[str]
    description: ClassVar[str]
    parameters: ClassVar[dict[str, Any]]
    classification: ClassVar[ToolClassification]

    def is_available(self, context: ToolContext) -> bool:
        """Whether the handler can run right now."""
        return True

    @abstractmethod
    async def execute(self, args: dict[str, Any], context: ToolContext) -> str:
        """Run the tool; the returned text becomes the tool message content."""

    def get_definition(self) -> ToolDefinition:
        return ToolDefinition(
            function=ToolFunctionDefinition(
                name=self.name,
                description=self.description,
                parameters=ToolFunctionParameters.model_validate(self.parameters),
            )
        )
