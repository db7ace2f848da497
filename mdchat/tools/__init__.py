"""Tool handlers, the registry that gates them and structured tool output."""

from .base import DocumentPort, FileSystemPort, Tool, ToolContext
from .editor_tools import GetActiveContextTool, ReplaceInNoteTool, ShowNoticeTool, default_tools
from .registry import ToolPolicy, ToolRegistry

__all__ = [
    "DocumentPort",
    "FileSystemPort",
    "GetActiveContextTool",
    "ReplaceInNoteTool",
    "ShowNoticeTool",
    "Tool",
    "ToolContext",
    "ToolPolicy",
    "ToolRegistry",
    "default_tools",
]
