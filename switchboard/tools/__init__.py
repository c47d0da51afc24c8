"""Tools package for Switchboard."""

from switchboard.tools.registry import (
    Tool,
    ToolDescriptor,
    ToolKind,
    ToolRegistry,
    ToolResult,
)
from switchboard.tools.security import SecurityContext
from switchboard.tools.read import ReadFileTool
from switchboard.tools.write import WriteFileTool
from switchboard.tools.list_directory import ListDirectoryTool
from switchboard.tools.web_search import WebSearchTool
from switchboard.tools.shell import ExecuteCommandTool

__all__ = [
    "Tool",
    "ToolDescriptor",
    "ToolKind",
    "ToolRegistry",
    "ToolResult",
    "SecurityContext",
    "ReadFileTool",
    "WriteFileTool",
    "ListDirectoryTool",
    "WebSearchTool",
    "ExecuteCommandTool",
]
