"""Directory listing tool."""

import asyncio
from pathlib import Path
from typing import Any

from switchboard.exceptions import ToolIOError
from switchboard.tools.registry import Tool, ToolKind, ToolResult
from switchboard.tools.security import SecurityContext


def _list_entries(path: Path) -> list[str]:
    entries: list[str] = []
    for entry in path.iterdir():
        prefix = "[dir]" if entry.is_dir() else "[file]"
        entries.append(f"{prefix} {entry.name}")
    return sorted(entries)


class ListDirectoryTool(Tool):
    """List the entries of a directory."""

    name = "list_directory"
    kind = ToolKind.LIST_DIRECTORY
    description = (
        "List files and subdirectories in a directory. "
        "Defaults to the current directory."
    )
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "The directory path to list (defaults to current directory)",
            },
        },
        "required": [],
    }

    def __init__(self, security: SecurityContext):
        self.security = security

    async def execute(self, path: str = ".", **kwargs: Any) -> ToolResult:
        label = path or "."
        dir_path = self.security.resolve(label)
        if not dir_path.is_dir():
            raise ToolIOError(self.name, f"Not a directory: {label}")
        try:
            entries = await asyncio.to_thread(_list_entries, dir_path)
        except OSError as e:
            raise ToolIOError(self.name, f"Failed to read directory {label}: {e}") from e

        body = "\n".join(entries) if entries else "(empty directory)"
        return ToolResult(success=True, content=f"Contents of {label}:\n\n{body}")
