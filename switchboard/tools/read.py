"""Read tool for reading file contents."""

import asyncio
from pathlib import Path
from typing import Any

from switchboard.exceptions import ToolIOError
from switchboard.logging import get_logger
from switchboard.tools.registry import Tool, ToolKind, ToolResult
from switchboard.tools.security import SecurityContext

log = get_logger(__name__)


def _read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8", errors="replace")


class ReadFileTool(Tool):
    """Read file contents."""

    name = "read_file"
    kind = ToolKind.READ_FILE
    description = (
        "Read the contents of a text file from the filesystem. "
        "Returns the file content as a string. "
        "Use this when you need to examine file contents."
    )
    parameters = {
        "type": "object",
        "properties": {
            "filepath": {
                "type": "string",
                "description": "The path to the file to read (absolute or relative to current directory)",
            },
        },
        "required": ["filepath"],
    }

    def __init__(self, security: SecurityContext):
        self.security = security

    async def execute(self, filepath: str, **kwargs: Any) -> ToolResult:
        """Read a file (path and size are already authorized)."""
        file_path = self.security.resolve(filepath)
        if not file_path.exists():
            raise ToolIOError(self.name, f"File not found: {filepath}")
        if not file_path.is_file():
            raise ToolIOError(self.name, f"Not a file: {filepath}")

        try:
            content = await asyncio.to_thread(_read_text, file_path)
        except OSError as e:
            log.error("Read failed", path=filepath, error=str(e))
            raise ToolIOError(self.name, f"Failed to read file {filepath}: {e}") from e

        return ToolResult(success=True, content=f"Contents of {filepath}:\n\n{content}")
