"""Write tool for writing file contents."""

import asyncio
from pathlib import Path
from typing import Any

from switchboard.exceptions import ToolIOError
from switchboard.logging import get_logger
from switchboard.tools.registry import Tool, ToolKind, ToolResult
from switchboard.tools.security import SecurityContext

log = get_logger(__name__)


def _write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


class WriteFileTool(Tool):
    """Write content to files."""

    name = "write_file"
    kind = ToolKind.WRITE_FILE
    description = (
        "Write content to a file on the filesystem. "
        "Creates the file if it doesn't exist, overwrites if it does. "
        "Parent directories are created as needed."
    )
    parameters = {
        "type": "object",
        "properties": {
            "filepath": {
                "type": "string",
                "description": "The path to the file to write",
            },
            "content": {
                "type": "string",
                "description": "The content to write to the file",
            },
        },
        "required": ["filepath", "content"],
    }

    def __init__(self, security: SecurityContext):
        self.security = security

    async def execute(self, filepath: str, content: str, **kwargs: Any) -> ToolResult:
        """Write content to a file.

        Args:
            filepath: Path to file (inside an allowed root)
            content: Content to write

        Returns:
            ToolResult with status
        """
        file_path = self.security.resolve(filepath)
        try:
            await asyncio.to_thread(_write_text, file_path, content)
        except OSError as e:
            log.error("Write failed", path=filepath, error=str(e))
            raise ToolIOError(self.name, f"Failed to write file {filepath}: {e}") from e

        size = len(content.encode("utf-8"))
        log.info("Wrote file", path=str(file_path), bytes=size)
        return ToolResult(success=True, content=f"Successfully wrote {size} bytes to {filepath}")
