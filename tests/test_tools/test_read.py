from pathlib import Path

import pytest

from switchboard.exceptions import ToolIOError
from switchboard.tools.read import ReadFileTool
from switchboard.tools.registry import ToolRegistry
from switchboard.tools.security import SecurityContext


@pytest.mark.asyncio
async def test_read_file_returns_contents_with_header(tmp_path: Path):
    (tmp_path / "notes.txt").write_text("line1\nline2\n", encoding="utf-8")
    tool = ReadFileTool(SecurityContext.build([tmp_path], base_dir=tmp_path))

    result = await tool.execute(filepath="notes.txt")

    assert result.success is True
    assert result.content == "Contents of notes.txt:\n\nline1\nline2\n"


@pytest.mark.asyncio
async def test_read_missing_file_raises_io_error(tmp_path: Path):
    tool = ReadFileTool(SecurityContext.build([tmp_path], base_dir=tmp_path))

    with pytest.raises(ToolIOError):
        await tool.execute(filepath="missing.txt")


@pytest.mark.asyncio
async def test_registry_denies_read_outside_allowed_roots(tmp_path: Path):
    root = tmp_path / "project"
    root.mkdir()
    (tmp_path / "secret.txt").write_text("top secret", encoding="utf-8")
    registry = ToolRegistry(SecurityContext.build([root], base_dir=root))
    registry.register(ReadFileTool(registry.security))

    result = await registry.execute("read_file", {"filepath": "../secret.txt"})

    assert result.success is False
    assert result.error_kind.value == "permission_denied"
    assert "top secret" not in (result.content or "")


@pytest.mark.asyncio
async def test_registry_rejects_files_over_size_limit(tmp_path: Path):
    (tmp_path / "big.txt").write_text("x" * 64, encoding="utf-8")
    security = SecurityContext.build([tmp_path], base_dir=tmp_path, max_file_size=16)
    registry = ToolRegistry(security)
    registry.register(ReadFileTool(security))

    result = await registry.execute("read_file", {"filepath": "big.txt"})

    assert result.success is False
    assert result.error_kind.value == "permission_denied"
