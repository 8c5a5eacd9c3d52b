import asyncio
from pathlib import Path

import pytest

from turnloop.config import Config
from turnloop.core.tool_scheduler import ToolCallRequest, ToolScheduler
from turnloop.tools.base import ToolErrorKind
from turnloop.tools.read_file import ReadFileTool
from turnloop.tools.read_many_files import ReadManyFilesTool
from turnloop.tools.registry import ToolRegistry


def _config(tmp_path: Path) -> Config:
    cfg = Config()
    cfg.session.target_dir = str(tmp_path)
    return cfg


class SpyReadFileTool(ReadFileTool):
    def __init__(self, config: Config):
        super().__init__(config)
        self.executed = False

    async def execute(self, params, abort_event, update_output=None):
        self.executed = True
        return await super().execute(params, abort_event, update_output)


@pytest.mark.asyncio
async def test_read_file_limit_without_offset_returns_first_lines(tmp_path: Path):
    target = tmp_path / "sample.txt"
    target.write_text("line1\nline2\nline3\n", encoding="utf-8")

    tool = ReadFileTool(_config(tmp_path))
    result = await tool.execute({"absolute_path": str(target), "limit": 2}, asyncio.Event())

    assert result.success is True
    assert "[File content truncated: showing lines 1-2 of 4 total lines." in result.llm_content
    assert "line1\nline2" in result.llm_content
    assert "line3" not in result.llm_content


@pytest.mark.asyncio
async def test_read_file_with_offset_reads_window(tmp_path: Path):
    target = tmp_path / "sample.txt"
    target.write_text("\n".join(f"row{i}" for i in range(10)), encoding="utf-8")

    tool = ReadFileTool(_config(tmp_path))
    result = await tool.execute({"absolute_path": str(target), "offset": 5, "limit": 2}, asyncio.Event())

    assert "showing lines 6-7 of 10" in result.llm_content
    assert result.llm_content.endswith("row5\nrow6")


def test_read_file_rejects_relative_path(tmp_path: Path):
    tool = ReadFileTool(_config(tmp_path))

    error = tool.validate_params({"absolute_path": "notes.txt"})

    assert error is not None
    assert "must be absolute" in error


def test_read_file_rejects_path_outside_root(tmp_path: Path):
    root = tmp_path / "root"
    root.mkdir()
    tool = ReadFileTool(_config(root))

    error = tool.validate_params({"absolute_path": str(tmp_path / "elsewhere.txt")})

    assert error is not None
    assert "within the root directory" in error


def test_read_file_rejects_negative_offset_and_zero_limit(tmp_path: Path):
    tool = ReadFileTool(_config(tmp_path))
    path = str(tmp_path / "a.txt")

    assert tool.validate_params({"absolute_path": path, "offset": -1}) == "Offset must be a non-negative number"
    assert tool.validate_params({"absolute_path": path, "limit": 0}) == "Limit must be a positive number"


@pytest.mark.asyncio
async def test_relative_path_call_never_executes(tmp_path: Path):
    cfg = _config(tmp_path)
    tool = SpyReadFileTool(cfg)
    registry = ToolRegistry(cfg)
    registry.register(tool)
    scheduler = ToolScheduler(registry, cfg)

    outcome = (await scheduler.schedule(
        [ToolCallRequest(call_id="r1", name="read_file", args={"absolute_path": "relative.txt"})],
        asyncio.Event(),
    ))[0]

    assert outcome.error_kind == ToolErrorKind.INVALID_PARAMS
    assert tool.executed is False


@pytest.mark.asyncio
async def test_read_file_returns_image_as_inline_data(tmp_path: Path):
    image = tmp_path / "pixel.png"
    image.write_bytes(b"\x89PNG\r\n\x1a\n" + b"\x00" * 16)

    result = await ReadFileTool(_config(tmp_path)).execute({"absolute_path": str(image)}, asyncio.Event())

    assert isinstance(result.llm_content, list)
    assert result.llm_content[0].inline_data.mime_type == "image/png"


@pytest.mark.asyncio
async def test_read_file_missing_file_is_failure(tmp_path: Path):
    result = await ReadFileTool(_config(tmp_path)).execute(
        {"absolute_path": str(tmp_path / "missing.txt")}, asyncio.Event()
    )

    assert result.success is False
    assert "File not found" in result.error.message


@pytest.mark.asyncio
async def test_read_many_files_concatenates_with_separators(tmp_path: Path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "a.py").write_text("print('a')\n", encoding="utf-8")
    (tmp_path / "src" / "b.py").write_text("print('b')\n", encoding="utf-8")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "dep.py").write_text("ignored\n", encoding="utf-8")
    (tmp_path / "blob.dat").write_bytes(b"\x00\x01\x02")

    tool = ReadManyFilesTool(_config(tmp_path))
    result = await tool.execute({"paths": ["**/*"]}, asyncio.Event())

    assert "--- src/a.py ---" in result.llm_content
    assert "--- src/b.py ---" in result.llm_content
    assert "print('b')" in result.llm_content
    assert "ignored" not in result.llm_content
    assert "blob.dat" not in result.llm_content


@pytest.mark.asyncio
async def test_read_many_files_reports_when_nothing_matches(tmp_path: Path):
    tool = ReadManyFilesTool(_config(tmp_path))

    result = await tool.execute({"paths": ["*.md"]}, asyncio.Event())

    assert result.llm_content == "No files matching the criteria were found or all were skipped."
