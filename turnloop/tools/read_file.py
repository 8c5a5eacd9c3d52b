"""Read tool for reading file contents."""

import asyncio
import os
from pathlib import Path
from typing import Any

from turnloop.config import Config
from turnloop.logging import get_logger
from turnloop.tools.base import OutputUpdateHandler, Tool, ToolErrorKind, ToolResult
from turnloop.utils.file_utils import is_within_root, make_relative, process_single_file_content

log = get_logger(__name__)


class ReadFileTool(Tool):
    """Read one file inside the workspace."""

    name = "read_file"
    display_name = "ReadFile"
    description = (
        "Reads and returns the content of a specified file from the local filesystem. "
        "Handles text, images (PNG, JPG, GIF, WEBP, SVG, BMP), and PDF files. For text files, "
        "it can read specific line ranges."
    )
    parameters = {
        "type": "object",
        "properties": {
            "absolute_path": {
                "type": "string",
                "description": "The absolute path to the file to read. Relative paths are not supported.",
            },
            "offset": {
                "type": "number",
                "description": "Optional: 0-based line number to start reading from. Requires 'limit'.",
            },
            "limit": {
                "type": "number",
                "description": "Optional: Maximum number of lines to read.",
            },
        },
        "required": ["absolute_path"],
    }

    def __init__(self, config: Config):
        self.config = config
        self.target_dir = config.resolved_target_dir()

    def validate_params(self, params: dict[str, Any]) -> str | None:
        error = super().validate_params(params)
        if error:
            return error

        file_path = str(params["absolute_path"])
        if not os.path.isabs(file_path):
            return (
                f"File path must be absolute, but was relative: {file_path}. "
                "You must provide an absolute path."
            )
        if not is_within_root(file_path, self.target_dir):
            return f"File path must be within the root directory ({self.target_dir}): {file_path}"
        offset = params.get("offset")
        if offset is not None and offset < 0:
            return "Offset must be a non-negative number"
        limit = params.get("limit")
        if limit is not None and limit <= 0:
            return "Limit must be a positive number"
        return None

    def get_description(self, params: dict[str, Any]) -> str:
        path = params.get("absolute_path")
        if not isinstance(path, str) or not path.strip():
            return "Path unavailable"
        return make_relative(path, self.target_dir)

    async def execute(
        self,
        params: dict[str, Any],
        abort_event: asyncio.Event,
        update_output: OutputUpdateHandler | None = None,
    ) -> ToolResult:
        """Read a file.

        Returns:
            ToolResult with the (possibly windowed) text, or an inline-data part for media
        """
        offset = params.get("offset")
        limit = params.get("limit")
        if limit is None:
            limit = self.config.tools.read_file.max_lines

        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(
            None,
            lambda: process_single_file_content(
                Path(params["absolute_path"]),
                self.target_dir,
                int(offset) if offset is not None else None,
                int(limit),
                self.config.tools.read_file.max_bytes,
            ),
        )

        if result.error:
            log.warning("Read failed", path=params["absolute_path"], error=result.error)
            return ToolResult.failure(result.error, ToolErrorKind.EXECUTION_FAILURE)

        llm_content = result.llm_content if isinstance(result.llm_content, str) else [result.llm_content]
        return ToolResult(llm_content=llm_content, return_display=result.return_display)
