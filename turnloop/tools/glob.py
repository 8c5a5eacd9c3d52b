"""Glob tool for finding files by pattern."""

import asyncio
import glob
import os
from pathlib import Path
from typing import Any

from turnloop.config import Config
from turnloop.logging import get_logger
from turnloop.tools.base import OutputUpdateHandler, Tool, ToolErrorKind, ToolResult
from turnloop.utils.file_utils import is_within_root

log = get_logger(__name__)

_IGNORED_DIRS = {".git", "node_modules", "__pycache__"}


class GlobTool(Tool):
    """Find files by pattern."""

    name = "glob"
    display_name = "FindFiles"
    description = (
        "Efficiently finds files matching specific glob patterns (e.g., `src/**/*.py`, `*.md`), "
        "returning absolute paths sorted by modification time (newest first)."
    )
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {
                "type": "string",
                "description": "Glob pattern (e.g., '**/*.py', 'docs/*.md')",
            },
            "path": {
                "type": "string",
                "description": "Optional: absolute path of the directory to search within. Defaults to the root directory.",
            },
        },
        "required": ["pattern"],
    }

    def __init__(self, config: Config):
        self.config = config
        self.target_dir = config.resolved_target_dir()

    def validate_params(self, params: dict[str, Any]) -> str | None:
        error = super().validate_params(params)
        if error:
            return error
        if not str(params["pattern"]).strip():
            return "The 'pattern' parameter cannot be empty."

        search_dir = self._search_dir(params)
        if not is_within_root(search_dir, self.target_dir):
            return f"Search path (\"{search_dir}\") resolves outside the root directory (\"{self.target_dir}\")."
        if not search_dir.is_dir():
            return f"Search path is not a directory: {search_dir}"
        return None

    def _search_dir(self, params: dict[str, Any]) -> Path:
        raw = params.get("path")
        if not raw:
            return self.target_dir
        return (self.target_dir / raw).resolve()

    def get_description(self, params: dict[str, Any]) -> str:
        description = f"'{params.get('pattern', '')}'"
        if params.get("path"):
            description += f" within {params['path']}"
        return description

    @staticmethod
    def _find(search_dir: Path, pattern: str) -> list[Path]:
        matches: list[Path] = []
        for raw in glob.glob(pattern, root_dir=str(search_dir), recursive=True):
            candidate = search_dir / raw
            if not candidate.is_file():
                continue
            if any(part in _IGNORED_DIRS for part in Path(raw).parts):
                continue
            matches.append(candidate.resolve())
        matches.sort(key=lambda p: os.path.getmtime(p), reverse=True)
        return matches

    async def execute(
        self,
        params: dict[str, Any],
        abort_event: asyncio.Event,
        update_output: OutputUpdateHandler | None = None,
    ) -> ToolResult:
        """Find files matching pattern, newest first."""
        search_dir = self._search_dir(params)
        pattern = str(params["pattern"])
        try:
            # Find files (sync, but run in executor to not block)
            loop = asyncio.get_running_loop()
            matches = await loop.run_in_executor(None, lambda: self._find(search_dir, pattern))
        except OSError as e:
            log.error("Glob failed", pattern=pattern, error=str(e))
            return ToolResult.failure(f"Error during glob search operation: {e}", ToolErrorKind.EXECUTION_FAILURE)

        if not matches:
            message = f'No files found matching pattern "{pattern}" within {search_dir}.'
            return ToolResult(llm_content=message, return_display="No files found")

        listing = "\n".join(str(match) for match in matches)
        return ToolResult(
            llm_content=(
                f'Found {len(matches)} file(s) matching "{pattern}" within {search_dir}, '
                f"sorted by modification time (newest first):\n{listing}"
            ),
            return_display=f"Found {len(matches)} matching file(s)",
        )
