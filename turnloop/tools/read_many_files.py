"""Concatenate many workspace files into one result."""

import asyncio
import fnmatch
import glob
from pathlib import Path
from typing import Any

from turnloop.config import Config
from turnloop.llm import Part
from turnloop.logging import get_logger
from turnloop.tools.base import OutputUpdateHandler, Tool, ToolResult
from turnloop.utils.file_utils import is_within_root, make_relative, process_single_file_content

log = get_logger(__name__)

DEFAULT_EXCLUDES = [
    "**/node_modules/**",
    "**/.git/**",
    "**/.vscode/**",
    "**/.idea/**",
    "**/dist/**",
    "**/build/**",
    "**/coverage/**",
    "**/__pycache__/**",
    "**/.venv/**",
    "**/*.pyc",
    "**/*.pyo",
    "**/*.bin",
    "**/*.exe",
    "**/*.dll",
    "**/*.so",
    "**/*.dylib",
    "**/*.class",
    "**/*.jar",
    "**/*.zip",
    "**/*.tar",
    "**/*.gz",
    "**/*.7z",
    "**/*.DS_Store",
    "**/.env",
]

SEPARATOR_FORMAT = "--- {path} ---"
_EXPLICIT_MEDIA_SUFFIXES = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp", ".pdf"}


def _matches_any(relative: str, patterns: list[str]) -> bool:
    for pattern in patterns:
        if fnmatch.fnmatch(relative, pattern):
            return True
        # "**/x/**" should also match "x/..." at the root
        if pattern.startswith("**/") and fnmatch.fnmatch(relative, pattern[3:]):
            return True
    return False


class ReadManyFilesTool(Tool):
    """Read several files matched by paths or glob patterns."""

    name = "read_many_files"
    display_name = "ReadManyFiles"
    description = (
        "Reads content from multiple files specified by paths or glob patterns within the "
        "root directory. Text files are concatenated with a '--- {path} ---' separator. "
        "Binary files are skipped unless an image or PDF is requested by name."
    )
    parameters = {
        "type": "object",
        "properties": {
            "paths": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Paths or glob patterns relative to the root directory, e.g. ['src/**/*.py'].",
            },
            "exclude": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Optional: glob patterns to exclude.",
            },
            "use_default_excludes": {
                "type": "boolean",
                "description": "Optional: apply the default exclusion list. Defaults to true.",
            },
        },
        "required": ["paths"],
    }

    def __init__(self, config: Config):
        self.config = config
        self.target_dir = config.resolved_target_dir()

    def validate_params(self, params: dict[str, Any]) -> str | None:
        error = super().validate_params(params)
        if error:
            return error
        if not params["paths"]:
            return "The 'paths' parameter must contain at least one path or pattern."
        return None

    def get_description(self, params: dict[str, Any]) -> str:
        paths = params.get("paths") or []
        return f"Will attempt to read files matching: {', '.join(str(p) for p in paths)}"

    def _collect(self, patterns: list[str], excludes: list[str]) -> list[Path]:
        found: dict[Path, None] = {}
        for pattern in patterns:
            for raw in sorted(glob.glob(pattern, root_dir=str(self.target_dir), recursive=True)):
                candidate = (self.target_dir / raw).resolve()
                if not candidate.is_file() or not is_within_root(candidate, self.target_dir):
                    continue
                if _matches_any(make_relative(candidate, self.target_dir), excludes):
                    continue
                found.setdefault(candidate, None)
        return list(found)

    def _read_all(self, params: dict[str, Any]) -> ToolResult:
        excludes = list(params.get("exclude") or [])
        if params.get("use_default_excludes", True):
            excludes = DEFAULT_EXCLUDES + excludes

        files = self._collect([str(p) for p in params["paths"]], excludes)
        explicit = {str(p) for p in params["paths"]}

        text_chunks: list[str] = []
        media_parts = []
        skipped: list[str] = []
        for path in files:
            relative = make_relative(path, self.target_dir)
            if path.suffix.lower() in _EXPLICIT_MEDIA_SUFFIXES and relative not in explicit:
                skipped.append(f"{relative} (media not requested by name)")
                continue
            processed = process_single_file_content(
                path,
                self.target_dir,
                max_bytes=self.config.tools.read_file.max_bytes,
            )
            if processed.error:
                skipped.append(f"{relative} ({processed.error})")
                continue
            if isinstance(processed.llm_content, str):
                if processed.llm_content.startswith("Cannot display content of binary file"):
                    skipped.append(f"{relative} (binary)")
                    continue
                text_chunks.append(f"{SEPARATOR_FORMAT.format(path=relative)}\n\n{processed.llm_content}\n\n")
            else:
                media_parts.append(processed.llm_content)

        read_count = len(text_chunks) + len(media_parts)
        display = f"Read {read_count} file(s)"
        if skipped:
            display += f", skipped {len(skipped)}:\n" + "\n".join(f"- {item}" for item in skipped)

        if not read_count:
            return ToolResult(
                llm_content="No files matching the criteria were found or all were skipped.",
                return_display=display,
            )
        if media_parts:
            parts = [Part.from_text(chunk) for chunk in text_chunks] + media_parts
            return ToolResult(llm_content=parts, return_display=display)
        return ToolResult(llm_content="".join(text_chunks), return_display=display)

    async def execute(
        self,
        params: dict[str, Any],
        abort_event: asyncio.Event,
        update_output: OutputUpdateHandler | None = None,
    ) -> ToolResult:
        """Read every matching file and concatenate the text ones."""
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, lambda: self._read_all(params))
        log.debug("Read many files", paths=params["paths"], display=result.return_display.splitlines()[0])
        return result
