"""Write tool for writing file contents."""

import asyncio
import difflib
import os
from pathlib import Path
from typing import Any

from turnloop.config import ApprovalMode, Config
from turnloop.logging import get_logger
from turnloop.tools.base import (
    EditConfirmation,
    OutputUpdateHandler,
    Tool,
    ToolConfirmationOutcome,
    ToolErrorKind,
    ToolResult,
)
from turnloop.utils.file_utils import is_within_root, make_relative

log = get_logger(__name__)


def make_unified_diff(file_name: str, original: str, new: str) -> str:
    """Unified diff between two file versions."""
    return "".join(difflib.unified_diff(
        original.splitlines(keepends=True),
        new.splitlines(keepends=True),
        fromfile=f"{file_name} (Current)",
        tofile=f"{file_name} (Proposed)",
    ))


class WriteFileTool(Tool):
    """Create or overwrite a file inside the workspace."""

    name = "write_file"
    display_name = "WriteFile"
    description = (
        "Writes content to a specified file in the local filesystem. "
        "The user has the ability to modify `content`. If modified, this will be stated in the response."
    )
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {
                "type": "string",
                "description": "The absolute path to the file to write to. Relative paths are not supported.",
            },
            "content": {
                "type": "string",
                "description": "The content to write to the file.",
            },
        },
        "required": ["file_path", "content"],
    }

    def __init__(self, config: Config):
        self.config = config
        self.target_dir = config.resolved_target_dir()

    def validate_params(self, params: dict[str, Any]) -> str | None:
        error = super().validate_params(params)
        if error:
            return error

        file_path = str(params["file_path"])
        if not os.path.isabs(file_path):
            return f"File path must be absolute: {file_path}"
        if not is_within_root(file_path, self.target_dir):
            return f"File path must be within the root directory ({self.target_dir}): {file_path}"
        path = Path(file_path)
        if path.exists() and path.is_dir():
            return f"Path is a directory, not a file: {file_path}"
        return None

    def get_description(self, params: dict[str, Any]) -> str:
        path = params.get("file_path")
        if not isinstance(path, str) or not path.strip():
            return "Model did not provide valid parameters for write file tool"
        return f"Writing to {make_relative(path, self.target_dir)}"

    @staticmethod
    def _read_current(path: Path) -> str | None:
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8", errors="replace")

    async def should_confirm_execute(
        self,
        params: dict[str, Any],
        abort_event: asyncio.Event,
    ) -> EditConfirmation | None:
        if self.config.get_approval_mode() in {ApprovalMode.AUTO_EDIT, ApprovalMode.YOLO}:
            return None
        if self.validate_params(params):
            return None

        path = Path(params["file_path"])
        try:
            original = self._read_current(path)
        except OSError as e:
            log.warning("Could not read current file for diff", path=str(path), error=str(e))
            return None

        relative = make_relative(path, self.target_dir)
        return EditConfirmation(
            title=f"Confirm Write: {relative}",
            file_name=path.name,
            file_path=str(path),
            file_diff=make_unified_diff(path.name, original or "", params["content"]),
            original_content=original,
            new_content=params["content"],
        )

    def on_confirm(self, params: dict[str, Any], outcome: ToolConfirmationOutcome) -> None:
        if outcome == ToolConfirmationOutcome.PROCEED_ALWAYS:
            log.info("Auto-accepting edits for the rest of the session")
            self.config.set_approval_mode(ApprovalMode.AUTO_EDIT)

    async def execute(
        self,
        params: dict[str, Any],
        abort_event: asyncio.Event,
        update_output: OutputUpdateHandler | None = None,
    ) -> ToolResult:
        """Write content to a file.

        Returns:
            ToolResult naming the file, with the diff as display text
        """
        path = Path(params["file_path"])
        content = params["content"]

        try:
            original = self._read_current(path)
            is_new_file = original is None
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            log.error("Write failed", path=str(path), error=str(e))
            return ToolResult.failure(f"Error writing to file {path}: {e}", ToolErrorKind.EXECUTION_FAILURE)

        if is_new_file:
            message = f"Successfully created and wrote to new file: {path}."
        else:
            message = f"Successfully overwrote file: {path}."
        return ToolResult(
            llm_content=message,
            return_display=make_unified_diff(path.name, original or "", content) or message,
        )
