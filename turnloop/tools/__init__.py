"""Tools package for turnloop."""

from turnloop.tools.base import (
    Tool,
    ToolConfirmationOutcome,
    ToolErrorKind,
    ToolInvocation,
    ToolResult,
)
from turnloop.tools.glob import GlobTool
from turnloop.tools.read_file import ReadFileTool
from turnloop.tools.read_many_files import ReadManyFilesTool
from turnloop.tools.shell import ShellTool
from turnloop.tools.web_fetch import WebFetchTool
from turnloop.tools.write_file import WriteFileTool

__all__ = [
    "Tool",
    "ToolConfirmationOutcome",
    "ToolErrorKind",
    "ToolInvocation",
    "ToolResult",
    "GlobTool",
    "ReadFileTool",
    "ReadManyFilesTool",
    "ShellTool",
    "WebFetchTool",
    "WriteFileTool",
]
