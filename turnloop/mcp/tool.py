"""Tool wrapper for a function exposed by a remote MCP server."""

import asyncio
import base64
import binascii
import json
import re
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from turnloop.llm import InlineData, Part
from turnloop.logging import get_logger
from turnloop.tools.base import (
    McpConfirmation,
    OutputUpdateHandler,
    Tool,
    ToolConfirmationOutcome,
    ToolErrorKind,
    ToolResult,
)

if TYPE_CHECKING:
    from turnloop.mcp.client import McpConnection

log = get_logger(__name__)

MAX_FUNCTION_NAME_LENGTH = 63
_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")


def sanitize_tool_name(name: str) -> str:
    """Restrict a tool name to ``[a-zA-Z0-9_.-]`` and at most 63 characters.

    Over-long names keep their first 28 and last 32 characters joined by ``___``.
    """
    sanitized = _INVALID_NAME_CHARS.sub("_", name or "")
    if not sanitized:
        sanitized = "_"
    if len(sanitized) > MAX_FUNCTION_NAME_LENGTH:
        sanitized = sanitized[:28] + "___" + sanitized[-32:]
    return sanitized


class RemoteToolDeclaration(BaseModel):
    """A tool declaration as listed by a remote server, checked at the boundary."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict, alias="inputSchema")

    @field_validator("description", mode="before")
    @classmethod
    def _none_description(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("input_schema", mode="before")
    @classmethod
    def _default_schema(cls, value: Any) -> Any:
        if value is None:
            return {"type": "object", "properties": {}}
        return value


def _clean_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """Drop keywords the model endpoint rejects."""
    cleaned = {key: value for key, value in schema.items() if key != "$schema"}
    cleaned.setdefault("type", "object")
    return cleaned


def _content_field(item: Any, key: str) -> Any:
    if isinstance(item, dict):
        return item.get(key)
    return getattr(item, key, None)


def convert_mcp_content(content: list[Any]) -> list[Part]:
    """Map MCP content blocks to parts: text to text, images to inline data."""
    parts: list[Part] = []
    for item in content or []:
        kind = _content_field(item, "type")
        if kind == "text":
            parts.append(Part.from_text(str(_content_field(item, "text") or "")))
        elif kind in {"image", "audio"}:
            raw = _content_field(item, "data") or ""
            try:
                data = base64.b64decode(raw)
            except (binascii.Error, ValueError):
                log.warning("Skipping undecodable MCP media block", kind=kind)
                continue
            parts.append(Part(inline_data=InlineData(
                mime_type=str(_content_field(item, "mimeType") or "application/octet-stream"),
                data=data,
            )))
        elif kind == "resource":
            resource = _content_field(item, "resource")
            text = _content_field(resource, "text")
            if text is not None:
                parts.append(Part.from_text(str(text)))
            else:
                uri = _content_field(resource, "uri")
                parts.append(Part.from_text(f"[resource: {uri}]"))
        else:
            parts.append(Part.from_text(json.dumps(item, default=str) if isinstance(item, dict) else str(item)))
    return parts


def get_stringified_result_for_display(parts: list[Part]) -> str:
    """Human-readable rendering of a remote tool result."""
    lines: list[str] = []
    for part in parts:
        if part.text is not None:
            lines.append(part.text)
        elif part.inline_data is not None:
            lines.append(f"[{part.inline_data.mime_type}: {len(part.inline_data.data)} bytes]")
    return "\n".join(lines)


class DiscoveredMCPTool(Tool):
    """Proxy for one remote tool; execution goes through the owning connection."""

    def __init__(
        self,
        connection: "McpConnection",
        server_name: str,
        declaration: RemoteToolDeclaration,
        timeout: float,
        trust: bool = False,
        allowlist: set[str] | None = None,
    ):
        self.connection = connection
        self.server_name = server_name
        self.server_tool_name = declaration.name
        self.name = sanitize_tool_name(declaration.name)
        self.display_name = declaration.name
        self.description = declaration.description
        self.parameters = _clean_schema(declaration.input_schema)
        self.timeout_seconds = timeout
        self.trust = trust
        self.allowlist = allowlist if allowlist is not None else set()

    @property
    def _tool_allowlist_key(self) -> str:
        return f"{self.server_name}.{self.server_tool_name}"

    def get_description(self, params: dict[str, Any]) -> str:
        return json.dumps(params, default=str)

    async def should_confirm_execute(
        self,
        params: dict[str, Any],
        abort_event: asyncio.Event,
    ) -> McpConfirmation | None:
        if self.trust:
            return None
        if self.server_name in self.allowlist or self._tool_allowlist_key in self.allowlist:
            return None
        return McpConfirmation(
            title=f"Confirm MCP Tool Execution: {self.server_name}",
            server_name=self.server_name,
            tool_name=self.server_tool_name,
            tool_display_name=self.name,
        )

    def on_confirm(self, params: dict[str, Any], outcome: ToolConfirmationOutcome) -> None:
        if outcome == ToolConfirmationOutcome.PROCEED_ALWAYS_SERVER:
            self.allowlist.add(self.server_name)
        elif outcome in {ToolConfirmationOutcome.PROCEED_ALWAYS_TOOL, ToolConfirmationOutcome.PROCEED_ALWAYS}:
            self.allowlist.add(self._tool_allowlist_key)

    async def execute(
        self,
        params: dict[str, Any],
        abort_event: asyncio.Event,
        update_output: OutputUpdateHandler | None = None,
    ) -> ToolResult:
        """Call the remote tool and convert its content blocks."""
        result = await self.connection.call_tool(self.server_tool_name, params, abort_event)
        parts = convert_mcp_content(_content_field(result, "content") or [])
        display = get_stringified_result_for_display(parts)

        if _content_field(result, "isError"):
            message = display or f"MCP tool '{self.server_tool_name}' reported an error"
            log.warning("MCP tool returned error", server=self.server_name, tool=self.server_tool_name)
            return ToolResult.failure(message, ToolErrorKind.EXECUTION_FAILURE)

        return ToolResult(llm_content=parts, return_display=display)
