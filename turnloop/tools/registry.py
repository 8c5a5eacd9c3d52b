"""Tool registry: built-in and discovered tools behind one name lookup."""

import asyncio
from typing import Any

from turnloop.config import Config
from turnloop.exceptions import ToolNotFoundError
from turnloop.llm import ToolDefinition
from turnloop.logging import get_logger
from turnloop.mcp.client import McpClientManager
from turnloop.mcp.tool import DiscoveredMCPTool
from turnloop.tools.base import Tool

log = get_logger(__name__)


class ToolRegistry:
    """Registry for managing available tools.

    Created once per session and passed to the components that need it.
    """

    def __init__(self, config: Config | None = None, mcp_manager: McpClientManager | None = None):
        self.config = config or Config()
        self.mcp_manager = mcp_manager or McpClientManager()
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool, replace: bool = False) -> bool:
        """Register a tool.

        A second registration under an existing name is logged and ignored
        unless ``replace`` is set.

        Args:
            tool: Tool instance to register
            replace: Overwrite an existing entry with the same name

        Returns:
            Whether the tool was registered
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        if tool.name in self._tools and not replace:
            log.warning("Tool already registered; ignoring duplicate", tool=tool.name)
            return False

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool
        return True

    def unregister(self, name: str) -> None:
        """Unregister a tool.

        Args:
            name: Tool name to unregister
        """
        self._tools.pop(name, None)

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get_tool(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def get_all_tools(self) -> list[Tool]:
        return sorted(self._tools.values(), key=lambda tool: tool.display_name or tool.name)

    def list_tools(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools)

    def get_tools_by_server(self, server_name: str) -> list[Tool]:
        """Discovered tools owned by ``server_name``."""
        return [
            tool
            for tool in self._tools.values()
            if isinstance(tool, DiscoveredMCPTool) and tool.server_name == server_name
        ]

    def get_function_declarations(self) -> list[ToolDefinition]:
        """Schemas advertised to the model; always in sync with the registry."""
        return [tool.schema for tool in self._tools.values()]

    async def discover_tools(self, abort_event: asyncio.Event | None = None) -> None:
        """Drop previously discovered tools and rediscover from the configured servers."""
        for name in [name for name, tool in self._tools.items() if isinstance(tool, DiscoveredMCPTool)]:
            self.unregister(name)
        await self.mcp_manager.close()

        if not self.config.mcp_servers:
            return
        await self.mcp_manager.discover(
            self.config.mcp_servers,
            self,
            abort_event or asyncio.Event(),
        )

    async def close(self) -> None:
        """Close remote connections and tool-owned clients."""
        await self.mcp_manager.close()
        for tool in self._tools.values():
            closer: Any = getattr(tool, "close", None)
            if callable(closer):
                await closer()


def create_tool_registry(config: Config) -> ToolRegistry:
    """Build a registry with the built-in tools enabled by ``config.tools``."""
    from turnloop.tools.glob import GlobTool
    from turnloop.tools.read_file import ReadFileTool
    from turnloop.tools.read_many_files import ReadManyFilesTool
    from turnloop.tools.shell import ShellTool
    from turnloop.tools.web_fetch import WebFetchTool
    from turnloop.tools.write_file import WriteFileTool

    registry = ToolRegistry(config)
    enabled = set(config.tools.core) - set(config.tools.exclude)
    for tool_cls in (
        ReadFileTool,
        WriteFileTool,
        GlobTool,
        ReadManyFilesTool,
        ShellTool,
        WebFetchTool,
    ):
        if tool_cls.name in enabled:
            registry.register(tool_cls(config))
    return registry
