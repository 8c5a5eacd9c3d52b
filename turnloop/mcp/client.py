"""MCP discovery client: connect to configured servers and register their tools."""

import asyncio
import os
from contextlib import AsyncExitStack
from datetime import timedelta
from typing import TYPE_CHECKING, Any, AsyncContextManager, Callable

from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.client.websocket import websocket_client
from pydantic import ValidationError

from turnloop.config import MCPServerConfig
from turnloop.exceptions import (
    ConfigurationError,
    OperationCancelledError,
    ProviderConnectionError,
)
from turnloop.logging import get_logger
from turnloop.mcp.tool import DiscoveredMCPTool, RemoteToolDeclaration, sanitize_tool_name

if TYPE_CHECKING:
    from turnloop.tools.registry import ToolRegistry

log = get_logger(__name__)


class McpServerStatus:
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def resolve_tool_name(
    registry: "ToolRegistry",
    server_name: str,
    server_tool_name: str,
) -> tuple[str, bool]:
    """Pick the registry name for a remote tool.

    The sanitized name is used when free. A name already held by the same
    ``(server, server_tool_name)`` is reused, so rediscovery is stable.
    Otherwise the name is prefixed with ``<server>__``.

    Returns:
        Tuple of (name, replace) where ``replace`` marks re-registration of the same tool
    """
    for candidate in (
        sanitize_tool_name(server_tool_name),
        sanitize_tool_name(f"{server_name}__{server_tool_name}"),
    ):
        existing = registry.get_tool(candidate)
        if existing is None:
            return candidate, False
        if (
            isinstance(existing, DiscoveredMCPTool)
            and existing.server_name == server_name
            and existing.server_tool_name == server_tool_name
        ):
            return candidate, True
    return sanitize_tool_name(f"{server_name}__{server_tool_name}"), False


def _decode_declaration(item: Any) -> dict[str, Any]:
    if isinstance(item, dict):
        return item
    if hasattr(item, "model_dump"):
        return item.model_dump(by_alias=True)
    return {
        "name": getattr(item, "name", None),
        "description": getattr(item, "description", None),
        "inputSchema": getattr(item, "inputSchema", None),
    }


class McpConnection:
    """One live session with a remote server.

    The transport and session contexts are entered and exited inside a single
    background task; ``close()`` signals that task to unwind.
    """

    def __init__(self, server_name: str, config: MCPServerConfig):
        self.server_name = server_name
        self.config = config
        self.session: ClientSession | None = None
        self._ready = asyncio.Event()
        self._close_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    def _transport(self) -> AsyncContextManager[Any]:
        if self.config.url:
            if self.config.transport == "websocket":
                return websocket_client(self.config.url)
            return sse_client(
                self.config.url,
                headers=self.config.headers or None,
                timeout=self.config.timeout,
            )
        if self.config.command:
            env = os.environ.copy()
            env.update(self.config.env)
            return stdio_client(StdioServerParameters(
                command=self.config.command,
                args=list(self.config.args),
                env=env,
                cwd=self.config.cwd,
            ))
        raise ConfigurationError(f"MCP server '{self.server_name}' has neither 'url' nor 'command'")

    async def _run(self) -> None:
        try:
            async with AsyncExitStack() as stack:
                read, write = await stack.enter_async_context(self._transport())
                session = await stack.enter_async_context(ClientSession(
                    read,
                    write,
                    read_timeout_seconds=timedelta(seconds=self.config.timeout),
                ))
                await session.initialize()
                self.session = session
                self._ready.set()
                await self._close_event.wait()
        finally:
            self.session = None

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _race(self, awaitable: Any, abort_event: asyncio.Event, what: str) -> Any:
        """Await ``awaitable`` unless the abort event fires or the server timeout passes."""
        work = asyncio.ensure_future(awaitable)
        abort_wait_task = asyncio.create_task(abort_event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, abort_wait_task},
                timeout=self.config.timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if work in done:
                return work.result()
            await self._cancel_task(work)
            if abort_wait_task in done:
                raise OperationCancelledError(f"{what} on MCP server '{self.server_name}' cancelled")
            raise TimeoutError(f"{what} on MCP server '{self.server_name}' timed out after {self.config.timeout}s")
        finally:
            await self._cancel_task(abort_wait_task)

    async def start(self, abort_event: asyncio.Event) -> None:
        """Open the transport and initialize the session.

        Raises:
            ProviderConnectionError if the server cannot be reached
            OperationCancelledError if the abort event fires first
        """
        self._task = asyncio.create_task(self._run())
        ready_task = asyncio.create_task(self._ready.wait())
        try:
            await self._race(
                asyncio.wait({self._task, ready_task}, return_when=asyncio.FIRST_COMPLETED),
                abort_event,
                "connect",
            )
        except TimeoutError as e:
            await self.close()
            raise ProviderConnectionError(self.server_name, str(e)) from e
        except OperationCancelledError:
            await self.close()
            raise
        finally:
            await self._cancel_task(ready_task)

        if self._ready.is_set():
            return
        error = self._task.exception() if not self._task.cancelled() else None
        raise ProviderConnectionError(self.server_name, f"failed to connect: {error}") from error

    def _require_session(self) -> ClientSession:
        if self.session is None:
            raise ProviderConnectionError(self.server_name, "not connected")
        return self.session

    async def list_tools(self, abort_event: asyncio.Event) -> list[RemoteToolDeclaration]:
        """List the server's tools, skipping malformed declarations."""
        response = await self._race(self._require_session().list_tools(), abort_event, "list_tools")
        declarations: list[RemoteToolDeclaration] = []
        for item in getattr(response, "tools", None) or []:
            try:
                declarations.append(RemoteToolDeclaration.model_validate(_decode_declaration(item)))
            except ValidationError as e:
                log.warning(
                    "Skipping malformed MCP tool declaration",
                    server=self.server_name,
                    error=str(e),
                )
        return declarations

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any],
        abort_event: asyncio.Event,
    ) -> Any:
        """Invoke a remote tool with the server timeout and the abort event."""
        session = self._require_session()
        return await self._race(
            session.call_tool(
                name,
                arguments,
                read_timeout_seconds=timedelta(seconds=self.config.timeout),
            ),
            abort_event,
            f"call '{name}'",
        )

    async def close(self) -> None:
        """Tear down the session and transport."""
        self._close_event.set()
        task = self._task
        if task is None:
            return
        done, _ = await asyncio.wait({task}, timeout=self.config.timeout)
        if not done:
            await self._cancel_task(task)
            return
        if not task.cancelled() and task.exception() is not None:
            log.warning(
                "MCP connection ended with error",
                server=self.server_name,
                error=str(task.exception()),
            )


ConnectionFactory = Callable[[str, MCPServerConfig], McpConnection]


class McpClientManager:
    """Owns the connections of every server that contributed tools."""

    def __init__(self, connection_factory: ConnectionFactory = McpConnection):
        self._connection_factory = connection_factory
        self.connections: dict[str, McpConnection] = {}
        self.server_statuses: dict[str, str] = {}
        self.allowlist: set[str] = set()

    async def discover(
        self,
        servers: dict[str, MCPServerConfig],
        registry: "ToolRegistry",
        abort_event: asyncio.Event,
    ) -> None:
        """Connect to every server concurrently and register the tools they list.

        One failing server never affects the others; this returns once every
        attempt has finished.
        """
        await asyncio.gather(*(
            self._discover_server(name, config, registry, abort_event)
            for name, config in servers.items()
        ))

    async def _discover_server(
        self,
        server_name: str,
        config: MCPServerConfig,
        registry: "ToolRegistry",
        abort_event: asyncio.Event,
    ) -> None:
        if not config.url and not config.command:
            log.error("MCP server has neither url nor command; skipping", server=server_name)
            self.server_statuses[server_name] = McpServerStatus.DISCONNECTED
            return

        self.server_statuses[server_name] = McpServerStatus.CONNECTING
        connection = self._connection_factory(server_name, config)
        try:
            await connection.start(abort_event)
            declarations = await connection.list_tools(abort_event)
        except OperationCancelledError:
            log.info("MCP discovery cancelled", server=server_name)
            self.server_statuses[server_name] = McpServerStatus.DISCONNECTED
            await connection.close()
            return
        except Exception as e:
            log.error("MCP discovery failed", server=server_name, error=str(e))
            self.server_statuses[server_name] = McpServerStatus.DISCONNECTED
            await connection.close()
            return

        for declaration in declarations:
            tool = DiscoveredMCPTool(
                connection,
                server_name,
                declaration,
                timeout=config.timeout,
                trust=config.trust,
                allowlist=self.allowlist,
            )
            tool.name, replace = resolve_tool_name(registry, server_name, declaration.name)
            registry.register(tool, replace=replace)

        if not registry.get_tools_by_server(server_name):
            log.info("MCP server exposed no tools; closing connection", server=server_name)
            self.server_statuses[server_name] = McpServerStatus.DISCONNECTED
            await connection.close()
            return

        self.connections[server_name] = connection
        self.server_statuses[server_name] = McpServerStatus.CONNECTED
        log.info(
            "MCP server connected",
            server=server_name,
            tools=len(registry.get_tools_by_server(server_name)),
        )

    async def close(self) -> None:
        """Close every open connection."""
        connections = list(self.connections.items())
        self.connections.clear()
        for name, connection in connections:
            await connection.close()
            self.server_statuses[name] = McpServerStatus.DISCONNECTED
