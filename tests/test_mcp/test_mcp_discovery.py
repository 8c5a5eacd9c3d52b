import asyncio
import base64
from types import SimpleNamespace

import pytest

from turnloop.config import Config, MCPServerConfig
from turnloop.exceptions import ProviderConnectionError
from turnloop.mcp.client import McpClientManager, McpConnection, McpServerStatus
from turnloop.mcp.tool import DiscoveredMCPTool, RemoteToolDeclaration, sanitize_tool_name
from turnloop.tools.base import Tool, ToolConfirmationOutcome, ToolErrorKind, ToolResult
from turnloop.tools.registry import ToolRegistry


class LocalTool(Tool):
    name = "search"
    description = "Built-in search"
    parameters = {"type": "object", "properties": {}, "required": []}

    async def execute(self, params, abort_event, update_output=None):
        return ToolResult(llm_content="local")


class FakeConnection:
    """Stands in for a live server session."""

    catalog: dict[str, list[RemoteToolDeclaration]] = {}
    failing: set[str] = set()
    results: dict[str, object] = {}

    def __init__(self, server_name, config):
        self.server_name = server_name
        self.config = config
        self.closed = False
        self.calls: list[tuple[str, dict]] = []

    async def start(self, abort_event):
        if self.server_name in self.failing:
            raise ProviderConnectionError(self.server_name, "connection refused")

    async def list_tools(self, abort_event):
        return list(self.catalog.get(self.server_name, []))

    async def call_tool(self, name, arguments, abort_event):
        self.calls.append((name, arguments))
        return self.results[name]

    async def close(self):
        self.closed = True


def _declaration(name, description="remote tool"):
    return RemoteToolDeclaration(
        name=name,
        description=description,
        input_schema={"$schema": "http://json-schema.org/draft-07/schema#", "type": "object", "properties": {}},
    )


def _factory(catalog, failing=(), results=None):
    created: list[FakeConnection] = []

    class Connection(FakeConnection):
        pass

    Connection.catalog = catalog
    Connection.failing = set(failing)
    Connection.results = results or {}

    def factory(server_name, config):
        connection = Connection(server_name, config)
        created.append(connection)
        return connection

    return factory, created


def _registry(servers, factory):
    config = Config()
    config.mcp_servers = servers
    return ToolRegistry(config, mcp_manager=McpClientManager(connection_factory=factory))


def test_sanitize_tool_name():
    assert sanitize_tool_name("get weather!") == "get_weather_"
    assert sanitize_tool_name("files.read-all") == "files.read-all"

    long_name = "a" * 40 + "b" * 40
    sanitized = sanitize_tool_name(long_name)

    assert len(sanitized) == 63
    assert sanitized == "a" * 28 + "___" + "b" * 32


@pytest.mark.asyncio
async def test_discovery_registers_tools_and_cleans_schema():
    factory, created = _factory({"docs": [_declaration("lookup"), _declaration("list pages")]})
    registry = _registry({"docs": MCPServerConfig(command="docs-server")}, factory)

    await registry.discover_tools()

    assert sorted(registry.list_tools()) == ["list_pages", "lookup"]
    tool = registry.get("list_pages")
    assert isinstance(tool, DiscoveredMCPTool)
    assert tool.server_tool_name == "list pages"
    assert "$schema" not in tool.parameters
    assert registry.mcp_manager.server_statuses["docs"] == McpServerStatus.CONNECTED
    assert created[0].closed is False


@pytest.mark.asyncio
async def test_name_collision_gets_server_prefix():
    factory, _ = _factory({"docs": [_declaration("search")]})
    registry = _registry({"docs": MCPServerConfig(command="docs-server")}, factory)
    registry.register(LocalTool())

    await registry.discover_tools()

    assert isinstance(registry.get("search"), LocalTool)
    assert registry.get("docs__search").server_tool_name == "search"


@pytest.mark.asyncio
async def test_rediscovery_reuses_names():
    factory, _ = _factory({"docs": [_declaration("lookup")]})
    registry = _registry({"docs": MCPServerConfig(command="docs-server")}, factory)
    manager = registry.mcp_manager

    await manager.discover(registry.config.mcp_servers, registry, asyncio.Event())
    await manager.discover(registry.config.mcp_servers, registry, asyncio.Event())

    assert registry.list_tools() == ["lookup"]


@pytest.mark.asyncio
async def test_failing_server_does_not_affect_others():
    factory, created = _factory(
        {"good": [_declaration("ping")], "bad": [_declaration("pong")]},
        failing={"bad"},
    )
    registry = _registry(
        {
            "good": MCPServerConfig(command="good-server"),
            "bad": MCPServerConfig(url="http://localhost:9/sse"),
        },
        factory,
    )

    await registry.discover_tools()

    assert registry.list_tools() == ["ping"]
    statuses = registry.mcp_manager.server_statuses
    assert statuses == {"good": McpServerStatus.CONNECTED, "bad": McpServerStatus.DISCONNECTED}
    assert [c.closed for c in created if c.server_name == "bad"] == [True]


@pytest.mark.asyncio
async def test_server_without_tools_is_closed():
    factory, created = _factory({"empty": []})
    registry = _registry({"empty": MCPServerConfig(command="empty-server")}, factory)

    await registry.discover_tools()

    assert registry.list_tools() == []
    assert created[0].closed is True
    assert "empty" not in registry.mcp_manager.connections


@pytest.mark.asyncio
async def test_server_without_url_or_command_is_skipped():
    factory, created = _factory({})
    registry = _registry({"broken": MCPServerConfig()}, factory)

    await registry.discover_tools()

    assert created == []
    assert registry.mcp_manager.server_statuses["broken"] == McpServerStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_discovered_tool_converts_content_blocks():
    image = base64.b64encode(b"\x89PNG").decode()
    factory, created = _factory(
        {"docs": [_declaration("lookup")]},
        results={"lookup": SimpleNamespace(
            content=[
                {"type": "text", "text": "found it"},
                {"type": "image", "data": image, "mimeType": "image/png"},
            ],
            isError=False,
        )},
    )
    registry = _registry({"docs": MCPServerConfig(command="docs-server")}, factory)
    await registry.discover_tools()

    result = await registry.get("lookup").execute({"q": "x"}, asyncio.Event())

    assert created[0].calls == [("lookup", {"q": "x"})]
    assert result.llm_content[0].text == "found it"
    assert result.llm_content[1].inline_data.data == b"\x89PNG"
    assert result.return_display == "found it\n[image/png: 4 bytes]"


@pytest.mark.asyncio
async def test_discovered_tool_error_flag_becomes_failure():
    factory, _ = _factory(
        {"docs": [_declaration("lookup")]},
        results={"lookup": {"content": [{"type": "text", "text": "index missing"}], "isError": True}},
    )
    registry = _registry({"docs": MCPServerConfig(command="docs-server")}, factory)
    await registry.discover_tools()

    result = await registry.get("lookup").execute({}, asyncio.Event())

    assert result.error.kind == ToolErrorKind.EXECUTION_FAILURE
    assert result.error.message == "index missing"


@pytest.mark.asyncio
async def test_trust_and_allowlist_skip_confirmation():
    factory, _ = _factory({"docs": [_declaration("lookup"), _declaration("write")]})
    registry = _registry({"docs": MCPServerConfig(command="docs-server")}, factory)
    await registry.discover_tools()
    lookup, write = registry.get("lookup"), registry.get("write")

    details = await lookup.should_confirm_execute({}, asyncio.Event())
    assert details.type == "mcp"
    assert details.server_name == "docs"

    lookup.on_confirm({}, ToolConfirmationOutcome.PROCEED_ALWAYS_TOOL)
    assert await lookup.should_confirm_execute({}, asyncio.Event()) is None
    assert await write.should_confirm_execute({}, asyncio.Event()) is not None

    write.on_confirm({}, ToolConfirmationOutcome.PROCEED_ALWAYS_SERVER)
    assert await write.should_confirm_execute({}, asyncio.Event()) is None

    trusted_factory, _ = _factory({"local": [_declaration("run")]})
    trusted = _registry({"local": MCPServerConfig(command="local-server", trust=True)}, trusted_factory)
    await trusted.discover_tools()
    assert await trusted.get("run").should_confirm_execute({}, asyncio.Event()) is None


@pytest.mark.asyncio
async def test_list_tools_skips_malformed_declarations():
    class FakeSession:
        async def list_tools(self):
            return SimpleNamespace(tools=[
                {"name": "ok", "description": None, "inputSchema": None},
                {"name": "", "description": "nameless"},
                {"description": "no name at all"},
            ])

    connection = McpConnection("docs", MCPServerConfig(command="docs-server", timeout=5))
    connection.session = FakeSession()

    declarations = await connection.list_tools(asyncio.Event())

    assert [d.name for d in declarations] == ["ok"]
    assert declarations[0].description == ""
    assert declarations[0].input_schema == {"type": "object", "properties": {}}


def test_server_config_infers_transport():
    assert MCPServerConfig(url="wss://tools.example.com/ws").transport == "websocket"
    assert MCPServerConfig(url="https://tools.example.com/sse").transport == "sse"
    assert MCPServerConfig(command="srv").transport is None
