import asyncio

import httpx
import pytest

from turnloop.config import ApprovalMode, Config
from turnloop.tools.base import ToolConfirmationOutcome, ToolErrorKind
from turnloop.tools.web_fetch import WebFetchTool, to_raw_github_url


class _FakeResponse:
    def __init__(self, text: str, status_code: int = 200, content_type: str = "text/html"):
        self.text = text
        self.status_code = status_code
        self.headers = {"content-type": content_type}

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            request = httpx.Request("GET", "https://example.com")
            raise httpx.HTTPStatusError(
                f"Client error '{self.status_code}'",
                request=request,
                response=httpx.Response(self.status_code, request=request),
            )


class _FakeClient:
    def __init__(self, response: _FakeResponse | None = None, hang: bool = False):
        self._response = response
        self._hang = hang
        self.urls: list[str] = []

    async def get(self, url: str) -> _FakeResponse:
        self.urls.append(url)
        if self._hang:
            await asyncio.sleep(30)
        return self._response


def _tool(client: _FakeClient, config: Config | None = None) -> WebFetchTool:
    tool = WebFetchTool(config or Config())
    tool.client = client
    return tool


@pytest.mark.asyncio
async def test_web_fetch_extracts_readable_text():
    html = """
    <html>
      <head>
        <title>Example Page</title>
        <script>var should_not_show = true;</script>
      </head>
      <body>
        <h1>Hello World</h1>
        <p>This is readable text.</p>
      </body>
    </html>
    """
    tool = _tool(_FakeClient(_FakeResponse(html)))

    result = await tool.execute({"url": "https://example.com"}, asyncio.Event())

    assert result.success is True
    assert result.llm_content.startswith("[URL: https://example.com]\n[Status: 200]\n[Size: ")
    assert "Example Page" in result.llm_content
    assert "Hello World" in result.llm_content
    assert "This is readable text." in result.llm_content
    assert "should_not_show" not in result.llm_content
    assert "<html>" not in result.llm_content


@pytest.mark.asyncio
async def test_web_fetch_preserves_links_as_absolute_urls():
    html = """
    <html>
      <body>
        <p>Read <a href="/guide">the guide</a> for details.</p>
        <p>External <a href="https://docs.example.org/ref">reference</a>.</p>
      </body>
    </html>
    """
    tool = _tool(_FakeClient(_FakeResponse(html)))

    result = await tool.execute({"url": "https://example.com/start"}, asyncio.Event())

    assert "the guide (https://example.com/guide)" in result.llm_content
    assert "reference (https://docs.example.org/ref)" in result.llm_content


@pytest.mark.asyncio
async def test_web_fetch_returns_plain_text_unchanged_and_truncates():
    tool = _tool(_FakeClient(_FakeResponse("a" * 50, content_type="text/plain")))

    result = await tool.execute({"url": "https://example.com/file.txt", "max_chars": 10}, asyncio.Event())

    assert result.llm_content.endswith("aaaaaaaaaa\n... [truncated]")
    assert "[Size: 50 chars]" in result.llm_content


@pytest.mark.asyncio
async def test_web_fetch_rewrites_github_blob_urls():
    client = _FakeClient(_FakeResponse("print('hi')", content_type="text/plain"))
    tool = _tool(client)

    await tool.execute({"url": "https://github.com/acme/widgets/blob/main/setup.py"}, asyncio.Event())

    assert client.urls == ["https://raw.githubusercontent.com/acme/widgets/main/setup.py"]
    assert to_raw_github_url("https://example.com/a/b") == "https://example.com/a/b"


def test_web_fetch_rejects_non_http_urls():
    tool = _tool(_FakeClient())

    assert "valid http:// or https:// URL" in tool.validate_params({"url": "file:///etc/passwd"})
    assert "valid http:// or https:// URL" in tool.validate_params({"url": "example.com"})
    assert tool.validate_params({"url": "https://example.com", "max_chars": 0}) is not None


@pytest.mark.asyncio
async def test_web_fetch_http_error_is_execution_failure():
    tool = _tool(_FakeClient(_FakeResponse("missing", status_code=404)))

    result = await tool.execute({"url": "https://example.com/missing"}, asyncio.Event())

    assert result.error.kind == ToolErrorKind.EXECUTION_FAILURE
    assert result.error.message.startswith("HTTP error:")


@pytest.mark.asyncio
async def test_web_fetch_abort_cancels_request():
    tool = _tool(_FakeClient(hang=True))
    abort_event = asyncio.Event()

    task = asyncio.create_task(tool.execute({"url": "https://example.com"}, abort_event))
    await asyncio.sleep(0.05)
    abort_event.set()
    result = await asyncio.wait_for(task, timeout=5)

    assert result.error.kind == ToolErrorKind.CANCELLED
    assert result.error.message == "Fetch cancelled by user."


@pytest.mark.asyncio
async def test_web_fetch_confirmation_respects_approval_mode():
    config = Config()
    tool = _tool(_FakeClient(), config)
    params = {"url": "https://github.com/acme/widgets/blob/main/README.md"}

    details = await tool.should_confirm_execute(params, asyncio.Event())

    assert details.type == "info"
    assert details.urls == ["https://raw.githubusercontent.com/acme/widgets/main/README.md"]

    tool.on_confirm(params, ToolConfirmationOutcome.PROCEED_ALWAYS)

    assert config.get_approval_mode() == ApprovalMode.AUTO_EDIT
    assert await tool.should_confirm_execute(params, asyncio.Event()) is None
