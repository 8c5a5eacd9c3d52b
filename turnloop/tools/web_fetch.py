"""Web fetch tool for retrieving web page content."""

import asyncio
import re
from typing import Any
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup
import httpx

from turnloop.config import ApprovalMode, Config
from turnloop.logging import get_logger
from turnloop.tools.base import (
    InfoConfirmation,
    OutputUpdateHandler,
    Tool,
    ToolConfirmationOutcome,
    ToolErrorKind,
    ToolResult,
)

log = get_logger(__name__)

_GITHUB_BLOB_RE = re.compile(r"^https?://github\.com/([^/]+)/([^/]+)/blob/(.+)$")


def to_raw_github_url(url: str) -> str:
    """Rewrite ``github.com/<owner>/<repo>/blob/...`` to the raw content host."""
    match = _GITHUB_BLOB_RE.match(url)
    if not match:
        return url
    owner, repo, rest = match.groups()
    return f"https://raw.githubusercontent.com/{owner}/{repo}/{rest}"


class WebFetchTool(Tool):
    """Fetch web page content."""

    name = "web_fetch"
    display_name = "WebFetch"
    description = "Fetch and extract readable content from an http(s) URL."
    parameters = {
        "type": "object",
        "properties": {
            "url": {
                "type": "string",
                "description": "URL to fetch",
            },
            "max_chars": {
                "type": "number",
                "description": "Maximum characters to return (default from config, typically 100000)",
            },
        },
        "required": ["url"],
    }

    def __init__(self, config: Config):
        self.config = config
        self.timeout_seconds = config.tools.web_fetch.timeout
        self.client = httpx.AsyncClient(
            timeout=config.tools.web_fetch.timeout,
            follow_redirects=True,
            headers={
                "User-Agent": "turnloop/0.1.0 (Web Fetch Tool)",
            },
        )

    def validate_params(self, params: dict[str, Any]) -> str | None:
        error = super().validate_params(params)
        if error:
            return error
        parsed = urlparse(str(params["url"]).strip())
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            return "The 'url' parameter must be a valid http:// or https:// URL."
        max_chars = params.get("max_chars")
        if max_chars is not None and max_chars <= 0:
            return "The 'max_chars' parameter must be a positive number."
        return None

    def get_description(self, params: dict[str, Any]) -> str:
        return f"Fetching content from {params.get('url', '')}"

    async def should_confirm_execute(
        self,
        params: dict[str, Any],
        abort_event: asyncio.Event,
    ) -> InfoConfirmation | None:
        if self.config.get_approval_mode() in {ApprovalMode.AUTO_EDIT, ApprovalMode.YOLO}:
            return None
        if self.validate_params(params):
            return None
        url = to_raw_github_url(str(params["url"]).strip())
        return InfoConfirmation(
            title="Confirm Web Fetch",
            prompt=f"Fetch {url}",
            urls=[url],
        )

    def on_confirm(self, params: dict[str, Any], outcome: ToolConfirmationOutcome) -> None:
        if outcome == ToolConfirmationOutcome.PROCEED_ALWAYS:
            self.config.set_approval_mode(ApprovalMode.AUTO_EDIT)

    async def execute(
        self,
        params: dict[str, Any],
        abort_event: asyncio.Event,
        update_output: OutputUpdateHandler | None = None,
    ) -> ToolResult:
        """Fetch a web page and extract readable text via BeautifulSoup.

        Returns:
            ToolResult with extracted readable text
        """
        url = to_raw_github_url(str(params["url"]).strip())
        configured_max = int(self.config.tools.web_fetch.max_chars)
        max_chars = params.get("max_chars")
        effective_max_chars = max(1, configured_max if max_chars is None else int(max_chars))

        log.info("Fetching URL", url=url)
        fetch_task = asyncio.create_task(self.client.get(url))
        abort_wait_task = asyncio.create_task(abort_event.wait())
        try:
            done, _ = await asyncio.wait(
                {fetch_task, abort_wait_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if fetch_task not in done:
                fetch_task.cancel()
                try:
                    await fetch_task
                except asyncio.CancelledError:
                    pass
                return ToolResult.failure("Fetch cancelled by user.", ToolErrorKind.CANCELLED)
            response = fetch_task.result()
            response.raise_for_status()
        except httpx.HTTPError as e:
            log.error("HTTP fetch failed", url=url, error=str(e))
            return ToolResult.failure(f"HTTP error: {e}", ToolErrorKind.EXECUTION_FAILURE)
        finally:
            if not abort_wait_task.done():
                abort_wait_task.cancel()
                try:
                    await abort_wait_task
                except asyncio.CancelledError:
                    pass

        content_type = response.headers.get("content-type", "")
        if "html" in content_type or response.text.lstrip().lower().startswith(("<!doctype html", "<html")):
            content = self._extract_readable_text(response.text, base_url=url)
        else:
            content = response.text

        if len(content) > effective_max_chars:
            content = content[:effective_max_chars] + "\n... [truncated]"

        output = f"[URL: {url}]\n"
        output += f"[Status: {response.status_code}]\n"
        output += f"[Size: {len(response.text)} chars]\n\n"
        output += content
        return ToolResult(
            llm_content=output,
            return_display=f"Content from {url} processed successfully.",
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    def _extract_readable_text(self, html: str, base_url: str | None = None) -> str:
        """Extract human-readable text from raw HTML."""
        soup = BeautifulSoup(html, "html.parser")

        for tag in soup(["script", "style", "noscript", "template", "svg", "canvas"]):
            tag.decompose()

        # Keep link targets so later turns can cite sources.
        for anchor in soup.find_all("a"):
            href = (anchor.get("href") or "").strip()
            label = anchor.get_text(" ", strip=True)
            if not href:
                continue
            absolute = urljoin(base_url, href) if base_url else href
            anchor.replace_with(f"{label} ({absolute})" if label else absolute)

        title = ""
        if soup.title and soup.title.string:
            title = soup.title.string.strip()

        lines: list[str] = []
        for line in soup.get_text(separator="\n").splitlines():
            cleaned = re.sub(r"\s+", " ", line).strip()
            if cleaned:
                lines.append(cleaned)

        text = "\n".join(lines)
        if title and not text.startswith(title):
            return f"{title}\n\n{text}" if text else title
        return text
