"""Conversation data model and LLM providers (Ollama over HTTP)."""

import asyncio
import base64
import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal

import httpx

from turnloop.config import ModelConfig
from turnloop.exceptions import (
    LLMAPIError,
    LLMError,
    MalformedResponseError,
    OperationCancelledError,
)
from turnloop.logging import get_logger

log = get_logger(__name__)


OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"


@dataclass
class FunctionCall:
    """A function-call request emitted by the model."""

    name: str
    args: dict[str, Any] = field(default_factory=dict)
    id: str | None = None


@dataclass
class FunctionResponse:
    """The answer to a function call, echoed back with the same id."""

    id: str
    name: str
    response: dict[str, Any] = field(default_factory=dict)


@dataclass
class InlineData:
    """Binary payload carried inside a message."""

    mime_type: str
    data: bytes


@dataclass
class Part:
    """One element of a message: text, binary data, function call/response or thought."""

    text: str | None = None
    inline_data: InlineData | None = None
    function_call: FunctionCall | None = None
    function_response: FunctionResponse | None = None
    thought: bool = False

    @classmethod
    def from_text(cls, text: str) -> "Part":
        return cls(text=text)

    @classmethod
    def from_function_response(
        cls,
        call_id: str,
        name: str,
        response: dict[str, Any],
    ) -> "Part":
        return cls(function_response=FunctionResponse(id=call_id, name=name, response=response))

    @property
    def kind(self) -> str:
        if self.function_call is not None:
            return "function_call"
        if self.function_response is not None:
            return "function_response"
        if self.inline_data is not None:
            return "inline_data"
        if self.thought:
            return "thought"
        return "text"


@dataclass
class Message:
    """A message in the conversation."""

    role: Literal["user", "model"]
    parts: list[Part] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(
            part.text or ""
            for part in self.parts
            if part.kind == "text"
        )

    @property
    def function_calls(self) -> list[FunctionCall]:
        return [part.function_call for part in self.parts if part.function_call is not None]

    @property
    def function_responses(self) -> list[FunctionResponse]:
        return [
            part.function_response
            for part in self.parts
            if part.function_response is not None
        ]


@dataclass
class StreamChunk:
    """One streamed delta from the model."""

    text: str = ""
    thought: str = ""
    function_calls: list[FunctionCall] = field(default_factory=list)
    usage: dict[str, int] = field(default_factory=dict)


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    model: str = ""

    @abstractmethod
    def stream(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        *,
        model: str | None = None,
        system_instruction: str | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        pass

    @abstractmethod
    async def generate_json(
        self,
        messages: list[Message],
        schema: dict[str, Any],
        *,
        model: str | None = None,
        system_instruction: str | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> dict[str, Any]:
        pass

    def count_tokens(self, text: str) -> int:
        """Count tokens (rough estimate: ~4 characters per token)."""
        return len(text) // 4

    async def close(self) -> None:
        return None


def parse_json_object(text: str) -> dict[str, Any]:
    """Parse a JSON object, tolerating prose or code fences around it."""
    cleaned = (text or "").strip()
    if not cleaned:
        raise MalformedResponseError("API returned an empty response.")
    try:
        value = json.loads(cleaned)
    except json.JSONDecodeError:
        match = re.search(r"\{.*\}", cleaned, flags=re.DOTALL)
        if not match:
            raise MalformedResponseError(f"Failed to parse API response as JSON: {cleaned[:200]}")
        try:
            value = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise MalformedResponseError(f"Failed to parse API response as JSON: {e}") from e
    if not isinstance(value, dict):
        raise MalformedResponseError("API response JSON is not an object.")
    return value


class OllamaProvider(LLMProvider):
    """Direct Ollama API provider."""

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        temperature: float = 0.0,
        max_tokens: int = 8192,
        api_key: str | None = None,
        timeout: float = 120.0,
    ):
        """Initialize Ollama provider.

        Args:
            model: Default model name, used when a call does not name one
            base_url: Ollama API base URL
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            api_key: Optional API key (Ollama usually doesn't need one locally)
            timeout: HTTP timeout in seconds
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key

        self.client = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
        )

    def _convert_messages(
        self,
        messages: list[Message],
        system_instruction: str | None = None,
    ) -> list[dict[str, Any]]:
        """Convert messages to Ollama format."""
        result: list[dict[str, Any]] = []
        if system_instruction:
            result.append({"role": "system", "content": system_instruction})

        for msg in messages:
            if msg.role == "model":
                entry: dict[str, Any] = {"role": "assistant", "content": msg.text}
                calls = msg.function_calls
                if calls:
                    entry["tool_calls"] = [
                        {"function": {"name": call.name, "arguments": call.args}}
                        for call in calls
                    ]
                result.append(entry)
                continue

            text_chunks: list[str] = []
            images: list[str] = []
            for part in msg.parts:
                if part.function_response is not None:
                    result.append({
                        "role": "tool",
                        "content": json.dumps(part.function_response.response, default=str),
                        "tool_name": part.function_response.name,
                    })
                elif part.inline_data is not None:
                    if part.inline_data.mime_type.startswith("image/"):
                        images.append(base64.b64encode(part.inline_data.data).decode("ascii"))
                    else:
                        text_chunks.append(
                            f"[{part.inline_data.mime_type} attachment, {len(part.inline_data.data)} bytes]"
                        )
                elif part.text and not part.thought:
                    text_chunks.append(part.text)
            if text_chunks or images:
                entry = {"role": "user", "content": "\n".join(text_chunks)}
                if images:
                    entry["images"] = images
                result.append(entry)

        return result

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert tools to Ollama format."""
        result = []
        for tool in tools:
            if tool.name:
                result.append({
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description or "",
                        "parameters": tool.parameters or {},
                    },
                })
        return result

    @staticmethod
    def _parse_tool_calls(raw_calls: list[dict[str, Any]]) -> list[FunctionCall]:
        calls: list[FunctionCall] = []
        for tc in raw_calls or []:
            fn = tc.get("function", {}) or {}
            arguments = fn.get("arguments", {})
            if isinstance(arguments, str):
                try:
                    arguments = json.loads(arguments) if arguments.strip() else {}
                except json.JSONDecodeError:
                    arguments = {"raw": arguments}
            if not isinstance(arguments, dict):
                arguments = {}
            calls.append(FunctionCall(
                name=str(fn.get("name", "")),
                args=arguments,
                id=tc.get("id") or None,
            ))
        return calls

    def _build_body(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None,
        model: str | None,
        system_instruction: str | None,
        stream: bool,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model or self.model,
            "messages": self._convert_messages(messages, system_instruction),
            "stream": stream,
            "options": {
                "temperature": self.temperature,
                "num_predict": self.max_tokens,
            },
        }
        if tools:
            body["tools"] = self._convert_tools(tools)
        return body

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def stream(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        *,
        model: str | None = None,
        system_instruction: str | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a completion, yielding text, thought and tool-call deltas."""
        url = f"{self.base_url}/api/chat"
        body = self._build_body(messages, tools, model, system_instruction, stream=True)

        try:
            log.debug("Calling Ollama", model=body["model"], url=url, msg_count=len(body["messages"]))
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"Ollama API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    if abort_event is not None and abort_event.is_set():
                        raise OperationCancelledError()
                    if not line.strip():
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        log.warning("Skipping malformed stream line", line=line[:200])
                        continue
                    if data.get("error"):
                        raise LLMError(f"Ollama stream error: {data['error']}")

                    message = data.get("message", {}) or {}
                    chunk = StreamChunk(
                        text=message.get("content", "") or "",
                        thought=message.get("thinking", "") or "",
                        function_calls=self._parse_tool_calls(message.get("tool_calls") or []),
                    )
                    if data.get("done"):
                        chunk.usage = {
                            "prompt_tokens": data.get("prompt_eval_count", 0),
                            "completion_tokens": data.get("eval_count", 0),
                            "total_tokens": data.get("prompt_eval_count", 0) + data.get("eval_count", 0),
                        }
                    if chunk.text or chunk.thought or chunk.function_calls or chunk.usage:
                        yield chunk
                    if data.get("done"):
                        break

        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama streaming error: {e}") from e

    async def generate_json(
        self,
        messages: list[Message],
        schema: dict[str, Any],
        *,
        model: str | None = None,
        system_instruction: str | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> dict[str, Any]:
        """Generate a JSON object constrained by ``schema``."""
        url = f"{self.base_url}/api/chat"
        body = self._build_body(messages, None, model, system_instruction, stream=False)
        body["format"] = schema

        try:
            response = await self.client.post(url, json=body, headers=self._headers())
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama HTTP error: {e}") from e

        if abort_event is not None and abort_event.is_set():
            raise OperationCancelledError()

        if not response.is_success:
            raise LLMAPIError(
                f"Ollama API error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise MalformedResponseError(f"Ollama response decode error: {e}") from e

        content = (data.get("message", {}) or {}).get("content", "")
        return parse_json_object(content)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(config: ModelConfig) -> LLMProvider:
    """Create an LLM provider from model configuration.

    Args:
        config: Model section of the turnloop configuration

    Returns:
        Configured LLMProvider instance
    """
    if config.provider == "ollama":
        return OllamaProvider(
            model=config.model,
            base_url=config.base_url or OLLAMA_NATIVE_BASE_URL,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            api_key=config.api_key or None,
            timeout=config.request_timeout,
        )
    raise ValueError(f"Provider '{config.provider}' not supported. Use 'ollama' or pass a provider instance.")
