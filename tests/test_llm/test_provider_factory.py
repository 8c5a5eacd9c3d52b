import asyncio
import json

import httpx
import pytest

from turnloop.config import ModelConfig
from turnloop.exceptions import LLMAPIError, MalformedResponseError, OperationCancelledError
from turnloop.llm import (
    FunctionCall,
    InlineData,
    Message,
    OllamaProvider,
    Part,
    ToolDefinition,
    create_provider,
    parse_json_object,
)


def _provider_with(handler) -> OllamaProvider:
    provider = OllamaProvider(model="qwen3:8b", base_url="http://ollama.test/")
    provider.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return provider


def _ndjson(*lines: dict) -> bytes:
    return "".join(json.dumps(line) + "\n" for line in lines).encode("utf-8")


async def _collect(provider: OllamaProvider, **kwargs):
    chunks = []
    async for chunk in provider.stream([Message(role="user", parts=[Part.from_text("hi")])], **kwargs):
        chunks.append(chunk)
    return chunks


def test_create_provider_supports_ollama():
    provider = create_provider(ModelConfig(
        provider="ollama",
        model="llama3.2",
        base_url="http://localhost:11434/",
        api_key="secret",
    ))

    assert isinstance(provider, OllamaProvider)
    assert provider.model == "llama3.2"
    assert provider.base_url == "http://localhost:11434"
    assert provider.api_key == "secret"


def test_create_provider_defaults_base_url():
    provider = create_provider(ModelConfig())

    assert provider.base_url == "http://127.0.0.1:11434"
    assert provider.api_key is None


def test_create_provider_rejects_unknown_provider():
    with pytest.raises(ValueError, match="not supported"):
        create_provider(ModelConfig(provider="openai"))


def test_parse_json_object_tolerates_fences():
    assert parse_json_object('{"next_speaker": "user"}') == {"next_speaker": "user"}
    assert parse_json_object('```json\n{"next_speaker": "model"}\n```') == {"next_speaker": "model"}

    with pytest.raises(MalformedResponseError):
        parse_json_object("")
    with pytest.raises(MalformedResponseError):
        parse_json_object("no json here")
    with pytest.raises(MalformedResponseError):
        parse_json_object("[1, 2]")


def test_convert_messages_maps_roles_and_parts():
    provider = OllamaProvider()
    messages = [
        Message(role="user", parts=[
            Part.from_text("look at this"),
            Part(inline_data=InlineData(mime_type="image/png", data=b"\x89PNG")),
        ]),
        Message(role="model", parts=[
            Part(text="thinking", thought=True),
            Part.from_text("Reading it."),
            Part(function_call=FunctionCall(name="read_file", args={"absolute_path": "/w/a"}, id="c1")),
        ]),
        Message(role="user", parts=[Part.from_function_response("c1", "read_file", {"output": "data"})]),
    ]

    converted = provider._convert_messages(messages, system_instruction="be brief")

    assert converted[0] == {"role": "system", "content": "be brief"}
    assert converted[1]["content"] == "look at this"
    assert converted[1]["images"] == ["iVBORw=="]
    assert converted[2] == {
        "role": "assistant",
        "content": "Reading it.",
        "tool_calls": [{"function": {"name": "read_file", "arguments": {"absolute_path": "/w/a"}}}],
    }
    assert converted[3] == {"role": "tool", "content": '{"output": "data"}', "tool_name": "read_file"}


def test_parse_tool_calls_accepts_string_arguments():
    calls = OllamaProvider._parse_tool_calls([
        {"function": {"name": "glob", "arguments": '{"pattern": "*.py"}'}},
        {"function": {"name": "glob", "arguments": "not json"}},
        {"id": "x1", "function": {"name": "glob", "arguments": {"pattern": "*.md"}}},
    ])

    assert calls[0] == FunctionCall(name="glob", args={"pattern": "*.py"})
    assert calls[1].args == {"raw": "not json"}
    assert calls[2].id == "x1"


@pytest.mark.asyncio
async def test_stream_yields_text_tool_calls_and_usage():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=_ndjson(
            {"message": {"content": "Hel"}},
            {"message": {"thinking": "hmm"}},
            {"message": {"content": "lo", "tool_calls": [{"function": {"name": "glob", "arguments": {}}}]}},
            {"message": {"content": ""}, "done": True, "prompt_eval_count": 5, "eval_count": 3},
        ))

    provider = _provider_with(handler)
    tools = [ToolDefinition(name="glob", description="Find files", parameters={"type": "object"})]

    chunks = await _collect(provider, tools=tools, model="qwen3:32b")

    assert seen["url"] == "http://ollama.test/api/chat"
    assert seen["body"]["model"] == "qwen3:32b"
    assert seen["body"]["stream"] is True
    assert seen["body"]["tools"][0]["function"]["name"] == "glob"
    assert "".join(c.text for c in chunks) == "Hello"
    assert chunks[1].thought == "hmm"
    assert chunks[2].function_calls[0].name == "glob"
    assert chunks[-1].usage == {"prompt_tokens": 5, "completion_tokens": 3, "total_tokens": 8}


@pytest.mark.asyncio
async def test_stream_error_status_raises_with_status_code():
    provider = _provider_with(lambda request: httpx.Response(429, text="slow down"))

    with pytest.raises(LLMAPIError) as exc_info:
        await _collect(provider)

    assert exc_info.value.status_code == 429
    assert "slow down" in str(exc_info.value)


@pytest.mark.asyncio
async def test_stream_stops_when_aborted():
    provider = _provider_with(lambda request: httpx.Response(200, content=_ndjson(
        {"message": {"content": "never"}},
    )))
    abort_event = asyncio.Event()
    abort_event.set()

    with pytest.raises(OperationCancelledError):
        await _collect(provider, abort_event=abort_event)


@pytest.mark.asyncio
async def test_generate_json_sends_schema_as_format():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "message": {"content": '{"reasoning": "done", "next_speaker": "user"}'},
        })

    provider = _provider_with(handler)
    schema = {"type": "object", "properties": {"next_speaker": {"type": "string"}}}

    result = await provider.generate_json([Message(role="user", parts=[Part.from_text("q")])], schema)

    assert result == {"reasoning": "done", "next_speaker": "user"}
    assert seen["body"]["format"] == schema
    assert seen["body"]["stream"] is False


def test_count_tokens_is_a_rough_character_estimate():
    assert OllamaProvider().count_tokens("x" * 40) == 10
