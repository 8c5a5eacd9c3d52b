import asyncio
from pathlib import Path

import pytest

from turnloop.config import Config
from turnloop.core.client import CONTINUE_PROMPT, MAX_TURNS, ConversationClient
from turnloop.core.turn import TurnEventType
from turnloop.exceptions import ApiError, InitializationError, LLMAPIError
from turnloop.instructions import InstructionLoader
from turnloop.llm import FunctionCall, LLMProvider, StreamChunk
from turnloop.tools.base import ExecConfirmation, Tool, ToolConfirmationOutcome, ToolResult
from turnloop.tools.registry import ToolRegistry


class FakeProvider(LLMProvider):
    def __init__(self, script=None, default=None, next_speakers=None):
        self.script = list(script or [])
        self.default = default
        self.next_speakers = list(next_speakers or [])
        self.models: list[str] = []
        self.requests: list[list] = []
        self.json_calls = 0

    async def stream(self, messages, tools=None, *, model=None, system_instruction=None, abort_event=None):
        self.models.append(model)
        self.requests.append(list(messages))
        if self.script:
            item = self.script.pop(0)
        elif self.default is not None:
            item = self.default()
        else:
            item = [StreamChunk(text="done")]
        if isinstance(item, Exception):
            raise item
        for chunk in item:
            yield chunk

    async def generate_json(self, messages, schema, *, model=None, system_instruction=None, abort_event=None):
        self.json_calls += 1
        speaker = self.next_speakers.pop(0) if self.next_speakers else "user"
        return {"reasoning": "test", "next_speaker": speaker}


class EchoTool(Tool):
    name = "echo"
    description = "Echo text back"
    parameters = {
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
    }

    async def execute(self, params, abort_event, update_output=None):
        return ToolResult(llm_content=params["text"], return_display=params["text"])


class GuardedTool(EchoTool):
    name = "guarded"

    def __init__(self):
        self.executed = 0

    async def should_confirm_execute(self, params, abort_event):
        return ExecConfirmation(title="Confirm", command=params["text"], root_command="guarded")

    async def execute(self, params, abort_event, update_output=None):
        self.executed += 1
        return await super().execute(params, abort_event, update_output)


def _client(tmp_path: Path, provider: FakeProvider, *tools) -> ConversationClient:
    config = Config()
    config.session.target_dir = str(tmp_path)
    registry = ToolRegistry(config)
    for tool in tools:
        registry.register(tool)
    return ConversationClient(config, provider, registry)


async def _drain(client: ConversationClient, request, abort_event=None):
    events = []
    async for event in client.send_message(request, abort_event or asyncio.Event()):
        events.append(event)
    return events


def _echo_call():
    return [StreamChunk(function_calls=[FunctionCall(name="echo", args={"text": "again"})])]


@pytest.mark.asyncio
async def test_start_session_builds_preamble_and_acknowledgement(tmp_path: Path):
    (tmp_path / "notes.txt").write_text("x", encoding="utf-8")
    client = _client(tmp_path, FakeProvider())

    await client.start_session()

    history = client.get_history()
    assert [m.role for m in history] == ["user", "model"]
    preamble = history[0].text
    assert "Today is" in preamble
    assert str(tmp_path.resolve()) in preamble
    assert "notes.txt" in preamble
    assert history[1].text == "Got it. Thanks for the context!"


@pytest.mark.asyncio
async def test_start_session_failure_carries_attempted_history(tmp_path: Path):
    config = Config()
    config.session.target_dir = str(tmp_path)
    loader = InstructionLoader(base_dir=tmp_path / "missing", personal_dir=tmp_path / "none")
    client = ConversationClient(config, FakeProvider(), ToolRegistry(config), loader=loader)

    with pytest.raises(InitializationError, match="Failed to initialize chat") as exc_info:
        await client.start_session()

    assert len(exc_info.value.history) == 2
    assert exc_info.value.history[1].text == "Got it. Thanks for the context!"


@pytest.mark.asyncio
async def test_plain_answer_ends_after_next_speaker_says_user(tmp_path: Path):
    provider = FakeProvider([[StreamChunk(text="All done.")]])
    client = _client(tmp_path, provider)

    events = await _drain(client, "hello")

    assert [e.type for e in events] == [TurnEventType.CONTENT, TurnEventType.FINISHED]
    assert len(provider.requests) == 1
    assert provider.json_calls == 1
    history = client.get_history()
    assert history[-2].text == "hello"
    assert history[-1].text == "All done."


@pytest.mark.asyncio
async def test_next_speaker_model_continues_with_synthetic_prompt(tmp_path: Path):
    provider = FakeProvider(
        [[StreamChunk(text="Next, I will check the tests.")], [StreamChunk(text="Checked.")]],
        next_speakers=["model", "user"],
    )
    client = _client(tmp_path, provider)

    await _drain(client, "start")

    assert len(provider.requests) == 2
    assert provider.requests[1][-1].text == CONTINUE_PROMPT


@pytest.mark.asyncio
async def test_tool_loop_stops_at_exactly_max_turns(tmp_path: Path):
    provider = FakeProvider(default=_echo_call)
    client = _client(tmp_path, provider, EchoTool())

    events = await _drain(client, "loop forever")

    assert client.max_turns == MAX_TURNS == 100
    assert len(provider.requests) == MAX_TURNS
    assert events[-1].type == TurnEventType.MAX_SESSION_TURNS
    assert events[-1].value == MAX_TURNS


@pytest.mark.asyncio
async def test_every_call_is_answered_before_next_model_call(tmp_path: Path):
    provider = FakeProvider([_echo_call(), _echo_call(), [StreamChunk(text="finished")]])
    client = _client(tmp_path, provider, EchoTool())

    await _drain(client, "go")

    assert len(provider.requests) == 3
    for messages in provider.requests[1:]:
        model_message, reply = messages[-2], messages[-1]
        call_ids = [call.id for call in model_message.function_calls]
        response_ids = [response.id for response in reply.function_responses]
        assert call_ids
        assert sorted(call_ids) == sorted(response_ids)


@pytest.mark.asyncio
async def test_rate_limit_switches_to_fallback_model_for_session(tmp_path: Path):
    provider = FakeProvider([
        LLMAPIError("Too many requests", status_code=429),
        [StreamChunk(text="from fallback")],
        [StreamChunk(text="still fallback")],
    ])
    client = _client(tmp_path, provider)
    default_model = client.config.model.model
    fallback_model = client.config.model.fallback_model

    events = await _drain(client, "hi")
    await _drain(client, "again")

    fallback_events = [e for e in events if e.type == TurnEventType.MODEL_FALLBACK]
    assert len(fallback_events) == 1
    assert fallback_events[0].value == {"from_model": default_model, "to_model": fallback_model}
    assert provider.models == [default_model, fallback_model, fallback_model]
    assert client.model == fallback_model


@pytest.mark.asyncio
async def test_other_endpoint_errors_raise_api_error(tmp_path: Path):
    provider = FakeProvider([LLMAPIError("upstream exploded", status_code=500)])
    client = _client(tmp_path, provider)

    with pytest.raises(ApiError, match="upstream exploded") as exc_info:
        await _drain(client, "hi")

    assert exc_info.value.status_code == 500
    assert exc_info.value.model == client.config.model.model
    assert exc_info.value.duration_ms >= 0


@pytest.mark.asyncio
async def test_pending_confirmation_stops_loop_until_resolved(tmp_path: Path):
    guarded = GuardedTool()
    provider = FakeProvider([
        [StreamChunk(function_calls=[FunctionCall(name="guarded", args={"text": "make"}, id="g1")])],
        [StreamChunk(text="built")],
    ])
    client = _client(tmp_path, provider, guarded)
    abort_event = asyncio.Event()

    events = await _drain(client, "build it", abort_event)

    assert events[-1].type == TurnEventType.FINISHED
    assert any(e.type == TurnEventType.TOOL_CALL_CONFIRMATION for e in events)
    assert len(provider.requests) == 1
    assert guarded.executed == 0

    parts = await client.resolve_confirmation("g1", ToolConfirmationOutcome.PROCEED_ONCE, abort_event)
    await _drain(client, parts, abort_event)

    assert guarded.executed == 1
    reply = provider.requests[1][-1]
    assert [r.id for r in reply.function_responses] == ["g1"]
    assert reply.function_responses[0].response == {"output": "make"}


@pytest.mark.asyncio
async def test_unresolved_calls_get_cancelled_responses_on_next_message(tmp_path: Path):
    provider = FakeProvider([
        [StreamChunk(function_calls=[FunctionCall(name="guarded", args={"text": "x"}, id="g1")])],
        [StreamChunk(text="ok")],
    ])
    client = _client(tmp_path, provider, GuardedTool())

    await _drain(client, "first")
    await _drain(client, "never mind")

    reply = provider.requests[1][-1]
    assert [r.id for r in reply.function_responses] == ["g1"]
    assert "error" in reply.function_responses[0].response
    assert reply.text == "never mind"
    assert client.scheduler.pending_confirmations == []


@pytest.mark.asyncio
async def test_abort_before_turn_emits_user_cancelled(tmp_path: Path):
    provider = FakeProvider()
    client = _client(tmp_path, provider)
    abort_event = asyncio.Event()
    abort_event.set()

    events = await _drain(client, "hi", abort_event)

    assert [e.type for e in events] == [TurnEventType.USER_CANCELLED]
    assert provider.requests == []
