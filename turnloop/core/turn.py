"""One request/response exchange with the model."""

import asyncio
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from turnloop.core.chat import ChatSession
from turnloop.core.tool_scheduler import PendingConfirmation, ToolCallRequest, ToolCallStatus, ToolScheduler
from turnloop.exceptions import LLMAPIError, LLMError, OperationCancelledError
from turnloop.llm import FunctionCall, Part, ToolDefinition
from turnloop.logging import get_logger

log = get_logger(__name__)

EVENT_QUEUE_SIZE = 64


class TurnEventType(str, Enum):
    CONTENT = "content"
    THOUGHT = "thought"
    TOOL_CALL_REQUEST = "tool_call_request"
    TOOL_CALL_RESPONSE = "tool_call_response"
    TOOL_CALL_CONFIRMATION = "tool_call_confirmation"
    USER_CANCELLED = "user_cancelled"
    ERROR = "error"
    FINISHED = "finished"
    # Emitted by the conversation driver only
    MODEL_FALLBACK = "model_fallback"
    MAX_SESSION_TURNS = "max_session_turns"


@dataclass
class TurnEvent:
    type: TurnEventType
    value: Any = None


@dataclass
class _Failure:
    error: BaseException


_END = object()


class TurnStream:
    """Pull-based iterator over the events of one turn.

    Events are handed over through a bounded queue, so the producer waits
    when the consumer falls behind. ``aclose`` stops the producer; it is safe
    to call more than once.
    """

    def __init__(self, maxsize: int = EVENT_QUEUE_SIZE):
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._task: asyncio.Task[None] | None = None
        self._closed = False

    def _attach(self, task: asyncio.Task[None]) -> None:
        self._task = task

    async def put(self, event: TurnEvent) -> None:
        await self._queue.put(event)

    async def end(self) -> None:
        await self._queue.put(_END)

    async def fail(self, error: BaseException) -> None:
        await self._queue.put(_Failure(error))

    def __aiter__(self) -> "TurnStream":
        return self

    async def __anext__(self) -> TurnEvent:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            self._closed = True
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self._closed = True
            raise item.error
        return item

    async def aclose(self) -> None:
        self._closed = True
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


async def _cancel_task(task: asyncio.Task[Any]) -> None:
    """Cancel task and await it to avoid pending task warnings."""
    if task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        log.debug("Cancelled task raised", error=str(e))


def make_call_id(name: str) -> str:
    return f"{name}-{int(time.time() * 1000)}-{secrets.token_hex(6)}"


class Turn:
    """Streams one model response and resolves the tool calls it contains.

    The turn never executes tools on its own schedule: function calls are
    recorded while the model streams and handed to the scheduler once the
    stream has closed. Afterwards the driver reads ``pending_confirmations``,
    ``function_responses`` and ``model_parts``.
    """

    def __init__(
        self,
        chat: ChatSession,
        scheduler: ToolScheduler,
        model: str,
        prompt_id: str = "",
    ):
        self.chat = chat
        self.scheduler = scheduler
        self.model = model
        self.prompt_id = prompt_id
        self.pending_confirmations: list[PendingConfirmation] = []
        self.function_responses: list[Part] = []
        self.model_parts: list[Part] = []
        self.usage: dict[str, int] = {}
        self._requests: list[ToolCallRequest] = []
        self._call_ids: set[str] = set()
        self._started = False

    def run(
        self,
        request: list[Part],
        abort_event: asyncio.Event,
        tools: list[ToolDefinition] | None = None,
    ) -> TurnStream:
        """Start the exchange and return its event stream.

        Raises:
            RuntimeError: if the turn has already been run
        """
        if self._started:
            raise RuntimeError("Turn.run() may only be called once; create a new Turn per exchange")
        self._started = True

        stream = TurnStream()
        stream._attach(asyncio.create_task(self._produce(stream, request, abort_event, tools)))
        return stream

    async def _produce(
        self,
        stream: TurnStream,
        request: list[Part],
        abort_event: asyncio.Event,
        tools: list[ToolDefinition] | None,
    ) -> None:
        try:
            await self._read_model_stream(stream, request, abort_event, tools)
            await self._resolve_tool_calls(stream, abort_event)
            await stream.put(TurnEvent(TurnEventType.FINISHED, dict(self.usage)))
        except asyncio.CancelledError:
            raise
        except OperationCancelledError as e:
            await stream.fail(e)
            return
        except LLMError as e:
            await self._fail(stream, e)
            return
        except Exception as e:
            log.error("Turn failed", error=str(e), exc_info=True)
            wrapped = LLMError(f"Turn failed: {e}")
            wrapped.__cause__ = e
            await self._fail(stream, wrapped)
            return
        await stream.end()

    async def _fail(self, stream: TurnStream, error: LLMError) -> None:
        """Report the error as an event, then end the stream by raising it."""
        status = error.status_code if isinstance(error, LLMAPIError) else None
        await stream.put(TurnEvent(TurnEventType.ERROR, {"message": str(error), "status": status}))
        await stream.fail(error)

    async def _read_model_stream(
        self,
        stream: TurnStream,
        request: list[Part],
        abort_event: asyncio.Event,
        tools: list[ToolDefinition] | None,
    ) -> None:
        read_task = asyncio.create_task(self._consume_chunks(stream, request, abort_event, tools))
        abort_wait_task = asyncio.create_task(abort_event.wait())
        try:
            done, _ = await asyncio.wait(
                {read_task, abort_wait_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if read_task in done:
                read_task.result()
                return
            raise OperationCancelledError()
        finally:
            await _cancel_task(read_task)
            await _cancel_task(abort_wait_task)

    async def _consume_chunks(
        self,
        stream: TurnStream,
        request: list[Part],
        abort_event: asyncio.Event,
        tools: list[ToolDefinition] | None,
    ) -> None:
        text: list[str] = []
        thoughts: list[str] = []
        calls: list[FunctionCall] = []

        async for chunk in self.chat.stream(request, model=self.model, tools=tools, abort_event=abort_event):
            if abort_event.is_set():
                raise OperationCancelledError()
            if chunk.thought:
                thoughts.append(chunk.thought)
                await stream.put(TurnEvent(TurnEventType.THOUGHT, chunk.thought))
            if chunk.text:
                text.append(chunk.text)
                await stream.put(TurnEvent(TurnEventType.CONTENT, chunk.text))
            for call in chunk.function_calls:
                call_request = self._record_call(call)
                calls.append(call)
                await stream.put(TurnEvent(TurnEventType.TOOL_CALL_REQUEST, call_request))
            if chunk.usage:
                self.usage = dict(chunk.usage)

        if thoughts:
            self.model_parts.append(Part(text="".join(thoughts), thought=True))
        if text:
            self.model_parts.append(Part.from_text("".join(text)))
        self.model_parts.extend(Part(function_call=call) for call in calls)

    def _record_call(self, call: FunctionCall) -> ToolCallRequest:
        name = call.name or "undefined_tool_name"
        call_id = call.id
        if not call_id or call_id in self._call_ids:
            call_id = make_call_id(name)
        self._call_ids.add(call_id)
        # History must carry the same id the response will echo.
        call.id = call_id
        call.name = name

        request = ToolCallRequest(
            call_id=call_id,
            name=name,
            args=dict(call.args or {}),
            prompt_id=self.prompt_id,
        )
        self._requests.append(request)
        return request

    async def _resolve_tool_calls(self, stream: TurnStream, abort_event: asyncio.Event) -> None:
        if not self._requests:
            return
        outcomes = await self.scheduler.schedule(self._requests, abort_event)
        for outcome in outcomes:
            if outcome.status == ToolCallStatus.AWAITING_APPROVAL and outcome.confirmation is not None:
                self.pending_confirmations.append(outcome.confirmation)
                await stream.put(TurnEvent(TurnEventType.TOOL_CALL_CONFIRMATION, outcome.confirmation))
                continue
            self.function_responses.extend(outcome.response_parts)
            await stream.put(TurnEvent(TurnEventType.TOOL_CALL_RESPONSE, outcome))
