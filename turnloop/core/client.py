"""Conversation driver: owns the history and runs turns until the model is done."""

import asyncio
import platform
import time
import uuid
from datetime import date
from typing import AsyncIterator

from turnloop.config import Config
from turnloop.core.chat import ChatSession
from turnloop.core.tool_scheduler import ToolScheduler
from turnloop.core.turn import Turn, TurnEvent, TurnEventType
from turnloop.exceptions import ApiError, InitializationError, LLMAPIError, LLMError, OperationCancelledError
from turnloop.instructions import SYSTEM_PROMPT, InstructionLoader
from turnloop.llm import LLMProvider, Message, Part
from turnloop.logging import get_logger
from turnloop.telemetry import StructlogTelemetrySink, TelemetrySink, safe_report
from turnloop.tools.base import ToolConfirmationOutcome
from turnloop.tools.registry import ToolRegistry
from turnloop.utils.environment import get_environment_context
from turnloop.utils.next_speaker import check_next_speaker

log = get_logger(__name__)

MAX_TURNS = 100
ACKNOWLEDGEMENT = "Got it. Thanks for the context!"
CONTINUE_PROMPT = "Please continue."
CANCELLED_RESPONSE = "Tool call cancelled by user."

StreamEvent = TurnEvent


class ConversationClient:
    """Drives a session: user input in, turn events out.

    Each ``send_message`` call runs up to ``max_turns`` turns. Tool results
    feed the next turn; a turn with calls awaiting approval hands control
    back to the caller, who resolves them with ``resolve_confirmation`` and
    sends the returned parts with the next message.
    """

    def __init__(
        self,
        config: Config,
        provider: LLMProvider,
        registry: ToolRegistry,
        scheduler: ToolScheduler | None = None,
        telemetry: TelemetrySink | None = None,
        loader: InstructionLoader | None = None,
    ):
        self.config = config
        self.provider = provider
        self.registry = registry
        self.telemetry = telemetry if telemetry is not None else StructlogTelemetrySink()
        self.scheduler = scheduler or ToolScheduler(registry, config, telemetry=self.telemetry)
        self.loader = loader or InstructionLoader()
        self.model = config.model.model
        self.max_turns = config.session.max_turns or MAX_TURNS
        self._chat: ChatSession | None = None
        self._carried_responses: list[Part] = []

    @property
    def chat(self) -> ChatSession | None:
        return self._chat

    def get_history(self) -> list[Message]:
        return self._chat.history if self._chat is not None else []

    def _system_instruction(self) -> str:
        return self.loader.render(
            SYSTEM_PROMPT,
            target_dir=self.config.resolved_target_dir(),
            platform=platform.system().lower(),
            today=date.today().isoformat(),
        )

    async def start_session(self, extra_history: list[Message] | None = None) -> ChatSession:
        """Create the chat with the environment preamble and acknowledgement.

        Raises:
            InitializationError: carrying whatever history was assembled
        """
        history: list[Message] = []
        try:
            env_parts = await get_environment_context(self.config, self.registry)
            history = [
                Message(role="user", parts=env_parts),
                Message(role="model", parts=[Part.from_text(ACKNOWLEDGEMENT)]),
                *(extra_history or []),
            ]
            self._chat = ChatSession(
                self.provider,
                system_instruction=self._system_instruction(),
                history=history,
            )
        except Exception as e:
            log.error("Error initializing chat session", error=str(e))
            raise InitializationError(f"Failed to initialize chat: {e}", history=history) from e

        self._carried_responses = []
        log.info("Chat session started", model=self.model, history_len=len(history))
        return self._chat

    async def resolve_confirmation(
        self,
        call_id: str,
        outcome: ToolConfirmationOutcome,
        abort_event: asyncio.Event,
    ) -> list[Part]:
        """Resolve a call that was awaiting approval.

        Returns the function-response parts to pass to the next
        ``send_message`` call.
        """
        result = await self.scheduler.resolve_confirmation(call_id, outcome, abort_event)
        return result.response_parts

    @staticmethod
    def _as_parts(request: str | Part | list[Part]) -> list[Part]:
        if isinstance(request, str):
            return [Part.from_text(request)]
        if isinstance(request, Part):
            return [request]
        return list(request)

    def _pair_outstanding_calls(self, parts: list[Part]) -> list[Part]:
        """Answer every call of the last model message that has no response yet."""
        assert self._chat is not None
        last = self._chat.last_message
        if last is None or last.role != "model" or not last.function_calls:
            return parts

        answered = {part.function_response.id for part in parts if part.function_response is not None}
        for outcome in self.scheduler.cancel_all_pending():
            if outcome.request.call_id not in answered:
                parts = [*outcome.response_parts, *parts]
                answered.add(outcome.request.call_id)

        missing = [call for call in last.function_calls if call.id not in answered]
        if not missing:
            return parts
        log.warning("Synthesizing responses for unanswered tool calls", call_ids=[call.id for call in missing])
        synthesized = [
            Part.from_function_response(call.id or "", call.name, {"error": CANCELLED_RESPONSE})
            for call in missing
        ]
        return [*synthesized, *parts]

    def _switch_to_fallback(self) -> bool:
        fallback = self.config.model.fallback_model
        if not fallback or fallback == self.model:
            return False
        log.warning("Switching to fallback model after rate limit", from_model=self.model, to_model=fallback)
        self.model = fallback
        return True

    async def send_message(
        self,
        request: str | Part | list[Part],
        abort_event: asyncio.Event,
        prompt_id: str | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Run turns for ``request`` and yield their events.

        Raises:
            ApiError: the model endpoint failed for a reason other than 429
        """
        if self._chat is None:
            await self.start_session()
        assert self._chat is not None

        prompt_id = prompt_id or uuid.uuid4().hex[:12]
        parts = [*self._carried_responses, *self._as_parts(request)]
        self._carried_responses = []
        parts = self._pair_outstanding_calls(parts)

        for turn_index in range(self.max_turns):
            if abort_event.is_set():
                self._carry_responses(parts)
                yield TurnEvent(TurnEventType.USER_CANCELLED)
                return

            while True:
                turn = Turn(self._chat, self.scheduler, model=self.model, prompt_id=prompt_id)
                emitted = False
                started = time.monotonic()
                safe_report(self.telemetry, "log_api_request", self.model, prompt_id)
                stream = turn.run(parts, abort_event, tools=self.registry.get_function_declarations())
                try:
                    async for event in stream:
                        if event.type != TurnEventType.ERROR:
                            emitted = True
                        yield event
                except OperationCancelledError:
                    self._carry_responses(parts)
                    yield TurnEvent(TurnEventType.USER_CANCELLED)
                    return
                except LLMError as e:
                    duration_ms = int((time.monotonic() - started) * 1000)
                    status_code = e.status_code if isinstance(e, LLMAPIError) else None
                    safe_report(
                        self.telemetry,
                        "log_api_error",
                        self.model,
                        prompt_id,
                        duration_ms,
                        str(e),
                        status_code,
                    )
                    if status_code == 429 and not emitted:
                        previous = self.model
                        if self._switch_to_fallback():
                            yield TurnEvent(
                                TurnEventType.MODEL_FALLBACK,
                                {"from_model": previous, "to_model": self.model},
                            )
                            continue
                    self._carry_responses(parts)
                    raise ApiError(
                        str(e),
                        status_code=status_code,
                        duration_ms=duration_ms,
                        model=self.model,
                    ) from e
                finally:
                    await stream.aclose()
                break

            safe_report(
                self.telemetry,
                "log_api_response",
                self.model,
                prompt_id,
                int((time.monotonic() - started) * 1000),
                turn.usage,
            )
            self._chat.record_exchange(parts, turn.model_parts)

            if turn.pending_confirmations:
                self._carried_responses = list(turn.function_responses)
                log.info(
                    "Turn awaiting tool confirmation",
                    turn=turn_index + 1,
                    pending=[p.call_id for p in turn.pending_confirmations],
                )
                return

            if turn.function_responses:
                parts = list(turn.function_responses)
                continue

            if abort_event.is_set():
                yield TurnEvent(TurnEventType.USER_CANCELLED)
                return

            speaker = await check_next_speaker(
                self._chat.history,
                self.provider,
                model=self.model,
                abort_event=abort_event,
                loader=self.loader,
            )
            if speaker != "model":
                return
            parts = [Part.from_text(CONTINUE_PROMPT)]

        self._carry_responses(parts)
        log.warning("Maximum session turns reached", max_turns=self.max_turns)
        safe_report(self.telemetry, "log_event", "max_session_turns", max_turns=self.max_turns)
        yield TurnEvent(TurnEventType.MAX_SESSION_TURNS, self.max_turns)

    def _carry_responses(self, parts: list[Part]) -> None:
        """Keep unsent tool responses so the next message still answers their calls."""
        if any(part.function_response is not None for part in parts):
            self._carried_responses = [
                part for part in parts if part.function_response is not None or part.inline_data is not None
            ]
