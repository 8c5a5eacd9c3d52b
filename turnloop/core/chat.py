"""Chat session: the append-only history plus the model stream it feeds."""

import asyncio
from typing import AsyncIterator

from turnloop.llm import LLMProvider, Message, Part, StreamChunk, ToolDefinition


class ChatSession:
    """Holds the conversation history for one session.

    History only grows. ``stream`` sends the history plus a new request
    without recording it; the conversation driver appends both sides of an
    exchange once it has finished.
    """

    def __init__(
        self,
        provider: LLMProvider,
        system_instruction: str | None = None,
        history: list[Message] | None = None,
    ):
        self.provider = provider
        self.system_instruction = system_instruction
        self._history: list[Message] = list(history or [])

    @property
    def history(self) -> list[Message]:
        """Snapshot of the history; mutating it does not affect the session."""
        return list(self._history)

    @property
    def last_message(self) -> Message | None:
        return self._history[-1] if self._history else None

    def append(self, message: Message) -> None:
        self._history.append(message)

    def record_exchange(self, request: list[Part], response: list[Part]) -> None:
        """Append the user request and the model reply that answered it."""
        self._history.append(Message(role="user", parts=list(request)))
        self._history.append(Message(role="model", parts=list(response)))

    def stream(
        self,
        request: list[Part],
        *,
        model: str,
        tools: list[ToolDefinition] | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        contents = [*self._history, Message(role="user", parts=list(request))]
        return self.provider.stream(
            contents,
            tools or None,
            model=model,
            system_instruction=self.system_instruction,
            abort_event=abort_event,
        )
