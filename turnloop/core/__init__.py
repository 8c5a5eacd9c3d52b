"""Conversation driver, turns and the tool call pipeline."""

from turnloop.core.chat import ChatSession
from turnloop.core.client import MAX_TURNS, ConversationClient, StreamEvent
from turnloop.core.tool_scheduler import (
    PendingConfirmation,
    ToolCallOutcome,
    ToolCallRequest,
    ToolCallStatus,
    ToolScheduler,
)
from turnloop.core.turn import Turn, TurnEvent, TurnEventType, TurnStream

__all__ = [
    "MAX_TURNS",
    "ChatSession",
    "ConversationClient",
    "PendingConfirmation",
    "StreamEvent",
    "ToolCallOutcome",
    "ToolCallRequest",
    "ToolCallStatus",
    "ToolScheduler",
    "Turn",
    "TurnEvent",
    "TurnEventType",
    "TurnStream",
]
