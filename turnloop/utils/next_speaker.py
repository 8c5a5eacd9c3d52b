"""Ask the model whether it intends to keep talking after its last message."""

import asyncio
from typing import Any, Literal

from turnloop.exceptions import OperationCancelledError
from turnloop.instructions import NEXT_SPEAKER_PROMPT, InstructionLoader
from turnloop.llm import LLMProvider, Message, Part
from turnloop.logging import get_logger

log = get_logger(__name__)

NextSpeaker = Literal["user", "model"]

RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "reasoning": {
            "type": "string",
            "description": "Brief explanation justifying the 'next_speaker' choice based strictly on the applicable rule and the content/structure of the preceding turn.",
        },
        "next_speaker": {
            "type": "string",
            "enum": ["user", "model"],
            "description": "Who should speak next based *only* on the preceding turn and the decision rules.",
        },
    },
    "required": ["reasoning", "next_speaker"],
}


def _last_model_message(history: list[Message]) -> Message | None:
    if not history or history[-1].role != "model":
        return None
    return history[-1]


async def check_next_speaker(
    history: list[Message],
    provider: LLMProvider,
    model: str | None = None,
    abort_event: asyncio.Event | None = None,
    loader: InstructionLoader | None = None,
) -> NextSpeaker | None:
    """Return ``"user"``, ``"model"`` or None when no decision could be made.

    A model message that ends in a function call is answered by the tool
    pipeline, not by this check. An empty model message means the model
    was cut off and should continue.
    """
    last = _last_model_message(history)
    if last is None:
        return None

    if last.parts and last.parts[-1].function_call is not None:
        return None
    if not last.parts or not any(
        (part.text or "").strip() or part.inline_data is not None
        for part in last.parts
        if not part.thought
    ):
        return "model"

    prompt = (loader or InstructionLoader()).load(NEXT_SPEAKER_PROMPT)
    contents = [*history, Message(role="user", parts=[Part.from_text(prompt)])]
    try:
        response = await provider.generate_json(
            contents,
            RESPONSE_SCHEMA,
            model=model,
            abort_event=abort_event,
        )
    except asyncio.CancelledError:
        raise
    except OperationCancelledError:
        return None
    except Exception as e:
        log.warning("Next speaker check failed", error=str(e))
        return None

    speaker = response.get("next_speaker") if isinstance(response, dict) else None
    if speaker in ("user", "model"):
        return speaker
    log.debug("Next speaker check returned no usable answer", response=response)
    return None
