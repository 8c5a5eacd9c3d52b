"""Telemetry sink interface and the structlog-backed default."""

from typing import Any, Protocol

from turnloop.logging import get_logger

log = get_logger(__name__)


class TelemetrySink(Protocol):
    """Receives structured call, response and error events.

    The core never depends on the outcome of these calls.
    """

    def log_api_request(self, model: str, prompt_id: str) -> None: ...

    def log_api_response(self, model: str, prompt_id: str, duration_ms: int, usage: dict[str, int]) -> None: ...

    def log_api_error(self, model: str, prompt_id: str, duration_ms: int, error: str, status_code: int | None) -> None: ...

    def log_tool_call(
        self,
        name: str,
        call_id: str,
        status: str,
        duration_ms: int,
        error_kind: str | None,
        prompt_id: str,
    ) -> None: ...

    def log_event(self, event: str, **fields: Any) -> None: ...


class StructlogTelemetrySink:
    """Telemetry written as structured log events."""

    def log_api_request(self, model: str, prompt_id: str) -> None:
        log.debug("api_request", model=model, prompt_id=prompt_id)

    def log_api_response(self, model: str, prompt_id: str, duration_ms: int, usage: dict[str, int]) -> None:
        log.debug("api_response", model=model, prompt_id=prompt_id, duration_ms=duration_ms, **usage)

    def log_api_error(self, model: str, prompt_id: str, duration_ms: int, error: str, status_code: int | None) -> None:
        log.warning(
            "api_error",
            model=model,
            prompt_id=prompt_id,
            duration_ms=duration_ms,
            error=error,
            status_code=status_code,
        )

    def log_tool_call(
        self,
        name: str,
        call_id: str,
        status: str,
        duration_ms: int,
        error_kind: str | None,
        prompt_id: str,
    ) -> None:
        log.info(
            "tool_call",
            tool=name,
            call_id=call_id,
            status=status,
            duration_ms=duration_ms,
            error_kind=error_kind,
            prompt_id=prompt_id,
        )

    def log_event(self, event: str, **fields: Any) -> None:
        log.info(event, **fields)


def safe_report(sink: TelemetrySink | None, method: str, *args: Any, **kwargs: Any) -> None:
    """Call ``sink.<method>``; sink failures are logged and otherwise ignored."""
    if sink is None:
        return
    try:
        getattr(sink, method)(*args, **kwargs)
    except Exception as e:
        log.debug("Telemetry sink failed", method=method, error=str(e))
