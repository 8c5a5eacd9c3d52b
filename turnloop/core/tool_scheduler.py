"""Tool call pipeline: lookup, validation, confirmation and guarded execution."""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from turnloop.config import ApprovalMode, Config
from turnloop.exceptions import OperationCancelledError, ToolValidationError
from turnloop.llm import Part
from turnloop.logging import get_logger
from turnloop.telemetry import TelemetrySink, safe_report
from turnloop.tools.base import (
    ToolCallConfirmationDetails,
    ToolConfirmationOutcome,
    ToolErrorKind,
    ToolInvocation,
    ToolResult,
)
from turnloop.tools.registry import ToolRegistry

log = get_logger(__name__)

ABORT_GRACE_SECONDS = 1.0


@dataclass
class ToolCallRequest:
    """A function call emitted by the model, keyed by ``call_id``."""

    call_id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)
    prompt_id: str = ""


class ToolCallStatus(str, Enum):
    AWAITING_APPROVAL = "awaiting_approval"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass
class PendingConfirmation:
    """A call held until the caller resolves it with an outcome."""

    call_id: str
    request: ToolCallRequest
    details: ToolCallConfirmationDetails
    invocation: ToolInvocation


@dataclass
class ToolCallOutcome:
    """Where one call ended up after scheduling or confirmation."""

    request: ToolCallRequest
    status: ToolCallStatus
    result: ToolResult | None = None
    response_parts: list[Part] = field(default_factory=list)
    confirmation: PendingConfirmation | None = None
    duration_ms: int = 0

    @property
    def error_kind(self) -> ToolErrorKind | None:
        if self.result is None or self.result.error is None:
            return None
        return self.result.error.kind


def convert_to_function_response(call_id: str, name: str, result: ToolResult) -> list[Part]:
    """Build the function-response parts answering ``call_id``.

    Text becomes ``{"output": text}``; for part lists, text parts are joined
    into the output and binary parts follow the response part. Errors become
    ``{"error": message}``, with any partial text output kept under ``output``.
    """
    if result.error is not None:
        response: dict[str, Any] = {"error": result.error.message}
        if isinstance(result.llm_content, str) and result.llm_content not in ("", result.error.message):
            response["output"] = result.llm_content
        return [Part.from_function_response(call_id, name, response)]

    content = result.llm_content
    if isinstance(content, str):
        return [Part.from_function_response(call_id, name, {"output": content})]

    texts = [part.text for part in content if part.text is not None and part.inline_data is None]
    binaries = [part for part in content if part.inline_data is not None]
    if texts:
        output = "\n".join(texts)
    elif binaries:
        output = ", ".join(f"Binary content of type {part.inline_data.mime_type} was processed." for part in binaries)
    else:
        output = "Tool execution succeeded."
    return [Part.from_function_response(call_id, name, {"output": output}), *binaries]


class ToolScheduler:
    """Runs tool calls; every failure becomes a structured result, never an exception."""

    def __init__(
        self,
        registry: ToolRegistry,
        config: Config,
        telemetry: TelemetrySink | None = None,
        output_handler: Callable[[str, str], None] | None = None,
    ):
        self.registry = registry
        self.config = config
        self.telemetry = telemetry
        self.output_handler = output_handler
        self._pending: dict[str, PendingConfirmation] = {}

    @property
    def pending_confirmations(self) -> list[PendingConfirmation]:
        return list(self._pending.values())

    def get_pending(self, call_id: str) -> PendingConfirmation | None:
        return self._pending.get(call_id)

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("Cancelled task raised", error=str(e))

    @staticmethod
    async def _bridge_abort_event(source: asyncio.Event, target: asyncio.Event) -> None:
        """Mirror external abort event to local tool abort event."""
        await source.wait()
        target.set()

    def _finish(
        self,
        request: ToolCallRequest,
        result: ToolResult,
        started: float,
    ) -> ToolCallOutcome:
        if result.error is None:
            status = ToolCallStatus.SUCCESS
        elif result.error.kind == ToolErrorKind.CANCELLED:
            status = ToolCallStatus.CANCELLED
        else:
            status = ToolCallStatus.ERROR
        duration_ms = int((time.monotonic() - started) * 1000)
        safe_report(
            self.telemetry,
            "log_tool_call",
            request.name,
            request.call_id,
            status.value,
            duration_ms,
            result.error.kind.value if result.error else None,
            request.prompt_id,
        )
        return ToolCallOutcome(
            request=request,
            status=status,
            result=result,
            response_parts=convert_to_function_response(request.call_id, request.name, result),
            duration_ms=duration_ms,
        )

    def _skip_confirmation(self, details: ToolCallConfirmationDetails) -> bool:
        mode = self.config.get_approval_mode()
        if mode == ApprovalMode.YOLO:
            return True
        return mode == ApprovalMode.AUTO_EDIT and details.type in {"edit", "info"}

    async def schedule(
        self,
        requests: list[ToolCallRequest],
        abort_event: asyncio.Event,
    ) -> list[ToolCallOutcome]:
        """Process every request concurrently; outcomes keep request order."""
        return list(await asyncio.gather(*(self._process(request, abort_event) for request in requests)))

    async def _process(self, request: ToolCallRequest, abort_event: asyncio.Event) -> ToolCallOutcome:
        started = time.monotonic()

        tool = self.registry.get_tool(request.name)
        if tool is None:
            return self._finish(
                request,
                ToolResult.failure(f'Tool "{request.name}" not found in registry.', ToolErrorKind.NOT_FOUND),
                started,
            )

        try:
            invocation = tool.build(request.args)
        except ToolValidationError as e:
            return self._finish(
                request,
                ToolResult.failure(
                    f"Invalid parameters provided. Reason: {e.reason}",
                    ToolErrorKind.INVALID_PARAMS,
                ),
                started,
            )
        except Exception as e:
            return self._finish(request, ToolResult.failure(str(e), ToolErrorKind.INVALID_PARAMS), started)

        if abort_event.is_set():
            return self._finish(request, self._cancelled_result(), started)

        try:
            details = await invocation.should_confirm_execute(abort_event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Confirmation check failed", tool=request.name, error=str(e))
            return self._finish(request, ToolResult.failure(str(e), ToolErrorKind.EXECUTION_FAILURE), started)

        if details is not None and not self._skip_confirmation(details):
            pending = PendingConfirmation(
                call_id=request.call_id,
                request=request,
                details=details,
                invocation=invocation,
            )
            self._pending[request.call_id] = pending
            log.info("Tool call awaiting approval", tool=request.name, call_id=request.call_id)
            return ToolCallOutcome(
                request=request,
                status=ToolCallStatus.AWAITING_APPROVAL,
                confirmation=pending,
            )

        return await self._execute(request, invocation, abort_event, started)

    async def resolve_confirmation(
        self,
        call_id: str,
        outcome: ToolConfirmationOutcome,
        abort_event: asyncio.Event,
    ) -> ToolCallOutcome:
        """Apply the caller's decision to a pending call and run it if approved.

        Raises:
            KeyError if no call with ``call_id`` is awaiting approval
        """
        pending = self._pending.pop(call_id, None)
        if pending is None:
            raise KeyError(f"No pending confirmation for call '{call_id}'")

        started = time.monotonic()
        try:
            pending.invocation.on_confirm(outcome)
        except Exception as e:
            log.error("Applying confirmation outcome failed", call_id=call_id, error=str(e))

        if outcome == ToolConfirmationOutcome.CANCEL:
            return self._finish(
                pending.request,
                ToolResult.failure(
                    "User did not allow tool call",
                    ToolErrorKind.CANCELLED,
                ),
                started,
            )
        if abort_event.is_set():
            return self._finish(pending.request, self._cancelled_result(), started)
        return await self._execute(pending.request, pending.invocation, abort_event, started)

    def cancel_all_pending(self) -> list[ToolCallOutcome]:
        """Resolve every pending call as cancelled without running it."""
        outcomes = []
        for call_id in list(self._pending):
            pending = self._pending.pop(call_id)
            outcomes.append(self._finish(pending.request, self._cancelled_result(), time.monotonic()))
        return outcomes

    @staticmethod
    def _cancelled_result() -> ToolResult:
        return ToolResult.failure("Tool call cancelled by user.", ToolErrorKind.CANCELLED)

    async def _execute(
        self,
        request: ToolCallRequest,
        invocation: ToolInvocation,
        abort_event: asyncio.Event,
        started: float,
    ) -> ToolCallOutcome:
        tool = invocation.tool
        execute_task: asyncio.Task[ToolResult] | None = None
        abort_wait_task: asyncio.Task[bool] | None = None
        bridge_task: asyncio.Task[None] | None = None
        tool_abort_event = asyncio.Event()

        update_output = None
        if self.output_handler is not None and tool.can_update_output:
            handler = self.output_handler

            def update_output(output: str) -> None:
                handler(request.call_id, output)

        try:
            log.info("Executing tool", tool=request.name, call_id=request.call_id)
            timeout_seconds = tool.timeout_seconds

            bridge_task = asyncio.create_task(self._bridge_abort_event(abort_event, tool_abort_event))
            execute_task = asyncio.create_task(invocation.execute(tool_abort_event, update_output))
            abort_wait_task = asyncio.create_task(tool_abort_event.wait())
            done, _ = await asyncio.wait(
                {execute_task, abort_wait_task},
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done and not tool_abort_event.is_set():
                error = execute_task.exception()
                if isinstance(error, OperationCancelledError):
                    return self._finish(request, self._cancelled_result(), started)
                result = execute_task.result()
                if not isinstance(result, ToolResult):
                    result = ToolResult.failure("Tool returned invalid result payload")
                return self._finish(request, result, started)

            if tool_abort_event.is_set():
                # Let the tool wind down so partial output survives.
                finished, _ = await asyncio.wait({execute_task}, timeout=ABORT_GRACE_SECONDS)
                partial = None
                if finished and not execute_task.cancelled() and execute_task.exception() is None:
                    partial = execute_task.result()
                await self._cancel_task(execute_task)
                message = "Tool call cancelled by user."
                llm_content = partial.llm_content if isinstance(partial, ToolResult) and partial.llm_content else message
                return self._finish(
                    request,
                    ToolResult(
                        llm_content=llm_content,
                        return_display=message,
                        error={"message": message, "kind": ToolErrorKind.CANCELLED},
                    ),
                    started,
                )

            tool_abort_event.set()
            await self._cancel_task(execute_task)
            timeout_label = int(timeout_seconds) if float(timeout_seconds).is_integer() else timeout_seconds
            return self._finish(
                request,
                ToolResult.failure(f"Execution timed out after {timeout_label}s", ToolErrorKind.EXECUTION_FAILURE),
                started,
            )
        except asyncio.CancelledError:
            tool_abort_event.set()
            await self._cancel_task(execute_task)
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=request.name, error=str(e))
            return self._finish(request, ToolResult.failure(str(e) or type(e).__name__), started)
        finally:
            await self._cancel_task(abort_wait_task)
            await self._cancel_task(bridge_task)
