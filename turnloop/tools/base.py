"""Tool contract: schema, validation, confirmation and execution."""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Callable, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from turnloop.exceptions import ToolValidationError
from turnloop.llm import Part, ToolDefinition
from turnloop.utils.schema_validator import validate_schema


class ToolErrorKind(str, Enum):
    """Why a tool call did not succeed."""

    NOT_FOUND = "not_found"
    INVALID_PARAMS = "invalid_params"
    EXECUTION_FAILURE = "execution_failure"
    CANCELLED = "cancelled"


class ToolErrorInfo(BaseModel):
    """Structured error attached to a failed tool result."""

    model_config = ConfigDict(frozen=True)

    message: str
    kind: ToolErrorKind = ToolErrorKind.EXECUTION_FAILURE


class ToolResult(BaseModel):
    """Result from tool execution.

    ``llm_content`` is fed back to the model, ``return_display`` is meant for
    humans. Results are immutable once produced.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    llm_content: str | list[Part] = ""
    return_display: str = ""
    error: ToolErrorInfo | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_failure_content(cls, data: Any) -> Any:
        """Ensure failed results always carry model-readable content."""
        if not isinstance(data, dict):
            return data
        error = data.get("error")
        if error is None:
            return data
        message = error.message if isinstance(error, ToolErrorInfo) else str(error.get("message", ""))
        normalized = dict(data)
        if not normalized.get("llm_content"):
            normalized["llm_content"] = message or "Tool execution failed"
        if not normalized.get("return_display"):
            normalized["return_display"] = message or "Tool execution failed"
        return normalized

    @classmethod
    def failure(
        cls,
        message: str,
        kind: ToolErrorKind = ToolErrorKind.EXECUTION_FAILURE,
        llm_content: str | None = None,
    ) -> "ToolResult":
        return cls(
            llm_content=llm_content or message,
            return_display=message,
            error=ToolErrorInfo(message=message, kind=kind),
        )

    @property
    def success(self) -> bool:
        return self.error is None


class ToolConfirmationOutcome(str, Enum):
    """Answer from the confirmation collaborator."""

    PROCEED_ONCE = "proceed_once"
    PROCEED_ALWAYS = "proceed_always"
    PROCEED_ALWAYS_SERVER = "proceed_always_server"
    PROCEED_ALWAYS_TOOL = "proceed_always_tool"
    CANCEL = "cancel"


class EditConfirmation(BaseModel):
    type: Literal["edit"] = "edit"
    title: str
    file_name: str
    file_path: str
    file_diff: str
    original_content: str | None = None
    new_content: str = ""


class ExecConfirmation(BaseModel):
    type: Literal["exec"] = "exec"
    title: str
    command: str
    root_command: str


class McpConfirmation(BaseModel):
    type: Literal["mcp"] = "mcp"
    title: str
    server_name: str
    tool_name: str
    tool_display_name: str


class InfoConfirmation(BaseModel):
    type: Literal["info"] = "info"
    title: str
    prompt: str
    urls: list[str] = Field(default_factory=list)


ToolCallConfirmationDetails = Annotated[
    Union[EditConfirmation, ExecConfirmation, McpConfirmation, InfoConfirmation],
    Field(discriminator="type"),
]

OutputUpdateHandler = Callable[[str], None]


class Tool(ABC):
    """Base class for all tools.

    A tool owns an immutable schema and implements the invocation lifecycle:
    validate, describe, confirm, execute.
    """

    name: str = ""
    display_name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float | None = None
    can_update_output: bool = False

    @property
    def schema(self) -> ToolDefinition:
        """Function declaration advertised to the model."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )

    def validate_params(self, params: dict[str, Any]) -> str | None:
        """Return an error message when ``params`` are unusable, else None.

        Subclasses add their own rules after calling this.
        """
        return validate_schema(self.parameters, params)

    def get_description(self, params: dict[str, Any]) -> str:
        """Human-readable summary of what the call will do."""
        return json.dumps(params, default=str)

    def build(self, params: dict[str, Any]) -> "ToolInvocation":
        """Bind validated parameters into a ready-to-run invocation.

        Raises:
            ToolValidationError if the parameters are rejected
        """
        error = self.validate_params(params)
        if error:
            raise ToolValidationError(self.name, error)
        return ToolInvocation(tool=self, params=dict(params))

    async def should_confirm_execute(
        self,
        params: dict[str, Any],
        abort_event: asyncio.Event,
    ) -> ToolCallConfirmationDetails | None:
        """Return confirmation details, or None when the call may run directly."""
        return None

    def on_confirm(self, params: dict[str, Any], outcome: ToolConfirmationOutcome) -> None:
        """Apply a confirmation outcome; the only place trust state changes."""
        return None

    @abstractmethod
    async def execute(
        self,
        params: dict[str, Any],
        abort_event: asyncio.Event,
        update_output: OutputUpdateHandler | None = None,
    ) -> ToolResult:
        """Execute the tool.

        Args:
            params: Validated tool arguments
            abort_event: Set when the call must stop
            update_output: Optional live output callback

        Returns:
            ToolResult for the model and the user
        """
        pass


@dataclass
class ToolInvocation:
    """Parameter-checked form of one tool call."""

    tool: Tool
    params: dict[str, Any] = field(default_factory=dict)

    def get_description(self) -> str:
        return self.tool.get_description(self.params)

    async def should_confirm_execute(
        self,
        abort_event: asyncio.Event,
    ) -> ToolCallConfirmationDetails | None:
        return await self.tool.should_confirm_execute(self.params, abort_event)

    def on_confirm(self, outcome: ToolConfirmationOutcome) -> None:
        self.tool.on_confirm(self.params, outcome)

    async def execute(
        self,
        abort_event: asyncio.Event,
        update_output: OutputUpdateHandler | None = None,
    ) -> ToolResult:
        return await self.tool.execute(self.params, abort_event, update_output)
