"""Custom exceptions for turnloop."""

from typing import Any


class TurnloopError(Exception):
    """Base exception for turnloop."""

    pass


class ConfigurationError(TurnloopError):
    """Configuration-related errors."""

    pass


class LLMError(TurnloopError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedResponseError(LLMError):
    """Model or provider returned an unexpected shape."""

    pass


class ApiError(TurnloopError):
    """Model endpoint failure surfaced to the caller of the conversation driver."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        duration_ms: int = 0,
        model: str = "",
    ):
        super().__init__(message)
        self.status_code = status_code
        self.duration_ms = duration_ms
        self.model = model


class InitializationError(TurnloopError):
    """Chat session could not be started."""

    def __init__(self, message: str, history: list[Any] | None = None):
        super().__init__(message)
        self.history = list(history or [])


class OperationCancelledError(TurnloopError):
    """Operation cancelled by the user; recoverable."""

    def __init__(self, message: str = "Request cancelled by user during stream."):
        super().__init__(message)


class ToolError(TurnloopError):
    """Tool execution errors."""

    pass


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f'Tool "{tool_name}" not found in registry.')
        self.tool_name = tool_name


class ToolValidationError(ToolError):
    """Tool parameters failed validation."""

    def __init__(self, tool_name: str, reason: str):
        super().__init__(reason)
        self.tool_name = tool_name
        self.reason = reason


class ProviderConnectionError(TurnloopError):
    """A remote tool provider could not be reached."""

    def __init__(self, server_name: str, message: str):
        super().__init__(f"MCP server '{server_name}': {message}")
        self.server_name = server_name
