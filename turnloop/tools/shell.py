"""Shell tool for executing commands."""

import asyncio
import os
import time
from typing import Any

from turnloop.config import Config
from turnloop.logging import get_logger
from turnloop.services.shell_execution import (
    ShellDataEvent,
    ShellExecutionService,
    ShellOutputEvent,
)
from turnloop.tools.base import (
    ExecConfirmation,
    OutputUpdateHandler,
    Tool,
    ToolConfirmationOutcome,
    ToolErrorKind,
    ToolResult,
)
from turnloop.utils.shell_utils import get_command_root, is_command_allowed

log = get_logger(__name__)

OUTPUT_UPDATE_INTERVAL_SECONDS = 1.0


class ShellTool(Tool):
    """Execute shell commands."""

    name = "run_shell_command"
    display_name = "Shell"
    description = (
        "This tool executes a given shell command as `bash -c <command>` (`cmd.exe /c <command>` "
        "on Windows). The command runs as a subprocess that leads its own process group.\n\n"
        "The following information is returned:\n\n"
        "Command: Executed command.\n"
        "Directory: Directory (relative to project root) where command was executed, or `(root)`.\n"
        "Stdout: Output on stdout stream. Can be `(empty)` or partial on error.\n"
        "Stderr: Output on stderr stream. Can be `(empty)` or partial on error.\n"
        "Error: Error or `(none)` if no error was reported for the subprocess.\n"
        "Exit Code: Exit code or `(none)` if terminated by signal.\n"
        "Signal: Signal name or `(none)` if no signal was received."
    )
    can_update_output = True
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "Exact bash command to execute as `bash -c <command>`",
            },
            "description": {
                "type": "string",
                "description": "Brief description of the command for the user. No line breaks.",
            },
            "directory": {
                "type": "string",
                "description": (
                    "(OPTIONAL) Directory to run the command in, if not the project root directory. "
                    "Must be relative to the project root directory and must already exist."
                ),
            },
        },
        "required": ["command"],
    }

    def __init__(self, config: Config):
        self.config = config
        self.target_dir = config.resolved_target_dir()
        self.timeout_seconds = config.tools.shell.timeout
        self.allowlist: set[str] = set()

    def _is_command_allowed(self, command: str) -> tuple[bool, str]:
        shell_cfg = self.config.tools.shell
        return is_command_allowed(command, shell_cfg.blocked, shell_cfg.allowed_commands)

    def validate_params(self, params: dict[str, Any]) -> str | None:
        error = super().validate_params(params)
        if error:
            return error

        command = str(params["command"])
        if not command.strip():
            return "Command cannot be empty."
        allowed, reason = self._is_command_allowed(command)
        if not allowed:
            return reason or f"Command is not allowed: {command}"
        if not get_command_root(command):
            return "Could not identify command root to obtain permission from user."

        directory = params.get("directory")
        if directory:
            if os.path.isabs(directory):
                return "Directory cannot be absolute. Must be relative to the project root directory."
            if not (self.target_dir / directory).is_dir():
                return "Directory must exist."
        return None

    def get_description(self, params: dict[str, Any]) -> str:
        description = str(params.get("command", ""))
        if params.get("directory"):
            description += f" [in {params['directory']}]"
        if params.get("description"):
            description += f" ({str(params['description']).replace(chr(10), ' ')})"
        return description

    async def should_confirm_execute(
        self,
        params: dict[str, Any],
        abort_event: asyncio.Event,
    ) -> ExecConfirmation | None:
        if self.validate_params(params):
            # execute will fail immediately
            return None
        root_command = get_command_root(params["command"]) or ""
        if root_command in self.allowlist:
            return None
        return ExecConfirmation(
            title="Confirm Shell Command",
            command=params["command"],
            root_command=root_command,
        )

    def on_confirm(self, params: dict[str, Any], outcome: ToolConfirmationOutcome) -> None:
        if outcome == ToolConfirmationOutcome.PROCEED_ALWAYS:
            root_command = get_command_root(str(params.get("command", "")))
            if root_command:
                log.info("Allowing shell command root for the session", root_command=root_command)
                self.allowlist.add(root_command)

    async def execute(
        self,
        params: dict[str, Any],
        abort_event: asyncio.Event,
        update_output: OutputUpdateHandler | None = None,
    ) -> ToolResult:
        """Execute a shell command.

        Returns:
            ToolResult listing command, directory, streams, error, exit code and signal
        """
        command = str(params["command"])
        validation_error = self.validate_params(params)
        if validation_error:
            return ToolResult.failure(
                f"Error: {validation_error}",
                ToolErrorKind.INVALID_PARAMS,
                llm_content=f"Command rejected: {command}\nReason: {validation_error}",
            )

        if abort_event.is_set():
            return ToolResult.failure(
                "Command cancelled by user.",
                ToolErrorKind.CANCELLED,
                llm_content="Command was cancelled by user before it could start.",
            )

        cwd = (self.target_dir / (params.get("directory") or "")).resolve()
        output = ""
        last_update = time.monotonic()

        def on_output_event(event: ShellOutputEvent) -> None:
            nonlocal output, last_update
            if not isinstance(event, ShellDataEvent):
                return
            output += event.chunk
            now = time.monotonic()
            if update_output is not None and now - last_update > OUTPUT_UPDATE_INTERVAL_SECONDS:
                update_output(output)
                last_update = now

        log.info("Executing shell command", command=command, cwd=str(cwd))
        handle = await ShellExecutionService.execute(command, str(cwd), on_output_event, abort_event)
        result = await handle.result

        if result.aborted:
            llm_content = "Command was cancelled by user before it could complete."
            if result.output.strip():
                llm_content += (
                    " Below is the output (on stdout and stderr) before it was cancelled:\n"
                    f"{result.output}"
                )
            else:
                llm_content += " There was no output before it was cancelled."
            return ToolResult.failure(
                "Command cancelled by user.",
                ToolErrorKind.CANCELLED,
                llm_content=llm_content,
            )

        llm_content = "\n".join([
            f"Command: {command}",
            f"Directory: {params.get('directory') or '(root)'}",
            f"Stdout: {result.stdout or '(empty)'}",
            f"Stderr: {result.stderr or '(empty)'}",
            f"Error: {result.error or '(none)'}",
            f"Exit Code: {'(none)' if result.exit_code is None else result.exit_code}",
            f"Signal: {result.signal or '(none)'}",
        ])

        if result.output.strip():
            display = result.output
        elif result.signal:
            display = f"Command terminated by signal: {result.signal}"
        elif result.error:
            display = f"Command failed: {result.error}"
        elif result.exit_code not in (None, 0):
            display = f"Command exited with code: {result.exit_code}"
        else:
            display = ""

        if result.error is not None:
            return ToolResult.failure(
                f"Command failed: {result.error}",
                ToolErrorKind.EXECUTION_FAILURE,
                llm_content=llm_content,
            )
        return ToolResult(llm_content=llm_content, return_display=display)
