import asyncio
import sys
from pathlib import Path

import pytest

from turnloop.config import Config
from turnloop.tools.base import ToolConfirmationOutcome, ToolErrorKind
from turnloop.tools.shell import ShellTool

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses bash")


def _tool(tmp_path: Path, **shell_overrides) -> ShellTool:
    cfg = Config()
    cfg.session.target_dir = str(tmp_path)
    for key, value in shell_overrides.items():
        setattr(cfg.tools.shell, key, value)
    return ShellTool(cfg)


def test_validation_rejects_command_substitution(tmp_path: Path):
    tool = _tool(tmp_path)

    error = tool.validate_params({"command": "echo $(whoami)"})

    assert error is not None
    assert "Command substitution" in error


def test_validation_rejects_blocked_and_empty_commands(tmp_path: Path):
    tool = _tool(tmp_path)

    assert tool.validate_params({"command": "mkfs /dev/sda1"}) == "Command matches blocked pattern: mkfs"
    assert tool.validate_params({"command": "   "}) == "Command cannot be empty."


def test_validation_enforces_allowed_commands(tmp_path: Path):
    tool = _tool(tmp_path, allowed_commands=["git status", "ls"])

    assert tool.validate_params({"command": "ls -la"}) is None
    assert tool.validate_params({"command": "git status"}) is None
    assert "not in the allowed commands list" in tool.validate_params({"command": "git push"})


def test_validation_checks_directory(tmp_path: Path):
    (tmp_path / "src").mkdir()
    tool = _tool(tmp_path)

    assert tool.validate_params({"command": "ls", "directory": "src"}) is None
    assert "cannot be absolute" in tool.validate_params({"command": "ls", "directory": str(tmp_path)})
    assert tool.validate_params({"command": "ls", "directory": "missing"}) == "Directory must exist."


@pytest.mark.asyncio
async def test_confirmation_and_proceed_always_allowlist(tmp_path: Path):
    tool = _tool(tmp_path)
    params = {"command": "npm test -- --watch=false"}

    details = await tool.should_confirm_execute(params, asyncio.Event())

    assert details.type == "exec"
    assert details.title == "Confirm Shell Command"
    assert details.root_command == "npm"

    tool.on_confirm(params, ToolConfirmationOutcome.PROCEED_ONCE)
    assert tool.allowlist == set()

    tool.on_confirm(params, ToolConfirmationOutcome.PROCEED_ALWAYS)
    assert tool.allowlist == {"npm"}
    assert await tool.should_confirm_execute({"command": "npm run lint"}, asyncio.Event()) is None
    assert await tool.should_confirm_execute({"command": "make"}, asyncio.Event()) is not None


@pytest.mark.asyncio
async def test_invalid_command_skips_confirmation_and_fails_in_execute(tmp_path: Path):
    tool = _tool(tmp_path)
    params = {"command": "echo `id`"}

    assert await tool.should_confirm_execute(params, asyncio.Event()) is None
    result = await tool.execute(params, asyncio.Event())

    assert result.error.kind == ToolErrorKind.INVALID_PARAMS
    assert result.llm_content.startswith("Command rejected: echo `id`")


@pytest.mark.asyncio
async def test_execute_aborted_before_start(tmp_path: Path):
    abort_event = asyncio.Event()
    abort_event.set()

    result = await _tool(tmp_path).execute({"command": "echo hi"}, abort_event)

    assert result.error.kind == ToolErrorKind.CANCELLED
    assert "before it could start" in result.llm_content


@posix_only
@pytest.mark.asyncio
async def test_execute_reports_streams_and_exit_code(tmp_path: Path):
    (tmp_path / "sub").mkdir()
    tool = _tool(tmp_path)

    result = await tool.execute(
        {"command": "pwd; echo oops 1>&2; exit 3", "directory": "sub"},
        asyncio.Event(),
    )

    assert result.success is True
    lines = result.llm_content.splitlines()
    assert lines[0] == "Command: pwd; echo oops 1>&2; exit 3"
    assert lines[1] == "Directory: sub"
    assert lines[2].startswith("Stdout: ")
    assert lines[2].rstrip().endswith("sub")
    assert "Stderr: oops" in result.llm_content
    assert "Exit Code: 3" in result.llm_content
    assert "Signal: (none)" in result.llm_content


@posix_only
@pytest.mark.asyncio
async def test_execute_abort_returns_partial_output(tmp_path: Path):
    tool = _tool(tmp_path)
    abort_event = asyncio.Event()

    task = asyncio.create_task(tool.execute({"command": "echo started; sleep 30"}, abort_event))
    await asyncio.sleep(0.5)
    abort_event.set()
    result = await asyncio.wait_for(task, timeout=10)

    assert result.error.kind == ToolErrorKind.CANCELLED
    assert "Command was cancelled by user before it could complete." in result.llm_content
    assert "started" in result.llm_content
