"""Cross-platform termination of a process and everything it spawned."""

import asyncio
import os
import signal
from typing import Callable

from turnloop.logging import get_logger

log = get_logger(__name__)

SIGKILL_TIMEOUT_SECONDS = 0.2

IS_WINDOWS = os.name == "nt"


async def _taskkill(pid: int) -> None:
    process = await asyncio.create_subprocess_exec(
        "taskkill",
        "/pid",
        str(pid),
        "/f",
        "/t",
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL,
    )
    await process.wait()


def _kill_single(pid: int) -> None:
    try:
        os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except OSError as e:
        log.error("Failed to kill process", pid=pid, error=str(e))


async def terminate_process_tree(
    pid: int,
    is_alive: Callable[[], bool] | None = None,
    grace_seconds: float = SIGKILL_TIMEOUT_SECONDS,
) -> None:
    """Terminate ``pid`` and its process group.

    POSIX: SIGTERM to the group, wait ``grace_seconds``, then SIGKILL to the
    group. If the group cannot be signalled, only the process itself is
    killed. Windows: ``taskkill /f /t`` on the tree.

    Args:
        pid: Process id; on POSIX it must lead its own process group
        is_alive: Optional probe for the direct child, used for the single
            process fallback
        grace_seconds: Delay between the graceful and the forceful signal
    """
    if IS_WINDOWS:
        try:
            await _taskkill(pid)
        except OSError as e:
            log.error("taskkill failed", pid=pid, error=str(e))
        return

    try:
        os.killpg(pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    except OSError as e:
        log.warning("Process group SIGTERM failed; killing process", pid=pid, error=str(e))
        if is_alive is None or is_alive():
            _kill_single(pid)
        return

    await asyncio.sleep(grace_seconds)

    try:
        os.killpg(pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except OSError as e:
        log.warning("Process group SIGKILL failed; killing process", pid=pid, error=str(e))
        if is_alive is None or is_alive():
            _kill_single(pid)
