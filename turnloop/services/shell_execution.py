"""Shell execution service: spawn, stream, sniff and cancel one command."""

import asyncio
import os
import signal
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Union

from turnloop.logging import get_logger
from turnloop.services.process_tree import IS_WINDOWS, terminate_process_tree
from turnloop.utils.text_utils import (
    get_encoding_for_buffer,
    is_binary,
    make_incremental_decoder,
    strip_ansi,
)

log = get_logger(__name__)

MAX_SNIFF_SIZE = 4096
READ_CHUNK_SIZE = 4096
DRAIN_TIMEOUT_SECONDS = 1.0
EXIT_POLL_INTERVAL_SECONDS = 0.05


@dataclass
class ShellDataEvent:
    """A decoded chunk from stdout or stderr."""

    stream: Literal["stdout", "stderr"]
    chunk: str
    type: Literal["data"] = "data"


@dataclass
class BinaryDetectedEvent:
    """Output was identified as binary; raw text events stop."""

    type: Literal["binary_detected"] = "binary_detected"


@dataclass
class BinaryProgressEvent:
    """Byte count received so far for binary output."""

    bytes_received: int
    type: Literal["binary_progress"] = "binary_progress"


ShellOutputEvent = Union[ShellDataEvent, BinaryDetectedEvent, BinaryProgressEvent]
OutputEventHandler = Callable[[ShellOutputEvent], None]


@dataclass
class ShellExecutionResult:
    """Outcome of one spawned command, produced once the process is gone."""

    raw_output: bytes = b""
    output: str = ""
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    signal: str | None = None
    error: BaseException | None = None
    aborted: bool = False
    pid: int | None = None


@dataclass
class ShellExecutionHandle:
    """Process id available immediately plus the pending full result."""

    pid: int | None
    result: "asyncio.Future[ShellExecutionResult]"


@dataclass
class _OutputCollector:
    """Per-process decode, sniff and buffer state."""

    on_output_event: OutputEventHandler
    chunks: list[bytes] = field(default_factory=list)
    decoders: dict[str, Any] = field(default_factory=dict)
    stdout: str = ""
    stderr: str = ""
    total_bytes: int = 0
    sniffed_bytes: int = 0
    streaming_raw: bool = True

    def _emit(self, event: ShellOutputEvent) -> None:
        try:
            self.on_output_event(event)
        except Exception as e:
            log.warning("Shell output handler failed", event_type=event.type, error=str(e))

    def _append(self, stream: str, text: str) -> None:
        if stream == "stdout":
            self.stdout += text
        else:
            self.stderr += text

    def handle(self, data: bytes, stream: Literal["stdout", "stderr"]) -> None:
        if not self.decoders:
            encoding = get_encoding_for_buffer(data)
            self.decoders = {
                "stdout": make_incremental_decoder(encoding),
                "stderr": make_incremental_decoder(encoding),
            }

        self.chunks.append(data)
        self.total_bytes += len(data)

        if self.streaming_raw and self.sniffed_bytes < MAX_SNIFF_SIZE:
            sniff_buffer = b"".join(self.chunks)[:MAX_SNIFF_SIZE]
            self.sniffed_bytes = len(sniff_buffer)
            if is_binary(sniff_buffer, sample_size=MAX_SNIFF_SIZE):
                self.streaming_raw = False
                self._emit(BinaryDetectedEvent())

        decoded = strip_ansi(self.decoders[stream].decode(data))
        self._append(stream, decoded)

        if self.streaming_raw:
            if decoded:
                self._emit(ShellDataEvent(stream=stream, chunk=decoded))
        else:
            self._emit(BinaryProgressEvent(bytes_received=self.total_bytes))

    def finish(self) -> None:
        for stream, decoder in self.decoders.items():
            self._append(stream, strip_ansi(decoder.decode(b"", final=True)))

    @property
    def raw_output(self) -> bytes:
        return b"".join(self.chunks)


class ShellExecutionService:
    """Runs shell commands with output capture and process-group cancellation.

    The service keeps no state between calls; each call owns its process.
    """

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

    @staticmethod
    async def _wait_for_exit(process: asyncio.subprocess.Process) -> None:
        """Return once the shell itself has exited.

        ``process.wait()`` also waits for the pipes to close, which a
        backgrounded child keeps open.
        """
        while process.returncode is None:
            await asyncio.sleep(EXIT_POLL_INTERVAL_SECONDS)

    @staticmethod
    async def _pump(
        reader: asyncio.StreamReader | None,
        stream: Literal["stdout", "stderr"],
        collector: _OutputCollector,
    ) -> None:
        if reader is None:
            return
        while True:
            data = await reader.read(READ_CHUNK_SIZE)
            if not data:
                return
            collector.handle(data, stream)

    @staticmethod
    def _build_argv(command: str) -> list[str]:
        if IS_WINDOWS:
            return ["cmd.exe", "/c", command]
        return ["bash", "-c", command]

    @staticmethod
    async def execute(
        command: str,
        cwd: str,
        on_output_event: OutputEventHandler,
        abort_event: asyncio.Event,
    ) -> ShellExecutionHandle:
        """Spawn ``command`` and start supervising it.

        Args:
            command: Exact command string for the host shell
            cwd: Working directory
            on_output_event: Receives data, binary_detected and binary_progress events
            abort_event: Setting it terminates the whole process tree

        Returns:
            Handle with the pid and a future resolving to ShellExecutionResult.
            Spawn failures resolve the future with ``error`` set; command
            failures are ordinary results.
        """
        env = os.environ.copy()
        env["TURNLOOP"] = "1"

        try:
            process = await asyncio.create_subprocess_exec(
                *ShellExecutionService._build_argv(command),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
                start_new_session=not IS_WINDOWS,
            )
        except OSError as e:
            log.error("Failed to spawn shell command", command=command, cwd=cwd, error=str(e))
            failed: asyncio.Future[ShellExecutionResult] = asyncio.get_running_loop().create_future()
            failed.set_result(ShellExecutionResult(error=e, aborted=abort_event.is_set()))
            return ShellExecutionHandle(pid=None, result=failed)

        log.debug("Spawned shell command", command=command, pid=process.pid, cwd=cwd)
        result_task = asyncio.create_task(
            ShellExecutionService._supervise(process, on_output_event, abort_event)
        )
        return ShellExecutionHandle(pid=process.pid, result=result_task)

    @staticmethod
    async def _supervise(
        process: asyncio.subprocess.Process,
        on_output_event: OutputEventHandler,
        abort_event: asyncio.Event,
    ) -> ShellExecutionResult:
        collector = _OutputCollector(on_output_event=on_output_event)
        readers = [
            asyncio.create_task(ShellExecutionService._pump(process.stdout, "stdout", collector)),
            asyncio.create_task(ShellExecutionService._pump(process.stderr, "stderr", collector)),
        ]
        wait_task = asyncio.create_task(ShellExecutionService._wait_for_exit(process))
        abort_wait_task = asyncio.create_task(abort_event.wait())
        aborted = False

        try:
            done, _ = await asyncio.wait(
                {wait_task, abort_wait_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if wait_task not in done:
                aborted = True
                log.info("Aborting shell command", pid=process.pid)
                await terminate_process_tree(
                    process.pid,
                    is_alive=lambda: process.returncode is None,
                )
                await wait_task

            # Background children may keep the pipes open after the shell exits.
            _, pending = await asyncio.wait(readers, timeout=DRAIN_TIMEOUT_SECONDS)
            for task in pending:
                await ShellExecutionService._cancel_task(task)
        except asyncio.CancelledError:
            await terminate_process_tree(
                process.pid,
                is_alive=lambda: process.returncode is None,
            )
            raise
        finally:
            await ShellExecutionService._cancel_task(abort_wait_task)
            await ShellExecutionService._cancel_task(wait_task)
            for task in readers:
                await ShellExecutionService._cancel_task(task)

        collector.finish()

        returncode = process.returncode
        exit_code: int | None = returncode
        signal_name: str | None = None
        if returncode is not None and returncode < 0:
            exit_code = None
            try:
                signal_name = signal.Signals(-returncode).name
            except ValueError:
                signal_name = str(-returncode)

        stdout = collector.stdout
        stderr = collector.stderr
        return ShellExecutionResult(
            raw_output=collector.raw_output,
            output=stdout + (f"\n{stderr}" if stderr else ""),
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            signal=signal_name,
            error=None,
            aborted=aborted or abort_event.is_set(),
            pid=process.pid,
        )
