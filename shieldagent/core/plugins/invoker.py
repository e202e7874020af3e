"""Plugin invoker: one subprocess per plugin operation.

- Plugins are spawned with an argument vector (`asyncio.create_subprocess_exec`),
  never through a shell, so endpoint values cannot inject commands.
- Each plugin runs in its own session; stopping a stage signals the whole
  process group so helper programs it spawned go away too.
- stderr is always read line by line, logged with stage/plugin attribution,
  forwarded to an optional async callback, and the tail retained.
- `wait()` always reaps the process before returning.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Deque, List, Optional

from shieldagent.core.errors import (
    ConfigurationError,
    PipelineError,
    PluginError,
    StageError,
    UnimplementedOperation,
)
from shieldagent.core.plugins.registry import is_executable
from shieldagent.domain.enums import ExitCode, InvocationOutcome, PluginOperation

logger = logging.getLogger(__name__)
output_logger = logging.getLogger("shieldagent.plugins.output")

DiagnosticCallback = Callable[[str, str], Awaitable[None]]

# Per-stream buffer limit of the asyncio readers; bounds memory held for a
# stage's stdout when the consumer is slow, and the longest diagnostic line.
STREAM_LIMIT = 256 * 1024
DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_DIAGNOSTICS_LIMIT = 200
DEFAULT_KILL_GRACE = 5.0


class StdoutMode(str, Enum):
    DISCARD = "discard"
    PIPE = "pipe"
    CAPTURE = "capture"


@dataclass
class InvocationResult:
    """Outcome of one plugin invocation."""

    plugin: str
    operation: PluginOperation
    stage: Optional[str]
    exit_status: int
    outcome: InvocationOutcome
    diagnostics: List[str] = field(default_factory=list)
    output: List[str] = field(default_factory=list)
    terminated: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome is InvocationOutcome.SUCCESS

    @property
    def result(self) -> Optional[str]:
        """Short result string: the final non-empty line of captured stdout."""
        for line in reversed(self.output):
            if line.strip():
                return line.strip()
        return None

    def error(self) -> Optional[StageError]:
        """Build the StageError describing this result, or None on success."""
        details = dict(
            stage=self.stage,
            plugin=self.plugin,
            operation=self.operation.value,
            exit_status=self.exit_status,
            diagnostics=self.diagnostics,
        )
        if self.outcome is InvocationOutcome.UNIMPLEMENTED:
            return UnimplementedOperation(
                f"{self.plugin}: operation '{self.operation.value}' is not implemented by this plugin",
                **details,
            )
        if self.outcome is InvocationOutcome.FAILURE:
            if self.terminated:
                reason = "was stopped by the agent"
            elif self.exit_status < 0:
                reason = f"was killed by signal {-self.exit_status}"
            else:
                reason = f"exited with status {self.exit_status}"
            return PluginError(f"{self.plugin} {self.operation.value} {reason}", **details)
        if self.operation is PluginOperation.STORE and not self.result:
            return PluginError(f"{self.plugin} store succeeded but printed no restore key", **details)
        return None

    def raise_for_status(self) -> "InvocationResult":
        exc = self.error()
        if exc is not None:
            raise exc
        return self


def classify(exit_status: int) -> InvocationOutcome:
    if exit_status == ExitCode.SUCCESS:
        return InvocationOutcome.SUCCESS
    if exit_status == ExitCode.UNSUPPORTED_ACTION:
        return InvocationOutcome.UNIMPLEMENTED
    return InvocationOutcome.FAILURE


class PluginInvocation:
    """One plugin subprocess lifecycle (spawn, stream, stop, reap)."""

    def __init__(
        self,
        executable: Path,
        operation: PluginOperation,
        endpoint: Optional[str] = None,
        *,
        key: Optional[str] = None,
        plugin: Optional[str] = None,
        stage: Optional[str] = None,
        stdin: bool = False,
        stdout: StdoutMode = StdoutMode.CAPTURE,
        on_diagnostic: Optional[DiagnosticCallback] = None,
        diagnostics_limit: int = DEFAULT_DIAGNOSTICS_LIMIT,
        kill_grace: float = DEFAULT_KILL_GRACE,
    ) -> None:
        self.executable = Path(executable)
        self.operation = operation
        self.endpoint = endpoint
        self.key = key
        self.plugin = plugin or self.executable.name
        self.stage = stage
        self.stdin_mode = stdin
        self.stdout_mode = stdout
        self.kill_grace = kill_grace
        self.terminated = False
        self._on_diagnostic = on_diagnostic
        self._diagnostics: Deque[str] = deque(maxlen=diagnostics_limit)
        self._output: Deque[str] = deque(maxlen=diagnostics_limit)
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._readers: List["asyncio.Task[None]"] = []
        self._result: Optional[InvocationResult] = None

    @property
    def label(self) -> str:
        return self.stage or self.plugin

    def argv(self) -> List[str]:
        args = [str(self.executable), self.operation.value]
        if self.endpoint is not None:
            args += ["--endpoint", self.endpoint]
        if self.key is not None:
            args += ["--key", self.key]
        return args

    @property
    def started(self) -> bool:
        return self._proc is not None

    @property
    def last_result(self) -> Optional[InvocationResult]:
        return self._result

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode if self._proc is not None else None

    @property
    def stdin(self) -> asyncio.StreamWriter:
        if self._proc is None or self._proc.stdin is None:
            raise RuntimeError(f"{self.label}: stdin is not piped")
        return self._proc.stdin

    @property
    def stdout(self) -> asyncio.StreamReader:
        if self._proc is None or self._proc.stdout is None or self.stdout_mode is not StdoutMode.PIPE:
            raise RuntimeError(f"{self.label}: stdout is not piped")
        return self._proc.stdout

    async def start(self) -> None:
        if self._proc is not None:
            raise RuntimeError(f"{self.label}: invocation already started")
        if not is_executable(self.executable):
            raise ConfigurationError(f"plugin {self.plugin!r} is not an executable file: {self.executable}")

        stdout = {
            StdoutMode.DISCARD: asyncio.subprocess.DEVNULL,
            StdoutMode.PIPE: asyncio.subprocess.PIPE,
            StdoutMode.CAPTURE: asyncio.subprocess.PIPE,
        }[self.stdout_mode]
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.argv(),
                stdin=asyncio.subprocess.PIPE if self.stdin_mode else asyncio.subprocess.DEVNULL,
                stdout=stdout,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
                start_new_session=True,
            )
        except OSError as exc:
            raise ConfigurationError(f"unable to execute plugin {self.plugin!r} ({self.executable}): {exc}") from exc

        logger.info(
            "plugin_started | stage=%s plugin=%s operation=%s pid=%s",
            self.stage,
            self.plugin,
            self.operation.value,
            self._proc.pid,
        )
        self._readers.append(asyncio.create_task(self._read_diagnostics(self._proc.stderr)))
        if self.stdout_mode is StdoutMode.CAPTURE:
            self._readers.append(asyncio.create_task(self._read_output(self._proc.stdout)))

    async def _read_lines(self, reader: Optional[asyncio.StreamReader], sink: Callable[[str], Awaitable[None]]) -> None:
        if reader is None:
            return
        while True:
            try:
                raw = await reader.readline()
            except ValueError:
                # line longer than STREAM_LIMIT; the reader already dropped it
                await sink("<line too long, truncated>")
                continue
            if not raw:
                return
            await sink(raw.decode("utf-8", errors="replace").rstrip("\r\n"))

    async def _read_diagnostics(self, reader: Optional[asyncio.StreamReader]) -> None:
        async def sink(line: str) -> None:
            self._diagnostics.append(line)
            output_logger.info(
                "plugin_stderr | stage=%s plugin=%s operation=%s line=%s",
                self.stage,
                self.plugin,
                self.operation.value,
                line,
            )
            if self._on_diagnostic is not None:
                try:
                    await self._on_diagnostic(self.label, line)
                except Exception as exc:  # noqa: BLE001
                    # keep draining stderr even if nobody listens any more
                    logger.debug("diagnostic_relay_failed | stage=%s error=%s", self.stage, exc)
                    self._on_diagnostic = None

        await self._read_lines(reader, sink)

    async def _read_output(self, reader: Optional[asyncio.StreamReader]) -> None:
        async def sink(line: str) -> None:
            self._output.append(line)

        await self._read_lines(reader, sink)

    async def terminate(self) -> None:
        """Ask the plugin to stop (SIGTERM), then SIGKILL after `kill_grace`."""
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        self.terminated = True
        logger.info(
            "plugin_terminate | stage=%s plugin=%s operation=%s pid=%s",
            self.stage,
            self.plugin,
            self.operation.value,
            proc.pid,
        )
        self._signal(signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.kill_grace)
        except asyncio.TimeoutError:
            logger.warning("plugin_kill | stage=%s plugin=%s pid=%s", self.stage, self.plugin, proc.pid)
            self._signal(signal.SIGKILL)

    def _signal(self, signum: int) -> None:
        assert self._proc is not None
        try:
            os.killpg(self._proc.pid, signum)
        except ProcessLookupError:
            pass
        except PermissionError:
            try:
                self._proc.send_signal(signum)
            except ProcessLookupError:
                pass

    async def wait(self) -> InvocationResult:
        """Wait for exit, finish reading its streams, and classify the outcome."""
        if self._result is not None:
            return self._result
        if self._proc is None:
            raise RuntimeError(f"{self.label}: invocation not started")

        exit_status = await self._proc.wait()
        if self._readers:
            done, pending = await asyncio.wait(self._readers, timeout=self.kill_grace)
            for task in pending:
                # a leftover child still holds the pipe open
                task.cancel()
            if pending:
                await asyncio.wait(pending)
                logger.warning(
                    "plugin_streams_abandoned | stage=%s plugin=%s count=%s",
                    self.stage,
                    self.plugin,
                    len(pending),
                )

        terminated = self.terminated and exit_status != 0
        outcome = InvocationOutcome.FAILURE if terminated else classify(exit_status)
        self._result = InvocationResult(
            plugin=self.plugin,
            operation=self.operation,
            stage=self.stage,
            exit_status=exit_status,
            outcome=outcome,
            diagnostics=list(self._diagnostics),
            output=list(self._output),
            terminated=terminated,
        )
        log = logger.info if self._result.ok else logger.warning
        log(
            "plugin_exited | stage=%s plugin=%s operation=%s pid=%s exit_status=%s outcome=%s",
            self.stage,
            self.plugin,
            self.operation.value,
            self._proc.pid,
            exit_status,
            self._result.outcome.value,
        )
        return self._result


class StreamBridge:
    """Copy one stage's stdout into the next stage's stdin.

    Reads at most `chunk_size` bytes at a time and awaits `drain()` after
    every write, so a slow consumer throttles the producer through the pipe.
    The writer is always closed on exit so the consumer sees end-of-stream.
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, *, chunk_size: int = DEFAULT_CHUNK_SIZE, source: str = "", sink: str = "") -> None:
        self.reader = reader
        self.writer = writer
        self.chunk_size = chunk_size
        self.source = source
        self.sink = sink
        self.transferred = 0
        self.peak_buffered = 0

    async def run(self) -> int:
        try:
            while True:
                try:
                    chunk = await self.reader.read(self.chunk_size)
                except OSError as exc:
                    raise PipelineError(f"error reading from {self.source}: {exc}", stage=self.source) from exc
                if not chunk:
                    break
                try:
                    self.writer.write(chunk)
                    self.peak_buffered = max(self.peak_buffered, self.writer.transport.get_write_buffer_size())
                    await self.writer.drain()
                except (BrokenPipeError, ConnectionResetError) as exc:
                    raise PipelineError(f"{self.sink} stopped reading: {exc or 'broken pipe'}", stage=self.sink) from exc
                self.transferred += len(chunk)
        finally:
            await self._close()
        return self.transferred

    async def _close(self) -> None:
        try:
            self.writer.close()
            await self.writer.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            pass


async def invoke(
    executable: Path,
    operation: PluginOperation,
    endpoint: Optional[str] = None,
    *,
    key: Optional[str] = None,
    plugin: Optional[str] = None,
    stage: Optional[str] = None,
    stdin: Optional[bytes] = None,
    capture: bool = True,
    on_diagnostic: Optional[DiagnosticCallback] = None,
    diagnostics_limit: int = DEFAULT_DIAGNOSTICS_LIMIT,
    kill_grace: float = DEFAULT_KILL_GRACE,
) -> InvocationResult:
    """Run a single plugin operation to completion and return its result.

    `stdin` bytes, if given, are fed to the plugin; stdout is captured
    unless `capture` is false, in which case it is discarded. Use
    `InvocationResult.raise_for_status()` to turn failures into exceptions.
    Raises ConfigurationError if the plugin cannot be executed and
    PipelineError if the plugin stopped reading `stdin` but reported success.
    """
    invocation = PluginInvocation(
        executable,
        operation,
        endpoint,
        key=key,
        plugin=plugin,
        stage=stage,
        stdin=stdin is not None,
        stdout=StdoutMode.CAPTURE if capture else StdoutMode.DISCARD,
        on_diagnostic=on_diagnostic,
        diagnostics_limit=diagnostics_limit,
        kill_grace=kill_grace,
    )
    await invocation.start()
    write_error: Optional[BaseException] = None
    try:
        if stdin is not None:
            writer = invocation.stdin
            try:
                writer.write(stdin)
                await writer.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                write_error = exc
            finally:
                try:
                    writer.close()
                    await writer.wait_closed()
                except (BrokenPipeError, ConnectionResetError):
                    pass
    finally:
        result = await invocation.wait()

    if write_error is not None and result.ok:
        raise PipelineError(
            f"{invocation.plugin} {operation.value} stopped reading its input: {write_error}",
            stage=stage,
            plugin=invocation.plugin,
            operation=operation.value,
            exit_status=result.exit_status,
            diagnostics=result.diagnostics,
        )
    return result
