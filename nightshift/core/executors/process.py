"""
Process Runner
==============

Runs one external CLI invocation to completion.

Each call spawns a child in its own process group, closes its stdin once
any prompt data is written, streams stdout through the event parser and
multiplexes four sources into a single result: process exit, stdout EOF,
stderr EOF and the timeout/cancel triggers.

State machine (one per invocation):

    RUNNING ──> TIMED_OUT ──┐
       │   └──> CANCELLED ──┼──> CLOSED ──> SETTLED
       └────────────────────┘

The first trigger wins; later ones are ignored. settle() runs exactly once
and the result it builds is the only thing that leaves the invocation.
"""

import asyncio
import os
import signal
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol

import structlog

from nightshift.core.executors.errors import ProcessKillError, SpawnError
from nightshift.core.executors.stream import StreamEventParser

logger = structlog.get_logger()

READ_CHUNK = 64 * 1024


# ==========================================================================
# Process Interface
# ==========================================================================

class ProcessHandle(Protocol):
    """The slice of a child process the runner needs."""

    pid: int

    async def read_stdout(self, n: int) -> bytes: ...

    async def read_stderr(self, n: int) -> bytes: ...

    async def write_stdin(self, data: Optional[bytes]) -> None:
        """Write data (if any) and close stdin."""
        ...

    async def wait(self) -> int: ...

    def signal_group(self, sig: int) -> None: ...


Spawner = Callable[[list[str], Optional[str], dict[str, str]], Awaitable[ProcessHandle]]


class AsyncioProcessHandle:
    """ProcessHandle backed by asyncio.subprocess in a new session."""

    def __init__(self, proc: asyncio.subprocess.Process):
        self._proc = proc
        self.pid = proc.pid

    async def read_stdout(self, n: int) -> bytes:
        assert self._proc.stdout is not None
        return await self._proc.stdout.read(n)

    async def read_stderr(self, n: int) -> bytes:
        assert self._proc.stderr is not None
        return await self._proc.stderr.read(n)

    async def write_stdin(self, data: Optional[bytes]) -> None:
        stdin = self._proc.stdin
        if stdin is None:
            return
        try:
            if data:
                stdin.write(data)
                await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("stdin closed by child", pid=self.pid)
        finally:
            stdin.close()

    async def wait(self) -> int:
        return await self._proc.wait()

    def signal_group(self, sig: int) -> None:
        # pgid == pid because the child leads its own session
        try:
            os.killpg(self.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            try:
                self._proc.send_signal(sig)
            except ProcessLookupError:
                pass


async def spawn_process(argv: list[str], cwd: Optional[str], env: dict[str, str]) -> ProcessHandle:
    """
    Spawn argv in its own process group.

    Raises:
        SpawnError: Binary missing, not executable, or bad cwd
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            env=env,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as e:
        raise SpawnError(argv[0], str(e)) from e
    return AsyncioProcessHandle(proc)


# ==========================================================================
# Invocation State
# ==========================================================================

class InvocationState(str, Enum):
    RUNNING = "running"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    CLOSED = "closed"
    SETTLED = "settled"


_TRANSITIONS: dict[InvocationState, set[InvocationState]] = {
    InvocationState.RUNNING: {InvocationState.TIMED_OUT, InvocationState.CANCELLED, InvocationState.CLOSED},
    InvocationState.TIMED_OUT: {InvocationState.CLOSED, InvocationState.SETTLED},
    InvocationState.CANCELLED: {InvocationState.CLOSED, InvocationState.SETTLED},
    InvocationState.CLOSED: {InvocationState.SETTLED},
    InvocationState.SETTLED: set(),
}


class CappedBuffer:
    """Byte buffer that silently drops everything past max_bytes."""

    def __init__(self, max_bytes: int):
        self.max_bytes = max_bytes
        self._data = bytearray()
        self.total_bytes = 0
        self.truncated = False

    def append(self, chunk: bytes) -> None:
        self.total_bytes += len(chunk)
        room = self.max_bytes - len(self._data)
        if room <= 0:
            self.truncated = True
            return
        if len(chunk) > room:
            self._data.extend(chunk[:room])
            self.truncated = True
        else:
            self._data.extend(chunk)

    def text(self) -> str:
        return self._data.decode("utf-8", errors="replace")


@dataclass
class ProcessResult:
    """What one settled invocation produced."""
    text: str
    stdout: str
    stderr: str
    exit_code: Optional[int]
    signal: Optional[int]
    duration_ms: int
    session_id: Optional[str]
    timed_out: bool
    cancelled: bool
    stdout_truncated: bool
    stream_errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled


@dataclass
class RunInvocation:
    """
    Adapter-owned state for a single spawn.

    Created per call and discarded once the result is built.
    """
    pid: int
    max_output_bytes: int
    state: InvocationState = InvocationState.RUNNING
    parser: StreamEventParser = field(default_factory=StreamEventParser)
    exit_code: Optional[int] = None
    signal: Optional[int] = None
    timed_out: bool = False
    cancelled: bool = False
    started_at: float = field(default_factory=time.monotonic)
    signals_sent: list[int] = field(default_factory=list)
    _result: Optional[ProcessResult] = None

    def __post_init__(self) -> None:
        self.stdout = CappedBuffer(self.max_output_bytes)
        self.stderr = CappedBuffer(self.max_output_bytes)
        self._partial = bytearray()

    def transition(self, new_state: InvocationState) -> bool:
        """Move to new_state if allowed; returns False when the move is ignored."""
        if new_state not in _TRANSITIONS[self.state]:
            return False
        self.state = new_state
        if new_state == InvocationState.TIMED_OUT:
            self.timed_out = True
        elif new_state == InvocationState.CANCELLED:
            self.cancelled = True
        return True

    def record_exit(self, returncode: Optional[int]) -> None:
        if returncode is None or self.exit_code is not None:
            return
        self.exit_code = returncode
        if returncode < 0:
            self.signal = -returncode

    def feed_stdout(self, chunk: bytes) -> None:
        was_truncated = self.stdout.truncated
        self.stdout.append(chunk)
        if was_truncated:
            return
        self._partial.extend(chunk)
        *lines, rest = self._partial.split(b"\n")
        self._partial = bytearray(rest)
        for line in lines:
            self.parser.feed_line(line.decode("utf-8", errors="replace"))
        if len(self._partial) > self.max_output_bytes:
            self._partial.clear()

    def flush(self) -> None:
        if self._partial:
            self.parser.feed_line(self._partial.decode("utf-8", errors="replace"))
            self._partial.clear()

    def settle(self) -> ProcessResult:
        """Build the result. Idempotent: later calls return the same object."""
        if self._result is not None:
            return self._result
        self.state = InvocationState.SETTLED
        self.flush()
        stdout = self.stdout.text()
        self._result = ProcessResult(
            text=self.parser.text if self.parser.has_content else stdout,
            stdout=stdout,
            stderr=self.stderr.text(),
            exit_code=self.exit_code,
            signal=self.signal,
            duration_ms=int((time.monotonic() - self.started_at) * 1000),
            session_id=self.parser.session_id,
            timed_out=self.timed_out,
            cancelled=self.cancelled,
            stdout_truncated=self.stdout.truncated,
            stream_errors=list(self.parser.errors),
        )
        return self._result


# ==========================================================================
# Runner
# ==========================================================================

class ProcessRunner:
    """
    Spawns executor processes and drives them to a settled result.

    Holds no per-invocation state; concurrent run() calls are independent.
    """

    def __init__(
        self,
        kill_grace: float = 5.0,
        close_grace: float = 1.0,
        max_output_bytes: int = 2 * 1024 * 1024,
        spawner: Spawner = spawn_process,
    ):
        self.kill_grace = kill_grace
        self.close_grace = close_grace
        self.max_output_bytes = max_output_bytes
        self.spawner = spawner

    async def run(
        self,
        argv: list[str],
        cwd: Optional[str],
        env: dict[str, str],
        timeout: float,
        stdin_data: Optional[bytes] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ProcessResult:
        """
        Run argv until exit, timeout or cancellation.

        Args:
            argv: Binary and arguments
            cwd: Working directory for the child
            env: Complete child environment
            timeout: Seconds before SIGTERM escalation starts
            stdin_data: Optional bytes written before stdin is closed
            cancel_event: Setting it triggers the same escalation immediately

        Returns:
            ProcessResult with partial output even on failure

        Raises:
            SpawnError: The process could not be started
            ProcessKillError: The process group survived SIGKILL
        """
        handle = await self.spawner(argv, cwd, env)
        inv = RunInvocation(pid=handle.pid, max_output_bytes=self.max_output_bytes)
        logger.debug("Executor spawned", binary=argv[0], pid=handle.pid)

        pumps = [
            asyncio.create_task(self._pump(handle.read_stdout, inv.feed_stdout)),
            asyncio.create_task(self._pump(handle.read_stderr, inv.stderr.append)),
        ]
        stdin_task = asyncio.create_task(handle.write_stdin(stdin_data))
        wait_task = asyncio.create_task(handle.wait())
        cancel_task = asyncio.create_task(cancel_event.wait()) if cancel_event else None

        try:
            watched = {wait_task} if cancel_task is None else {wait_task, cancel_task}
            if cancel_event is not None and cancel_event.is_set():
                done: set = {cancel_task}
            else:
                done, _ = await asyncio.wait(watched, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)

            if wait_task in done:
                inv.record_exit(wait_task.result())
            elif cancel_task is not None and cancel_task in done:
                inv.transition(InvocationState.CANCELLED)
                await self._escalate(handle, inv, wait_task)
            else:
                inv.transition(InvocationState.TIMED_OUT)
                logger.warning("Executor timed out", binary=argv[0], pid=handle.pid, timeout=timeout)
                await self._escalate(handle, inv, wait_task)

            # Exit seen; give the pipes a short window to reach EOF.
            # A grandchild holding the pipe must not keep us here.
            await self._drain(pumps)
            inv.transition(InvocationState.CLOSED)
        except asyncio.CancelledError:
            # Caller abandoned us; do not leave the group running
            if inv.exit_code is None:
                handle.signal_group(signal.SIGKILL)
            raise
        finally:
            for task in (*pumps, stdin_task, wait_task, cancel_task):
                if task is not None and not task.done():
                    task.cancel()
            await asyncio.gather(
                *(t for t in (*pumps, stdin_task, wait_task, cancel_task) if t is not None),
                return_exceptions=True,
            )

        result = inv.settle()
        logger.debug(
            "Executor settled",
            binary=argv[0],
            pid=handle.pid,
            exit_code=result.exit_code,
            timed_out=result.timed_out,
            cancelled=result.cancelled,
            duration_ms=result.duration_ms,
        )
        return result

    async def _pump(self, read: Callable[[int], Awaitable[bytes]], sink: Callable[[bytes], None]) -> None:
        # Keep reading past the cap so the child never blocks on a full pipe
        while True:
            chunk = await read(READ_CHUNK)
            if not chunk:
                return
            sink(chunk)

    async def _drain(self, pumps: list[asyncio.Task]) -> None:
        pending = [p for p in pumps if not p.done()]
        if pending:
            await asyncio.wait(pending, timeout=self.close_grace)

    async def _escalate(self, handle: ProcessHandle, inv: RunInvocation, wait_task: asyncio.Task) -> None:
        """SIGTERM the group, SIGKILL after kill_grace, give up after close_grace."""
        handle.signal_group(signal.SIGTERM)
        inv.signals_sent.append(signal.SIGTERM)
        if await self._wait_exit(inv, wait_task, self.kill_grace):
            return

        logger.warning("Process ignored SIGTERM, sending SIGKILL", pid=handle.pid)
        handle.signal_group(signal.SIGKILL)
        inv.signals_sent.append(signal.SIGKILL)
        if await self._wait_exit(inv, wait_task, self.close_grace):
            return

        inv.settle()
        logger.error("Process survived SIGKILL", pid=handle.pid)
        raise ProcessKillError(handle.pid)

    async def _wait_exit(self, inv: RunInvocation, wait_task: asyncio.Task, grace: float) -> bool:
        done, _ = await asyncio.wait({wait_task}, timeout=grace)
        if wait_task in done:
            inv.record_exit(wait_task.result())
            return True
        return False
