"""
Process Runner Tests
====================

Exercises the spawn/stream/timeout/kill state machine against FakeHandle,
plus a couple of real /bin/sh invocations.
"""

import asyncio
import os
import signal

import pytest

from conftest import FakeHandle
from nightshift.core.executors.errors import ProcessKillError, SpawnError
from nightshift.core.executors.process import (
    CappedBuffer,
    InvocationState,
    ProcessRunner,
    RunInvocation,
    spawn_process,
)


def runner_for(spawner, **kwargs) -> ProcessRunner:
    kwargs.setdefault("kill_grace", 0.05)
    kwargs.setdefault("close_grace", 0.05)
    return ProcessRunner(spawner=spawner, **kwargs)


# ==========================================================================
# Normal Exit
# ==========================================================================

class TestNormalExit:
    """Process exits on its own."""

    async def test_result_event_becomes_text(self, fake_spawner):
        spawner = fake_spawner(lambda: FakeHandle(stdout=[
            b'{"type":"system","subtype":"init","session_id":"sess-1"}\n',
            b'{"type":"assistant","message":{"content":[{"type":"text","text":"draft"}]}}\n',
            b'{"type":"result","result":"final answer"}\n',
        ]))

        result = await runner_for(spawner).run(["claude"], None, {}, timeout=1.0)

        assert result.success
        assert result.exit_code == 0
        assert result.text == "final answer"
        assert result.session_id == "sess-1"
        assert not result.timed_out
        assert not result.cancelled

    async def test_non_json_lines_are_ignored(self, fake_spawner):
        spawner = fake_spawner(lambda: FakeHandle(stdout=[
            b"Loading credentials...\n",
            b'{"type":"message","role":"assistant","content":"hello "}\n',
            b"[1, 2, 3]\n",
            b'{"type":"message","role":"assistant","content":"world"}\n',
        ]))

        result = await runner_for(spawner).run(["gemini"], None, {}, timeout=1.0)

        assert result.success
        assert result.text == "hello world"

    async def test_line_split_across_chunks(self, fake_spawner):
        spawner = fake_spawner(lambda: FakeHandle(stdout=[
            b'{"type":"result",',
            b'"result":"joined"}\n',
        ]))

        result = await runner_for(spawner).run(["claude"], None, {}, timeout=1.0)

        assert result.text == "joined"

    async def test_plain_stdout_when_no_events(self, fake_spawner):
        spawner = fake_spawner(lambda: FakeHandle(stdout=[b"plain text output\n"]))

        result = await runner_for(spawner).run(["codex"], None, {}, timeout=1.0)

        assert result.text == "plain text output\n"

    async def test_nonzero_exit_keeps_stderr(self, fake_spawner):
        spawner = fake_spawner(lambda: FakeHandle(stderr=[b"Error: 429 Too Many Requests"], exit_code=1))

        result = await runner_for(spawner).run(["gemini"], None, {}, timeout=1.0)

        assert not result.success
        assert result.exit_code == 1
        assert "429" in result.stderr

    async def test_stdin_written_and_closed(self, fake_spawner):
        spawner = fake_spawner(lambda: FakeHandle(stdout=[b"ok\n"]))

        await runner_for(spawner).run(["kimi"], "/tmp", {"A": "1"}, timeout=1.0, stdin_data=b"prompt")

        call = spawner.calls[0]
        assert call["handle"].stdin_data == b"prompt"
        assert call["handle"].stdin_closed
        assert call["cwd"] == "/tmp"
        assert call["env"] == {"A": "1"}

    async def test_exit_without_pipe_eof_still_settles(self, fake_spawner):
        """A grandchild holding stdout open must not keep the run alive."""
        spawner = fake_spawner(lambda: FakeHandle(
            stdout=[b'{"type":"result","result":"done"}\n'],
            close_pipes=False,
        ))

        result = await asyncio.wait_for(runner_for(spawner).run(["claude"], None, {}, timeout=1.0), 2.0)

        assert result.success
        assert result.text == "done"


# ==========================================================================
# Output Cap
# ==========================================================================

class TestOutputCap:
    """Capture is capped but the pipe keeps draining."""

    async def test_output_truncated_and_drained(self, fake_spawner):
        handles = []

        def factory():
            handle = FakeHandle(stdout=[b"0123456789abcdef", b"more", b"and more"])
            handles.append(handle)
            return handle

        result = await runner_for(fake_spawner(factory), max_output_bytes=10).run(["x"], None, {}, timeout=1.0)

        assert result.stdout == "0123456789"
        assert result.stdout_truncated
        assert handles[0].unread_stdout == 0

    def test_capped_buffer_counts_dropped_bytes(self):
        buffer = CappedBuffer(4)
        buffer.append(b"abc")
        buffer.append(b"defg")

        assert buffer.text() == "abcd"
        assert buffer.truncated
        assert buffer.total_bytes == 7


# ==========================================================================
# Timeout & Kill Escalation
# ==========================================================================

class TestTimeout:
    """Timeouts drive SIGTERM then SIGKILL."""

    async def test_timeout_sends_sigterm(self, fake_spawner):
        spawner = fake_spawner(lambda: FakeHandle(hang=True))

        result = await runner_for(spawner).run(["x"], None, {}, timeout=0.05)

        assert result.timed_out
        assert not result.cancelled
        assert not result.success
        assert spawner.calls[0]["handle"].signals == [signal.SIGTERM]
        assert result.signal == signal.SIGTERM

    async def test_sigkill_after_grace_when_sigterm_ignored(self, fake_spawner):
        spawner = fake_spawner(lambda: FakeHandle(hang=True, ignore_sigterm=True))

        result = await runner_for(spawner, kill_grace=0.1).run(["x"], None, {}, timeout=0.05)

        handle = spawner.calls[0]["handle"]
        assert handle.signals == [signal.SIGTERM, signal.SIGKILL]
        assert result.timed_out
        assert result.exit_code == -signal.SIGKILL
        assert not result.success

    async def test_survives_sigkill_raises(self, fake_spawner):
        spawner = fake_spawner(lambda: FakeHandle(hang=True, ignore_sigterm=True, ignore_sigkill=True))

        with pytest.raises(ProcessKillError):
            await runner_for(spawner).run(["x"], None, {}, timeout=0.05)


# ==========================================================================
# Cancellation
# ==========================================================================

class TestCancellation:
    """External cancel signal is distinct from timeout."""

    async def test_cancel_event_escalates(self, fake_spawner):
        spawner = fake_spawner(lambda: FakeHandle(hang=True))
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.02, cancel.set)

        result = await runner_for(spawner).run(["x"], None, {}, timeout=5.0, cancel_event=cancel)

        assert result.cancelled
        assert not result.timed_out
        assert spawner.calls[0]["handle"].signals == [signal.SIGTERM]

    async def test_preset_cancel_event(self, fake_spawner):
        spawner = fake_spawner(lambda: FakeHandle(hang=True))
        cancel = asyncio.Event()
        cancel.set()

        result = await runner_for(spawner).run(["x"], None, {}, timeout=5.0, cancel_event=cancel)

        assert result.cancelled

    async def test_abandoned_run_kills_group(self, fake_spawner):
        spawner = fake_spawner(lambda: FakeHandle(hang=True))
        task = asyncio.create_task(runner_for(spawner).run(["x"], None, {}, timeout=5.0))
        await asyncio.sleep(0.02)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert spawner.calls[0]["handle"].signals == [signal.SIGKILL]


# ==========================================================================
# Invocation State Machine
# ==========================================================================

class TestInvocationState:
    """First trigger wins; settle runs once."""

    def test_first_trigger_wins(self):
        inv = RunInvocation(pid=1, max_output_bytes=100)

        assert inv.transition(InvocationState.TIMED_OUT)
        assert not inv.transition(InvocationState.CANCELLED)
        assert inv.timed_out
        assert not inv.cancelled

    def test_settle_is_idempotent(self):
        inv = RunInvocation(pid=1, max_output_bytes=100)
        inv.record_exit(0)

        first = inv.settle()
        inv.record_exit(1)
        second = inv.settle()

        assert first is second
        assert second.exit_code == 0
        assert inv.state == InvocationState.SETTLED

    def test_negative_returncode_records_signal(self):
        inv = RunInvocation(pid=1, max_output_bytes=100)
        inv.record_exit(-9)

        assert inv.exit_code == -9
        assert inv.signal == 9


# ==========================================================================
# Real Processes
# ==========================================================================

class TestRealProcess:
    """Smoke tests against /bin/sh."""

    async def test_spawn_missing_binary(self):
        with pytest.raises(SpawnError):
            await spawn_process(["/nonexistent/nightshift-binary"], None, dict(os.environ))

    async def test_echo(self):
        result = await ProcessRunner().run(
            ["sh", "-c", 'echo \'{"type":"result","result":"hi"}\''],
            None,
            dict(os.environ),
            timeout=10.0,
        )

        assert result.success
        assert result.text == "hi"

    async def test_sleep_times_out(self):
        result = await ProcessRunner(kill_grace=2.0, close_grace=0.5).run(
            ["sleep", "30"],
            None,
            dict(os.environ),
            timeout=0.2,
        )

        assert result.timed_out
        assert not result.success
