"""
Nightshift - Test Fixtures
==========================

Shared pytest fixtures for all tests.
"""

import asyncio
import signal
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any, Callable, Optional, Union

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from nightshift.core.config import Settings
from nightshift.core.database import Base, create_engine, create_session_factory, init_db
from nightshift.core.executors.adapter import ExecuteOptions, ExecutionResult
from nightshift.core.executors.errors import ErrorClass, RunOutcome
from nightshift.core.models import ExecutorType, TaskType
from nightshift.core.overnight.store import SqlTaskStore


# ==========================================================================
# Test Database Setup
# ==========================================================================

# Use in-memory SQLite for tests (fast)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def store() -> AsyncGenerator[SqlTaskStore, None]:
    """Task store on a fresh in-memory database."""
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_db(test_engine)
    yield SqlTaskStore(create_session_factory(test_engine))
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest_asyncio.fixture
async def file_store(tmp_path: Path) -> AsyncGenerator[SqlTaskStore, None]:
    """
    Task store on a SQLite file.

    Concurrent approaches write through separate sessions; a shared
    in-memory connection would interleave their transactions.
    """
    test_engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'nightshift.db'}")
    await init_db(test_engine)
    yield SqlTaskStore(create_session_factory(test_engine))
    await test_engine.dispose()


# ==========================================================================
# Settings
# ==========================================================================

@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings pointing every directory into tmp_path."""
    return Settings(
        ENVIRONMENT="test",
        DATABASE_URL=TEST_DATABASE_URL,
        OUTPUT_DIR=str(tmp_path / "night_mode"),
        MEMORY_DIR=str(tmp_path / "memory"),
        WORKSPACES_DIR=str(tmp_path / "workspaces"),
        LOCK_FILE=str(tmp_path / "supervisor.lock"),
        NOTIFY_ENABLED=False,
        NIGHT_JOB_TIMEOUT_SECONDS=5.0,
        NIGHT_TOTAL_TIMEOUT_SECONDS=60.0,
        OVERNIGHT_JOB_TIMEOUT_SECONDS=5.0,
        OVERNIGHT_TOTAL_TIMEOUT_SECONDS=60.0,
    )


# ==========================================================================
# Fake Processes
# ==========================================================================

class FakeHandle:
    """
    Scriptable ProcessHandle.

    stdout/stderr chunks are queued up front; b"" marks EOF. The process
    exits with exit_code right away unless hang=True, in which case it
    only exits when signalled (and not ignoring that signal).
    """

    def __init__(
        self,
        stdout: Optional[list[bytes]] = None,
        stderr: Optional[list[bytes]] = None,
        exit_code: int = 0,
        hang: bool = False,
        ignore_sigterm: bool = False,
        ignore_sigkill: bool = False,
        close_pipes: bool = True,
        pid: int = 4242,
    ):
        self.pid = pid
        self.ignore_sigterm = ignore_sigterm
        self.ignore_sigkill = ignore_sigkill
        self.close_pipes = close_pipes
        self.signals: list[int] = []
        self.stdin_data: Optional[bytes] = None
        self.stdin_closed = False
        self._stdout: asyncio.Queue[bytes] = asyncio.Queue()
        self._stderr: asyncio.Queue[bytes] = asyncio.Queue()
        self._exit: asyncio.Future[int] = asyncio.get_running_loop().create_future()

        for chunk in stdout or []:
            self._stdout.put_nowait(chunk)
        for chunk in stderr or []:
            self._stderr.put_nowait(chunk)
        if not hang:
            self.finish(exit_code)

    @property
    def unread_stdout(self) -> int:
        return self._stdout.qsize()

    def finish(self, code: int) -> None:
        if self._exit.done():
            return
        self._exit.set_result(code)
        if self.close_pipes:
            self._stdout.put_nowait(b"")
            self._stderr.put_nowait(b"")

    async def read_stdout(self, n: int) -> bytes:
        return await self._stdout.get()

    async def read_stderr(self, n: int) -> bytes:
        return await self._stderr.get()

    async def write_stdin(self, data: Optional[bytes]) -> None:
        self.stdin_data = data
        self.stdin_closed = True

    async def wait(self) -> int:
        return await self._exit

    def signal_group(self, sig: int) -> None:
        self.signals.append(sig)
        if sig == signal.SIGTERM and not self.ignore_sigterm:
            self.finish(-signal.SIGTERM)
        elif sig == signal.SIGKILL and not self.ignore_sigkill:
            self.finish(-signal.SIGKILL)


@pytest.fixture
def fake_spawner() -> Callable[..., Any]:
    """
    Build a spawner that hands out prepared FakeHandles.

    Usage:
        spawner = fake_spawner(lambda: FakeHandle(stdout=[...]))
    """
    def build(factory: Callable[[], FakeHandle]):
        calls: list[dict[str, Any]] = []

        async def spawner(argv, cwd, env):
            handle = factory()
            calls.append({"argv": argv, "cwd": cwd, "env": env, "handle": handle})
            return handle

        spawner.calls = calls  # type: ignore[attr-defined]
        return spawner

    return build


# ==========================================================================
# Fake Router
# ==========================================================================

def make_result(
    output: str = "",
    outcome: RunOutcome = RunOutcome.SUCCESS,
    executor: Optional[ExecutorType] = None,
    error_class: ErrorClass = ErrorClass.NONE,
    session_id: Optional[str] = None,
) -> ExecutionResult:
    return ExecutionResult(
        output=output,
        exit_code=0 if outcome == RunOutcome.SUCCESS else 1,
        duration_ms=5,
        resumable_session_id=session_id,
        outcome=outcome,
        error_class=error_class,
        executor=executor,
    )


Response = Union[str, ExecutionResult, Exception]


class FakeRouter:
    """
    Stand-in for ExecutorRouter.

    handler(executor, prompt, options) returns the output text, a full
    ExecutionResult, or an exception to raise. Every call is recorded.
    """

    def __init__(self, handler: Optional[Callable[[ExecutorType, str, ExecuteOptions], Response]] = None):
        self.handler = handler or (lambda executor, prompt, options: "ok")
        self.calls: list[dict[str, Any]] = []
        self.cancelled = 0
        self.resumed = 0

    async def run(
        self,
        executor: ExecutorType,
        prompt: str,
        options: Optional[ExecuteOptions] = None,
        fallbacks: Optional[list[ExecutorType]] = None,
    ) -> ExecutionResult:
        options = options or ExecuteOptions()
        self.calls.append({"executor": executor, "prompt": prompt, "options": options, "fallbacks": fallbacks})
        response = self.handler(executor, prompt, options)
        if asyncio.iscoroutine(response):
            response = await response
        if isinstance(response, Exception):
            raise response
        if isinstance(response, ExecutionResult):
            if response.executor is None:
                response.executor = executor
            return response
        return make_result(response, executor=executor)

    async def run_task(
        self,
        task_type: TaskType,
        prompt: str,
        options: Optional[ExecuteOptions] = None,
    ) -> ExecutionResult:
        from nightshift.core.executors.router import TASK_ROUTES

        primary, fallbacks = TASK_ROUTES[task_type]
        return await self.run(primary, prompt, options, fallbacks=fallbacks)

    def cancel_all(self) -> int:
        self.cancelled += 1
        return 0

    def resume(self) -> None:
        self.resumed += 1

    def status(self) -> dict:
        return {"in_flight": 0, "shutting_down": False, "accounts": []}

    def prompts_for(self, executor: ExecutorType) -> list[str]:
        return [c["prompt"] for c in self.calls if c["executor"] == executor]
