"""
Executor Adapter
================

execute(prompt, options) -> ExecutionResult for one executor CLI.

Builds the command from the executor profile, runs it through the
ProcessRunner and turns the settled process into a typed outcome.
"""

import asyncio
import os
from dataclasses import dataclass, field
from typing import Optional

import structlog

from nightshift.core.executors.errors import ErrorClass, RunOutcome, classify_error, outcome_from_error_class
from nightshift.core.executors.process import ProcessResult, ProcessRunner
from nightshift.core.executors.profiles import ExecutorProfile, InvocationOptions, build_env
from nightshift.core.models import ExecutorType

logger = structlog.get_logger()


@dataclass
class ExecuteOptions:
    """Options for one adapter call."""
    cwd: Optional[str] = None
    timeout: Optional[float] = None
    resume_session_id: Optional[str] = None
    model: Optional[str] = None
    cancel_event: Optional[asyncio.Event] = None
    context: Optional[str] = None
    include_directories: list[str] = field(default_factory=list)
    sandbox: bool = False
    credential_home: Optional[str] = None


@dataclass
class ExecutionResult:
    """Typed result of one executor invocation."""
    output: str
    exit_code: Optional[int]
    duration_ms: int
    resumable_session_id: Optional[str] = None
    outcome: RunOutcome = RunOutcome.FAILED
    error_class: ErrorClass = ErrorClass.NONE
    timed_out: bool = False
    cancelled: bool = False
    stdout_truncated: bool = False
    stderr: str = ""
    executor: Optional[ExecutorType] = None
    account_id: Optional[str] = None
    attempts: int = 1

    @property
    def success(self) -> bool:
        return self.outcome == RunOutcome.SUCCESS


def outcome_for(result: ProcessResult) -> tuple[RunOutcome, ErrorClass]:
    """Map a settled process onto the outcome and the account-facing error class."""
    if result.cancelled:
        return RunOutcome.CANCELLED, ErrorClass.NONE
    if result.timed_out:
        return RunOutcome.TIMEOUT, ErrorClass.TIMEOUT
    if result.exit_code == 0:
        return RunOutcome.SUCCESS, ErrorClass.NONE

    evidence = "\n".join([result.stderr, *result.stream_errors, result.text[-2000:]])
    error_class = classify_error(evidence)
    if error_class == ErrorClass.NONE:
        error_class = ErrorClass.GENERIC
    return outcome_from_error_class(error_class), error_class


class ExecutorAdapter:
    """Runs one executor CLI described by a profile."""

    def __init__(
        self,
        profile: ExecutorProfile,
        runner: ProcessRunner,
        env_denylist: Optional[list[str]] = None,
        base_env: Optional[dict[str, str]] = None,
    ):
        self.profile = profile
        self.runner = runner
        self.env_denylist = env_denylist or []
        self.base_env = base_env

    @property
    def executor(self) -> ExecutorType:
        return self.profile.executor

    async def execute(self, prompt: str, options: Optional[ExecuteOptions] = None) -> ExecutionResult:
        """
        Run one invocation.

        Args:
            prompt: Prompt text
            options: Per-call options

        Returns:
            ExecutionResult; partial output is kept on every failure

        Raises:
            SpawnError: The binary could not be started
            ProcessKillError: The process group could not be killed
        """
        options = options or ExecuteOptions()
        command = self.profile.build_command(
            prompt,
            InvocationOptions(
                cwd=options.cwd,
                model=options.model,
                resume_session_id=options.resume_session_id,
                context=options.context,
                include_directories=options.include_directories,
                sandbox=options.sandbox,
            ),
        )
        env = build_env(
            dict(os.environ) if self.base_env is None else self.base_env,
            self.env_denylist,
            {**self.profile.account_env(options.credential_home), **command.env_extra},
        )
        timeout = options.timeout or self.profile.timeout

        logger.info(
            "Executing",
            executor=self.executor.value,
            prompt_preview=prompt[:80],
            prompt_length=len(prompt),
            timeout=timeout,
            resume=bool(options.resume_session_id),
        )

        result = await self.runner.run(
            command.argv,
            cwd=options.cwd,
            env=env,
            timeout=timeout,
            stdin_data=command.stdin_data,
            cancel_event=options.cancel_event,
        )
        outcome, error_class = outcome_for(result)

        output = result.text
        if outcome != RunOutcome.SUCCESS and result.stderr.strip():
            output = f"{output}\n{result.stderr.strip()}" if output else result.stderr.strip()

        logger.info(
            "Execution finished",
            executor=self.executor.value,
            outcome=outcome.value,
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
            truncated=result.stdout_truncated,
        )
        return ExecutionResult(
            output=output,
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
            resumable_session_id=result.session_id,
            outcome=outcome,
            error_class=error_class,
            timed_out=result.timed_out,
            cancelled=result.cancelled,
            stdout_truncated=result.stdout_truncated,
            stderr=result.stderr,
            executor=self.executor,
        )
