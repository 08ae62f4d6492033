"""
Executor Router
===============

Claims an account, runs the adapter, reports the outcome and rotates.

Per call: at most one attempt per account, quota/auth outcomes move to the
next account, a fully exhausted pool falls through to the executor's
fallback chain. Timeouts apply per attempt. Cancellation, timeouts and
generic failures are returned to the caller as-is.
"""

import asyncio
from dataclasses import replace
from typing import Optional
from uuid import uuid4

import structlog

from nightshift.core.config import Settings
from nightshift.core.executors.accounts import AccountRegistry
from nightshift.core.executors.adapter import ExecuteOptions, ExecutionResult, ExecutorAdapter
from nightshift.core.executors.errors import ErrorClass, ExecutorError, RunOutcome
from nightshift.core.executors.process import ProcessRunner
from nightshift.core.executors.profiles import build_profiles
from nightshift.core.models import ExecutorType, TaskType

logger = structlog.get_logger()


FALLBACK_CHAINS: dict[ExecutorType, list[ExecutorType]] = {
    ExecutorType.GEMINI: [ExecutorType.KIMI],
    ExecutorType.CODEX: [ExecutorType.CLAUDE],
    ExecutorType.CLAUDE: [],
    ExecutorType.KIMI: [],
}

# task type -> (primary executor, fallbacks)
TASK_ROUTES: dict[TaskType, tuple[ExecutorType, list[ExecutorType]]] = {
    TaskType.DISCOVERY: (ExecutorType.GEMINI, [ExecutorType.KIMI]),
    TaskType.GENERAL: (ExecutorType.GEMINI, [ExecutorType.KIMI]),
    TaskType.BATCH: (ExecutorType.GEMINI, [ExecutorType.KIMI]),
    TaskType.LONG_CONTEXT: (ExecutorType.KIMI, []),
    TaskType.CODE_CHANGE: (ExecutorType.CLAUDE, []),
    TaskType.VERIFICATION: (ExecutorType.CODEX, [ExecutorType.CLAUDE]),
}


def _failed(executor: ExecutorType, message: str, outcome: RunOutcome = RunOutcome.FAILED) -> ExecutionResult:
    return ExecutionResult(
        output=message,
        exit_code=None,
        duration_ms=0,
        outcome=outcome,
        error_class=ErrorClass.GENERIC if outcome == RunOutcome.FAILED else ErrorClass.NONE,
        executor=executor,
        attempts=0,
    )


class ExecutorRouter:
    """Entry point for every executor call in the engine."""

    def __init__(self, adapters: dict[ExecutorType, ExecutorAdapter], registry: AccountRegistry):
        self.adapters = adapters
        self.registry = registry
        self._in_flight: dict[str, asyncio.Event] = {}
        self._shutting_down = False

    @classmethod
    def from_settings(cls, config: Settings) -> "ExecutorRouter":
        runner = ProcessRunner(
            kill_grace=config.KILL_GRACE_SECONDS,
            close_grace=config.CLOSE_GRACE_SECONDS,
            max_output_bytes=config.MAX_OUTPUT_BYTES,
        )
        adapters = {
            executor: ExecutorAdapter(profile, runner, env_denylist=config.EXECUTOR_ENV_DENYLIST)
            for executor, profile in build_profiles(config).items()
        }
        return cls(adapters, AccountRegistry.from_settings(config))

    # ==========================================================================
    # Routing
    # ==========================================================================

    @staticmethod
    def route(task_type: TaskType) -> tuple[ExecutorType, list[ExecutorType]]:
        return TASK_ROUTES[task_type]

    async def run_task(
        self,
        task_type: TaskType,
        prompt: str,
        options: Optional[ExecuteOptions] = None,
    ) -> ExecutionResult:
        primary, fallbacks = self.route(task_type)
        return await self.run(primary, prompt, options, fallbacks=fallbacks)

    async def run(
        self,
        executor: ExecutorType,
        prompt: str,
        options: Optional[ExecuteOptions] = None,
        fallbacks: Optional[list[ExecutorType]] = None,
    ) -> ExecutionResult:
        """
        Run prompt on executor, rotating accounts and falling back.

        Args:
            executor: Preferred executor
            prompt: Prompt text
            options: Adapter options (timeout applies per attempt)
            fallbacks: Executors to try once the preferred one is exhausted;
                defaults to the executor's fallback chain, [] disables

        Returns:
            ExecutionResult; outcome ACCOUNTS_EXHAUSTED when nothing could run
        """
        options = options or ExecuteOptions()
        chain = [executor, *(FALLBACK_CHAINS[executor] if fallbacks is None else fallbacks)]

        result = _failed(executor, "No executor attempted", RunOutcome.ACCOUNTS_EXHAUSTED)
        for candidate in chain:
            if self._shutting_down:
                return _failed(candidate, "Router shutting down", RunOutcome.CANCELLED)
            result = await self._run_on_pool(candidate, prompt, options)
            if result.outcome != RunOutcome.ACCOUNTS_EXHAUSTED:
                return result
            logger.warning("Executor exhausted, trying fallback", executor=candidate.value)
        return result

    async def _run_on_pool(
        self,
        executor: ExecutorType,
        prompt: str,
        options: ExecuteOptions,
    ) -> ExecutionResult:
        adapter = self.adapters.get(executor)
        if adapter is None:
            return _failed(executor, f"No adapter configured for {executor.value}", RunOutcome.ACCOUNTS_EXHAUSTED)

        pool = self.registry.pool(executor)
        tried: list[str] = []
        last: Optional[ExecutionResult] = None

        while True:
            account = await pool.claim(exclude=tried)
            if account is None:
                message = last.output if last else f"All {executor.value} accounts unavailable"
                exhausted = _failed(executor, message, RunOutcome.ACCOUNTS_EXHAUSTED)
                exhausted.attempts = len(tried)
                return exhausted
            if self._shutting_down:
                # Woken by a released slot after cancel_all
                await pool.release(account)
                return _failed(executor, "Router shutting down", RunOutcome.CANCELLED)
            tried.append(account.id)

            invocation_id = uuid4().hex
            cancel_event = options.cancel_event or asyncio.Event()
            self._in_flight[invocation_id] = cancel_event
            try:
                result = await adapter.execute(
                    prompt,
                    replace(options, credential_home=account.credential_home, cancel_event=cancel_event),
                )
            except ExecutorError as e:
                # Not the account's fault; no outcome report, no retry
                logger.error("Executor failed to run", executor=executor.value, error=str(e))
                failed = _failed(executor, str(e))
                failed.account_id = account.id
                failed.attempts = len(tried)
                return failed
            finally:
                self._in_flight.pop(invocation_id, None)
                await pool.release(account)

            pool.report_outcome(account.id, invocation_id, result.error_class)
            result.account_id = account.id
            result.attempts = len(tried)

            if not result.outcome.rotates_account:
                return result
            logger.info(
                "Rotating account",
                executor=executor.value,
                account=account.id,
                outcome=result.outcome.value,
            )
            last = result

    # ==========================================================================
    # Shutdown
    # ==========================================================================

    def cancel_all(self) -> int:
        """Cancel every in-flight invocation and refuse new ones."""
        self._shutting_down = True
        events = list(self._in_flight.values())
        for event in events:
            event.set()
        logger.info("Cancelled in-flight invocations", count=len(events))
        return len(events)

    def resume(self) -> None:
        self._shutting_down = False

    def status(self) -> dict:
        return {
            "in_flight": len(self._in_flight),
            "shutting_down": self._shutting_down,
            "accounts": self.registry.status(),
        }
