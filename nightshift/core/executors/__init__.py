"""
Executor Layer
==============

Runs external agent CLIs (Claude, Gemini, Codex, Kimi) as subprocesses,
parses their stream-json output, and rotates accounts on quota errors.

Components:
- ProcessRunner: spawn, timeout, cancel and settle-once bookkeeping
- ExecutorAdapter: one CLI profile bound to the runner
- AccountRegistry: per-executor account pools with cooldowns
- ExecutorRouter: task-type routing with fallbacks
"""

from .accounts import AccountPool, AccountRegistry, ExecutorAccount
from .adapter import ExecuteOptions, ExecutionResult, ExecutorAdapter
from .errors import ErrorClass, ExecutorError, RunOutcome, classify_error
from .process import ProcessResult, ProcessRunner
from .router import ExecutorRouter

__all__ = [
    "AccountPool",
    "AccountRegistry",
    "ErrorClass",
    "ExecuteOptions",
    "ExecutionResult",
    "ExecutorAccount",
    "ExecutorAdapter",
    "ExecutorError",
    "ExecutorRouter",
    "ProcessResult",
    "ProcessRunner",
    "RunOutcome",
    "classify_error",
]
