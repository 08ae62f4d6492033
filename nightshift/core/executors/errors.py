"""
Executor Errors
===============

Typed outcomes and the error-text classifier.

Expected failure modes (quota, auth, timeout, cancellation) travel as
RunOutcome values. Only spawn failures and processes that survive SIGKILL
are raised.
"""

import re
from enum import Enum
from typing import Optional


class ErrorClass(str, Enum):
    """What an invocation's error text says about the account."""
    NONE = "none"
    QUOTA = "quota"
    AUTH = "auth"
    TIMEOUT = "timeout"
    GENERIC = "generic"


class RunOutcome(str, Enum):
    """Caller-visible result of one routed execution."""
    SUCCESS = "success"
    QUOTA_EXHAUSTED = "quota_exhausted"
    AUTH_ERROR = "auth_error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    FAILED = "failed"
    ACCOUNTS_EXHAUSTED = "accounts_exhausted"

    @property
    def rotates_account(self) -> bool:
        """Whether the router should try another account."""
        return self in (RunOutcome.QUOTA_EXHAUSTED, RunOutcome.AUTH_ERROR)


# ==========================================================================
# Exceptions
# ==========================================================================

class ExecutorError(Exception):
    """Base class for executor failures that cannot be expressed as outcomes."""


class SpawnError(ExecutorError):
    """The executor binary could not be started."""

    def __init__(self, binary: str, reason: str):
        self.binary = binary
        self.reason = reason
        super().__init__(f"Failed to spawn {binary}: {reason}")


class ProcessKillError(ExecutorError):
    """A process group survived SIGTERM and SIGKILL."""

    def __init__(self, pid: int):
        self.pid = pid
        super().__init__(f"Process {pid} still alive after SIGKILL")


# ==========================================================================
# Classification
# ==========================================================================

# Best-effort heuristics; false negatives fall through to GENERIC.
QUOTA_PATTERNS = re.compile(
    r"exhausted.*quota"
    r"|quota.*(reset|exceeded|exhausted)"
    r"|resource[_ ]exhausted"
    r"|\b429\b"
    r"|rate.?limit"
    r"|too many requests"
    r"|capacity.*exhausted"
    r"|usage limit",
    re.IGNORECASE,
)

AUTH_PATTERNS = re.compile(
    r"\b401\b"
    r"|\b403\b"
    r"|unauthori[sz]ed"
    r"|invalid.*credential"
    r"|auth.*fail"
    r"|not logged in"
    r"|please (log ?in|login|authenticate)",
    re.IGNORECASE,
)


def classify_error(text: Optional[str]) -> ErrorClass:
    """
    Classify executor error output.

    Quota wins over auth when both match (a 429 page often mentions
    credentials too).
    """
    if not text or not text.strip():
        return ErrorClass.NONE
    if QUOTA_PATTERNS.search(text):
        return ErrorClass.QUOTA
    if AUTH_PATTERNS.search(text):
        return ErrorClass.AUTH
    return ErrorClass.GENERIC


def outcome_from_error_class(error_class: ErrorClass) -> RunOutcome:
    return {
        ErrorClass.NONE: RunOutcome.FAILED,
        ErrorClass.QUOTA: RunOutcome.QUOTA_EXHAUSTED,
        ErrorClass.AUTH: RunOutcome.AUTH_ERROR,
        ErrorClass.TIMEOUT: RunOutcome.TIMEOUT,
        ErrorClass.GENERIC: RunOutcome.FAILED,
    }[error_class]
