"""
Account Rotation
================

Spreads executor calls across quota-limited credentials.

An AccountPool holds the accounts for one executor type. Selection is
round-robin starting after the last returned account and skips anything
cooling down or over the failure threshold. claim() serialises
select-and-claim so two concurrent invocations never grab the same slot.

Outcome reports are keyed by invocation id; a repeated report for the same
invocation is ignored.
"""

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

import structlog

from nightshift.core.config import Settings
from nightshift.core.executors.errors import ErrorClass
from nightshift.core.models import ExecutorType

logger = structlog.get_logger()

# Remembered invocation ids per pool
_SEEN_INVOCATIONS_LIMIT = 4096


@dataclass
class ExecutorAccount:
    """One set of credentials for an executor."""
    id: str
    executor: ExecutorType
    credential_home: Optional[str] = None
    cooldown_until: float = 0.0
    consecutive_failures: int = 0
    in_flight: int = 0
    last_error: Optional[ErrorClass] = None

    def in_cooldown(self, now: float) -> bool:
        return self.cooldown_until > now


class AccountPool:
    """Accounts for a single executor type."""

    def __init__(
        self,
        executor: ExecutorType,
        accounts: list[ExecutorAccount],
        failure_threshold: int = 5,
        auth_failure_threshold: int = 3,
        quota_cooldown: float = 3600.0,
        error_cooldown: float = 300.0,
        max_in_flight_per_account: int = 1,
        clock: Callable[[], float] = time.time,
    ):
        if not accounts:
            raise ValueError(f"Account pool for {executor.value} needs at least one account")
        self.executor = executor
        self.accounts = accounts
        self.failure_threshold = failure_threshold
        self.auth_failure_threshold = auth_failure_threshold
        self.quota_cooldown = quota_cooldown
        self.error_cooldown = error_cooldown
        self.max_in_flight_per_account = max_in_flight_per_account
        self.clock = clock

        self._last_index = -1
        self._condition = asyncio.Condition()
        self._seen: OrderedDict[str, str] = OrderedDict()

    # ==========================================================================
    # Selection
    # ==========================================================================

    def is_available(self, account: ExecutorAccount) -> bool:
        return (
            not account.in_cooldown(self.clock())
            and account.consecutive_failures < self.failure_threshold
        )

    def get(self, account_id: str) -> Optional[ExecutorAccount]:
        for account in self.accounts:
            if account.id == account_id:
                return account
        return None

    def _pick(
        self,
        preferred_id: Optional[str],
        accept: Callable[[ExecutorAccount], bool],
    ) -> Optional[ExecutorAccount]:
        if preferred_id is not None:
            preferred = self.get(preferred_id)
            if preferred is not None and accept(preferred):
                self._last_index = self.accounts.index(preferred)
                return preferred

        count = len(self.accounts)
        for step in range(1, count + 1):
            index = (self._last_index + step) % count
            account = self.accounts[index]
            if accept(account):
                self._last_index = index
                return account
        return None

    def select_account(self, preferred_id: Optional[str] = None) -> Optional[ExecutorAccount]:
        """
        Round-robin selection without claiming.

        Returns:
            The next available account, or None if all are skipped
        """
        return self._pick(preferred_id, self.is_available)

    async def claim(
        self,
        preferred_id: Optional[str] = None,
        exclude: Iterable[str] = (),
    ) -> Optional[ExecutorAccount]:
        """
        Select and claim an account atomically.

        Waits while every available account is busy; returns None at once
        when no account is available at all.
        """
        excluded = set(exclude)

        def candidate(account: ExecutorAccount) -> bool:
            return account.id not in excluded and self.is_available(account)

        def free(account: ExecutorAccount) -> bool:
            return candidate(account) and account.in_flight < self.max_in_flight_per_account

        async with self._condition:
            while True:
                if not any(candidate(a) for a in self.accounts):
                    logger.warning("All accounts unavailable", executor=self.executor.value)
                    return None
                account = self._pick(preferred_id, free)
                if account is not None:
                    account.in_flight += 1
                    return account
                await self._condition.wait()

    async def release(self, account: ExecutorAccount) -> None:
        async with self._condition:
            account.in_flight = max(0, account.in_flight - 1)
            self._condition.notify_all()

    # ==========================================================================
    # Outcomes
    # ==========================================================================

    def report_outcome(self, account_id: str, invocation_id: str, error_class: ErrorClass) -> bool:
        """
        Apply one invocation's outcome to its account.

        Args:
            account_id: Account the invocation ran on
            invocation_id: Unique id of the invocation
            error_class: Classified outcome (NONE for success)

        Returns:
            False if this invocation was already reported or the account is unknown
        """
        if invocation_id in self._seen:
            logger.debug("Duplicate outcome ignored", account=account_id, invocation=invocation_id)
            return False
        account = self.get(account_id)
        if account is None:
            return False

        self._seen[invocation_id] = account_id
        while len(self._seen) > _SEEN_INVOCATIONS_LIMIT:
            self._seen.popitem(last=False)

        now = self.clock()
        account.last_error = None if error_class == ErrorClass.NONE else error_class

        if error_class == ErrorClass.NONE:
            account.consecutive_failures = 0
        elif error_class == ErrorClass.QUOTA:
            account.consecutive_failures += 1
            account.cooldown_until = now + self.quota_cooldown
            logger.warning(
                "Account quota exhausted, cooling down",
                account=account.id,
                failures=account.consecutive_failures,
                cooldown_seconds=self.quota_cooldown,
            )
        elif error_class == ErrorClass.AUTH:
            account.consecutive_failures += 1
            if account.consecutive_failures >= self.auth_failure_threshold:
                account.cooldown_until = now + self.error_cooldown
                logger.warning(
                    "Account auth failing, short cooldown",
                    account=account.id,
                    failures=account.consecutive_failures,
                )
        else:
            account.consecutive_failures += 1
        return True

    # ==========================================================================
    # Inspection
    # ==========================================================================

    def status(self) -> list[dict[str, Any]]:
        now = self.clock()
        return [
            {
                "id": account.id,
                "executor": self.executor.value,
                "available": self.is_available(account),
                "consecutive_failures": account.consecutive_failures,
                "cooldown_remaining": max(0.0, account.cooldown_until - now),
                "in_flight": account.in_flight,
                "last_error": account.last_error.value if account.last_error else None,
            }
            for account in self.accounts
        ]

    def reset(self) -> None:
        for account in self.accounts:
            account.cooldown_until = 0.0
            account.consecutive_failures = 0
            account.last_error = None
        logger.info("Account pool reset", executor=self.executor.value)


class AccountRegistry:
    """AccountPool per executor type, built once per process."""

    def __init__(self, pools: dict[ExecutorType, AccountPool]):
        self.pools = pools

    def pool(self, executor: ExecutorType) -> AccountPool:
        return self.pools[executor]

    def status(self) -> list[dict[str, Any]]:
        return [row for pool in self.pools.values() for row in pool.status()]

    @classmethod
    def from_settings(cls, config: Settings, clock: Callable[[], float] = time.time) -> "AccountRegistry":
        common = dict(
            failure_threshold=config.ACCOUNT_FAILURE_THRESHOLD,
            auth_failure_threshold=config.ACCOUNT_AUTH_FAILURE_THRESHOLD,
            quota_cooldown=config.QUOTA_COOLDOWN_SECONDS,
            error_cooldown=config.ERROR_COOLDOWN_SECONDS,
            clock=clock,
        )
        pools: dict[ExecutorType, AccountPool] = {}
        for executor in ExecutorType:
            if executor == ExecutorType.GEMINI and config.GEMINI_ACCOUNT_HOMES:
                accounts = [
                    ExecutorAccount(id=f"gemini-{i}", executor=executor, credential_home=home)
                    for i, home in enumerate(config.GEMINI_ACCOUNT_HOMES, start=1)
                ]
                pools[executor] = AccountPool(executor, accounts, max_in_flight_per_account=1, **common)
            else:
                # Implicit account using the host's own credentials
                accounts = [ExecutorAccount(id=f"{executor.value}-default", executor=executor)]
                pools[executor] = AccountPool(executor, accounts, max_in_flight_per_account=4, **common)
        return cls(pools)
