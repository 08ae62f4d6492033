"""
Supervisor Lock
===============

OS-level exclusive lock that keeps a second supervisor process from
starting. The descriptor is opened close-on-exec so executor children never
inherit it, and the kernel drops the lock if the holder dies.
"""

import fcntl
import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import structlog

logger = structlog.get_logger()


class LockHeldError(Exception):
    """Another process already holds the supervisor lock."""

    def __init__(self, path: Path, holder: Optional[dict] = None):
        self.path = path
        self.holder = holder or {}
        pid = self.holder.get("pid", "unknown")
        super().__init__(f"Supervisor lock {path} held by PID {pid}")


class SupervisorLock:
    """
    flock-based exclusive lock.

    Usage:
        with SupervisorLock(path):
            ...
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> bool:
        """Try to take the lock without blocking. Returns False if another holder exists."""
        if self._fd is not None:
            return True
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT | os.O_CLOEXEC, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            logger.warning("Supervisor lock busy", path=str(self.path), holder=self.read_holder())
            return False

        info = json.dumps({
            "pid": os.getpid(),
            "acquired_at": datetime.now(timezone.utc).isoformat(),
        }).encode("utf-8")
        os.ftruncate(fd, 0)
        os.write(fd, info)
        os.fsync(fd)
        self._fd = fd
        logger.info("Supervisor lock acquired", path=str(self.path), pid=os.getpid())
        return True

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            os.ftruncate(self._fd, 0)
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.info("Supervisor lock released", path=str(self.path))

    def read_holder(self) -> dict:
        try:
            return json.loads(self.path.read_text() or "{}")
        except (OSError, ValueError):
            return {}

    def __enter__(self) -> "SupervisorLock":
        if not self.acquire():
            raise LockHeldError(self.path, self.read_holder())
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()
