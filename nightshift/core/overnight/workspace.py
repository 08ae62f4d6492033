"""
Workspace Manager
=================

Isolated per-approach directories for prototype iterations.

Layout: {base_dir}/{task_id}/{label}. When the task has a source git repo
the workspace is a worktree on branch overnight/{task_id}/{label}; a plain
source directory is copied; without a source a fresh repo is initialised.
"""

import asyncio
import re
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog

logger = structlog.get_logger()

ARTIFACT_PATTERNS = ("*.patch", "*.diff", "CHANGELOG.md", "SUMMARY.md")

_SHORTSTAT = re.compile(
    r"(\d+)\s+files?\s+changed(?:,\s+(\d+)\s+insertions?\(\+\))?(?:,\s+(\d+)\s+deletions?\(-\))?"
)


@dataclass
class Workspace:
    path: Path
    branch: str
    is_worktree: bool = False


@dataclass
class ChangeStats:
    files_changed: int = 0
    insertions: int = 0
    deletions: int = 0

    @property
    def lines_changed(self) -> int:
        return self.insertions + self.deletions


class GitCommandError(Exception):
    def __init__(self, args: list[str], returncode: int, stderr: str):
        self.args_list = args
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"git {' '.join(args)} exited {returncode}: {stderr.strip()[:200]}")


async def run_git(cwd: Path, *args: str, check: bool = True) -> str:
    """Run one git command and return its stdout."""
    proc = await asyncio.create_subprocess_exec(
        "git", *args,
        cwd=str(cwd),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate()
    if check and proc.returncode != 0:
        raise GitCommandError(list(args), proc.returncode, stderr.decode("utf-8", errors="replace"))
    return stdout.decode("utf-8", errors="replace")


class WorkspaceManager:
    """Creates, inspects and cleans up prototype workspaces."""

    def __init__(self, base_dir: Path, retention_days: int = 7):
        self.base_dir = Path(base_dir)
        self.retention_days = retention_days

    def workspace_path(self, task_id: str, label: str) -> Path:
        return self.base_dir / task_id / label

    async def create(self, task_id: str, label: str, source_path: Optional[str] = None) -> Workspace:
        """Create the workspace for one approach."""
        path = self.workspace_path(task_id, label)
        branch = f"overnight/{task_id}/{label.lower()}"
        path.parent.mkdir(parents=True, exist_ok=True)

        if source_path and await self._is_git_repo(Path(source_path)):
            await run_git(Path(source_path), "worktree", "add", "-B", branch, str(path))
            workspace = Workspace(path=path, branch=branch, is_worktree=True)
        elif source_path:
            await asyncio.to_thread(shutil.copytree, source_path, path, dirs_exist_ok=True)
            workspace = Workspace(path=path, branch=branch)
        else:
            path.mkdir(parents=True, exist_ok=True)
            try:
                await run_git(path, "init")
                await run_git(path, "checkout", "-b", branch)
            except (OSError, GitCommandError) as e:
                # No git on this host; a plain directory still isolates the approach
                logger.warning("Git init failed, using plain workspace", path=str(path), error=str(e))
            workspace = Workspace(path=path, branch=branch)

        logger.info("Workspace created", task_id=task_id, approach=label, path=str(path))
        return workspace

    async def _is_git_repo(self, path: Path) -> bool:
        if not path.is_dir():
            return False
        try:
            await run_git(path, "rev-parse", "--git-dir")
        except (OSError, GitCommandError):
            return False
        return True

    def collect_artifacts(self, workspace_path: Path, patterns: tuple[str, ...] = ARTIFACT_PATTERNS) -> list[str]:
        """Top-level files in the workspace matching the artifact patterns."""
        root = Path(workspace_path)
        if not root.is_dir():
            return []
        return sorted(
            str(entry)
            for entry in root.iterdir()
            if entry.is_file() and any(entry.match(pattern) for pattern in patterns)
        )

    async def change_stats(self, workspace_path: Path) -> ChangeStats:
        """Staged diff stats; zeros when the workspace is not a repo."""
        try:
            await run_git(Path(workspace_path), "add", "-A", check=False)
            output = await run_git(Path(workspace_path), "diff", "--cached", "--shortstat")
        except (OSError, GitCommandError) as e:
            logger.debug("Change stats unavailable", path=str(workspace_path), error=str(e))
            return ChangeStats()

        match = _SHORTSTAT.search(output)
        if not match:
            return ChangeStats()
        return ChangeStats(
            files_changed=int(match.group(1)),
            insertions=int(match.group(2) or 0),
            deletions=int(match.group(3) or 0),
        )

    def remove_task(self, task_id: str) -> None:
        shutil.rmtree(self.base_dir / task_id, ignore_errors=True)

    def cleanup_old(self, now: Optional[float] = None) -> int:
        """Remove task directories older than the retention window."""
        if not self.base_dir.is_dir():
            return 0
        cutoff = (now or time.time()) - self.retention_days * 86400
        removed = 0
        for entry in self.base_dir.iterdir():
            if entry.is_dir() and entry.stat().st_mtime < cutoff:
                shutil.rmtree(entry, ignore_errors=True)
                removed += 1
        if removed:
            logger.info("Old workspaces cleaned up", removed=removed)
        return removed
