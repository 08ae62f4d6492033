"""
Overnight Orchestrator Base
===========================

Shared plumbing for the multi-phase task pipelines: milestones, artifact
writing, and the outer failure boundary that turns an unexpected error
into a FAILED task instead of an exception escaping the supervisor.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

import structlog

from nightshift.core.executors.router import ExecutorRouter
from nightshift.core.models import MilestoneType, OvernightTask, OvernightTaskStatus
from nightshift.core.overnight.store import TaskStore

if TYPE_CHECKING:
    from nightshift.core.overnight.presenter import MorningPresenter

logger = structlog.get_logger()

# (task, milestone type, message) -> awaitable; best-effort
MilestoneCallback = Callable[[OvernightTask, MilestoneType, str], Awaitable[None]]


class OrchestrationError(Exception):
    """A pipeline phase could not produce anything usable."""
    pass


@dataclass
class IterationOutcome:
    """One labelled approach as the pipeline produced it."""
    label: str
    name: str
    executor: str
    success: bool
    output: str = ""
    summary: str = ""
    score: Optional[float] = None
    confidence: Optional[float] = None
    workspace_path: Optional[str] = None
    artifacts: list[str] = field(default_factory=list)
    error: Optional[str] = None
    duration_ms: int = 0
    lines_changed: int = 0
    files_changed: int = 0
    iteration_id: Optional[str] = None


@dataclass
class OrchestratorResult:
    """Outcome of one overnight task run."""
    success: bool
    task_id: str
    iterations: list[IterationOutcome] = field(default_factory=list)
    synthesis: Optional[str] = None
    error: Optional[str] = None
    duration_ms: int = 0


class BaseOrchestrator(ABC):
    """
    Base class for overnight pipelines.

    Subclasses implement _run(); execute() wraps it so that any unexpected
    exception marks the task FAILED and records a FAILED milestone.
    """

    def __init__(
        self,
        task: OvernightTask,
        store: TaskStore,
        router: ExecutorRouter,
        output_dir: Path,
        on_milestone: Optional[MilestoneCallback] = None,
        job_timeout: float = 600.0,
        presenter: Optional["MorningPresenter"] = None,
    ):
        self.task = task
        self.store = store
        self.router = router
        self.output_dir = Path(output_dir)
        self.on_milestone = on_milestone
        self.job_timeout = job_timeout
        self.presenter = presenter

    @property
    def task_dir(self) -> Path:
        return self.output_dir / "overnight" / self.task.id

    async def execute(self) -> OrchestratorResult:
        started = time.monotonic()
        logger.info(
            "Overnight task started",
            task_id=self.task.id,
            task_type=self.task.task_type.value,
            subject=self.task.subject[:80],
        )
        await self.milestone(MilestoneType.STARTED, f"Started: {self.task.subject}")

        try:
            result = await self._run()
        except Exception as e:
            logger.error("Overnight task failed", task_id=self.task.id, error=str(e), exc_info=True)
            await self.store.update_task_status(
                self.task.id,
                OvernightTaskStatus.FAILED,
                error=str(e),
            )
            await self.milestone(MilestoneType.FAILED, f"Failed: {e}")
            result = OrchestratorResult(success=False, task_id=self.task.id, error=str(e))

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Overnight task finished",
            task_id=self.task.id,
            success=result.success,
            duration_ms=result.duration_ms,
        )
        return result

    @abstractmethod
    async def _run(self) -> OrchestratorResult:
        ...

    async def set_status(self, status: OvernightTaskStatus, **fields) -> None:
        await self.store.update_task_status(self.task.id, status, **fields)

    async def milestone(self, milestone_type: MilestoneType, message: str, data: Optional[dict] = None) -> None:
        """Record a milestone and forward it to the callback; callback errors never propagate."""
        await self.store.create_milestone(self.task.id, milestone_type, message, data)
        if self.on_milestone is None:
            return
        try:
            await self.on_milestone(self.task, milestone_type, message)
        except Exception as e:
            logger.warning(
                "Milestone callback failed",
                task_id=self.task.id,
                milestone=milestone_type.value,
                error=str(e),
            )

    async def write_artifact(self, name: str, content: str) -> Path:
        """Write an artifact under the task directory and register it on the task."""
        path = self.task_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        await self.store.append_task_artifact(self.task.id, str(path))
        logger.debug("Artifact written", task_id=self.task.id, path=str(path))
        return path
