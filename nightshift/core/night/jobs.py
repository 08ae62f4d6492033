"""
Night Jobs
==========

Job model, risk-to-approval mapping and the dependency-aware job queue.

Approval is derived from risk and never stored:
- low    -> green  (auto-execute when the global flag allows it)
- medium -> yellow (always executes, user is notified)
- high   -> red    (runs only after approve_job)

The queue runs jobs in creation order. A job whose dependency ended
failed, blocked or rejected becomes blocked itself, with the offending
dependency ids recorded in blocked_by.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

import structlog

from nightshift.core.models import ApprovalLevel, JobStatus, JobType, RiskLevel
from nightshift.core.schemas import (
    IdeaPayload,
    JobPayload,
    MaintenancePayload,
    NightPlan,
    ProposalPayload,
    ResearchPayload,
)

logger = structlog.get_logger()


RISK_TO_APPROVAL: dict[RiskLevel, ApprovalLevel] = {
    RiskLevel.LOW: ApprovalLevel.GREEN,
    RiskLevel.MEDIUM: ApprovalLevel.YELLOW,
    RiskLevel.HIGH: ApprovalLevel.RED,
}

JOB_TYPE_RISKS: dict[JobType, RiskLevel] = {
    JobType.CONTEXT_REFRESH: RiskLevel.LOW,
    JobType.WEB_RESEARCH: RiskLevel.LOW,
    JobType.IDEA_EXPLORATION: RiskLevel.LOW,
    JobType.IDEA_CONSOLIDATION: RiskLevel.LOW,
    JobType.PROJECT_PLAN: RiskLevel.MEDIUM,
    JobType.CODE_PROPOSAL: RiskLevel.MEDIUM,
    JobType.CODE_VERIFY: RiskLevel.MEDIUM,
    JobType.EXECUTE_CHANGE: RiskLevel.HIGH,
    JobType.NOTIFY_USER: RiskLevel.LOW,
    JobType.MORNING_BRIEFING: RiskLevel.LOW,
}

# Dependency states that can never turn into "completed"
_DEAD_STATES = {JobStatus.FAILED, JobStatus.BLOCKED, JobStatus.REJECTED}
_TERMINAL_STATES = {JobStatus.COMPLETED, *_DEAD_STATES}

_ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.BLOCKED, JobStatus.APPROVED, JobStatus.REJECTED},
    JobStatus.APPROVED: {JobStatus.RUNNING, JobStatus.BLOCKED, JobStatus.REJECTED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
    JobStatus.BLOCKED: set(),
    JobStatus.REJECTED: set(),
}


def approval_for(risk: RiskLevel) -> ApprovalLevel:
    """Pure mapping from risk to approval gate."""
    return RISK_TO_APPROVAL[risk]


class InvalidJobTransition(Exception):
    """A status change the job state machine does not allow."""

    def __init__(self, job_id: str, current: JobStatus, target: JobStatus):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job {job_id}: {current.value} -> {target.value} not allowed")


# ==========================================================================
# Job
# ==========================================================================

@dataclass
class JobResult:
    success: bool
    output: str = ""
    error: Optional[str] = None
    artifacts: list[str] = field(default_factory=list)
    duration_ms: int = 0


@dataclass
class Job:
    """A unit of night work."""
    id: str
    type: JobType
    name: str
    description: str
    risk: RiskLevel
    payload: Optional[JobPayload] = None
    status: JobStatus = JobStatus.PENDING
    depends_on: list[str] = field(default_factory=list)
    blocked_by: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[JobResult] = None

    @property
    def approval(self) -> ApprovalLevel:
        return approval_for(self.risk)

    @property
    def is_terminal(self) -> bool:
        return self.status in _TERMINAL_STATES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "name": self.name,
            "description": self.description,
            "risk": self.risk.value,
            "approval": self.approval.value,
            "status": self.status.value,
            "payload": self.payload.model_dump(mode="json") if self.payload else None,
            "depends_on": list(self.depends_on),
            "blocked_by": list(self.blocked_by),
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "result": {
                "success": self.result.success,
                "output": self.result.output[:2000],
                "error": self.result.error,
                "artifacts": self.result.artifacts,
                "duration_ms": self.result.duration_ms,
            } if self.result else None,
        }


def should_auto_execute(job: Job, auto_approve_green: bool) -> bool:
    """Whether the approval gate lets this job run without a human."""
    if job.status == JobStatus.APPROVED:
        return True
    approval = job.approval
    if approval == ApprovalLevel.GREEN:
        return auto_approve_green
    if approval == ApprovalLevel.YELLOW:
        return True
    return False


# ==========================================================================
# Queue
# ==========================================================================

class JobQueue:
    """
    In-memory job queue for one night session.

    Only the queue changes job status; executors hand results back through
    set_job_result.
    """

    def __init__(self, auto_approve_green: bool = True):
        self.auto_approve_green = auto_approve_green
        self._jobs: dict[str, Job] = {}

    def __len__(self) -> int:
        return len(self._jobs)

    @property
    def jobs(self) -> list[Job]:
        # dicts keep insertion order, which is creation order
        return list(self._jobs.values())

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def create_job(
        self,
        job_type: JobType,
        name: str,
        description: str = "",
        payload: Optional[JobPayload] = None,
        risk: Optional[RiskLevel] = None,
        depends_on: Optional[list[str]] = None,
    ) -> Job:
        """
        Create a job and append it to the queue.

        Raises:
            ValueError: If a dependency id is unknown
        """
        depends_on = list(depends_on or [])
        unknown = [dep for dep in depends_on if dep not in self._jobs]
        if unknown:
            raise ValueError(f"Unknown dependencies: {unknown}")

        job = Job(
            id=f"job_{uuid4().hex[:8]}",
            type=job_type,
            name=name,
            description=description,
            risk=risk or JOB_TYPE_RISKS[job_type],
            payload=payload,
            depends_on=depends_on,
        )
        self._jobs[job.id] = job
        logger.debug(
            "Job created",
            job_id=job.id,
            type=job_type.value,
            risk=job.risk.value,
            approval=job.approval.value,
        )
        return job

    def ensure_consolidation_job(self) -> Job:
        """Return the session's consolidation job, creating it once."""
        for job in self._jobs.values():
            if job.type == JobType.IDEA_CONSOLIDATION:
                return job
        return self.create_job(
            JobType.IDEA_CONSOLIDATION,
            "Consolidate and deduplicate ideas",
            "Merge duplicate ideas, archive stale drafts",
            payload=MaintenancePayload(task="idea_consolidation"),
        )

    def create_jobs_from_plan(self, plan: NightPlan) -> list[Job]:
        """
        Materialise a night plan.

        Order: consolidation, research, idea exploration, code proposals.
        Code proposals depend on the first research job when there is one.
        """
        created = [self.ensure_consolidation_job()]

        for task in plan.maintenance_tasks:
            if task.task != "idea_consolidation":
                logger.debug("Skipping unsupported maintenance task", task=task.task)

        research_jobs = []
        for task in plan.research_tasks:
            job = self.create_job(
                JobType.WEB_RESEARCH,
                f"Research: {_short(task.query)}",
                task.query,
                payload=ResearchPayload(query=task.query, priority=task.priority),
            )
            research_jobs.append(job)
            created.append(job)

        for idea in plan.ideas_to_explore:
            created.append(self.create_job(
                JobType.IDEA_EXPLORATION,
                f"Explore: {_short(idea.topic)}",
                idea.topic,
                payload=IdeaPayload(topic=idea.topic, connection=idea.connection_to_projects),
            ))

        depends_on = [research_jobs[0].id] if research_jobs else []
        for proposal in plan.code_proposals:
            created.append(self.create_job(
                JobType.CODE_PROPOSAL,
                f"Proposal: {_short(proposal.description)}",
                proposal.description,
                payload=ProposalPayload(
                    description=proposal.description,
                    target_project=proposal.target_project,
                ),
                risk=proposal.risk,
                depends_on=depends_on,
            ))

        logger.info(
            "Jobs created from night plan",
            total=len(created),
            research=len(plan.research_tasks),
            ideas=len(plan.ideas_to_explore),
            proposals=len(plan.code_proposals),
        )
        return created

    # ==========================================================================
    # Scheduling
    # ==========================================================================

    def get_next_executable_job(self) -> Optional[Job]:
        """
        First runnable job in creation order.

        Side effect: jobs with a dead dependency are moved to blocked.
        """
        for job in self._jobs.values():
            if job.status not in (JobStatus.PENDING, JobStatus.APPROVED):
                continue

            deps = [self._jobs[dep] for dep in job.depends_on]
            dead = [dep.id for dep in deps if dep.status in _DEAD_STATES]
            if dead:
                job.status = JobStatus.BLOCKED
                job.blocked_by = dead
                job.completed_at = datetime.now(timezone.utc)
                logger.info("Job blocked by dependency", job_id=job.id, blocked_by=dead)
                continue
            if any(dep.status != JobStatus.COMPLETED for dep in deps):
                continue

            if should_auto_execute(job, self.auto_approve_green):
                return job
        return None

    def start_job(self, job_id: str) -> Job:
        job = self._require(job_id)
        waiting = [dep for dep in job.depends_on if self._jobs[dep].status != JobStatus.COMPLETED]
        if waiting:
            raise InvalidJobTransition(job_id, job.status, JobStatus.RUNNING)
        self._transition(job, JobStatus.RUNNING)
        job.started_at = datetime.now(timezone.utc)
        return job

    def update_job_status(self, job_id: str, status: JobStatus) -> Job:
        if status == JobStatus.RUNNING:
            return self.start_job(job_id)
        job = self._require(job_id)
        self._transition(job, status)
        if job.is_terminal:
            job.completed_at = datetime.now(timezone.utc)
        return job

    def set_job_result(self, job_id: str, result: JobResult) -> Job:
        """Finish a running job from its reported result."""
        job = self._require(job_id)
        self._transition(job, JobStatus.COMPLETED if result.success else JobStatus.FAILED)
        job.result = result
        job.completed_at = datetime.now(timezone.utc)
        logger.info(
            "Job finished",
            job_id=job.id,
            status=job.status.value,
            artifacts=len(result.artifacts),
        )
        return job

    # ==========================================================================
    # Approval
    # ==========================================================================

    def approve_job(self, job_id: str) -> bool:
        """
        Unlock a pending job that needs a human.

        Red jobs always do; green jobs only when auto-approve is off.
        Yellow jobs never wait, so approving them is a no-op (False).
        """
        job = self._jobs.get(job_id)
        if job is None or job.approval == ApprovalLevel.YELLOW or job.status != JobStatus.PENDING:
            return False
        job.status = JobStatus.APPROVED
        logger.info("Job approved", job_id=job_id)
        return True

    def reject_job(self, job_id: str, reason: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.status not in (JobStatus.PENDING, JobStatus.APPROVED):
            return False
        job.status = JobStatus.REJECTED
        job.result = JobResult(success=False, error=f"Rejected: {reason}")
        job.completed_at = datetime.now(timezone.utc)
        logger.info("Job rejected", job_id=job_id, reason=reason)
        return True

    def get_pending_approvals(self) -> list[Job]:
        return [
            job for job in self._jobs.values()
            if job.approval == ApprovalLevel.RED and job.status == JobStatus.PENDING
        ]

    # ==========================================================================
    # Inspection
    # ==========================================================================

    def get_stats(self) -> dict[str, int]:
        stats = {status.value: 0 for status in JobStatus}
        for job in self._jobs.values():
            stats[job.status.value] += 1
        stats["total"] = len(self._jobs)
        return stats

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "jobs": [job.to_dict() for job in self._jobs.values()],
            "stats": self.get_stats(),
        }

    def clear(self) -> None:
        self._jobs.clear()

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(f"Job not found: {job_id}")
        return job

    def _transition(self, job: Job, target: JobStatus) -> None:
        if target not in _ALLOWED_TRANSITIONS[job.status]:
            raise InvalidJobTransition(job.id, job.status, target)
        job.status = target


# ==========================================================================
# Formatting
# ==========================================================================

_APPROVAL_ICONS = {
    ApprovalLevel.GREEN: "🟢",
    ApprovalLevel.YELLOW: "🟡",
    ApprovalLevel.RED: "🔴",
}

_STATUS_ICONS = {
    JobStatus.COMPLETED: "✅",
    JobStatus.FAILED: "❌",
    JobStatus.BLOCKED: "⛔",
    JobStatus.REJECTED: "🚫",
    JobStatus.PENDING: "⏳",
    JobStatus.APPROVED: "👍",
    JobStatus.RUNNING: "🔄",
}


def _short(text: str, limit: int = 50) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


def format_job_line(job: Job) -> str:
    line = f"{_STATUS_ICONS[job.status]} {_APPROVAL_ICONS[job.approval]} {job.name}"
    if job.status == JobStatus.BLOCKED and job.blocked_by:
        line += f" (blocked by {', '.join(job.blocked_by)})"
    elif job.result and job.result.error:
        line += f" ({_short(job.result.error, 80)})"
    return line


def format_jobs_for_briefing(jobs: list[Job]) -> str:
    """Markdown job summary grouped by outcome."""
    if not jobs:
        return "_No jobs ran tonight._"

    sections = []
    groups = [
        ("Completed", [j for j in jobs if j.status == JobStatus.COMPLETED]),
        ("Failed", [j for j in jobs if j.status == JobStatus.FAILED]),
        ("Blocked", [j for j in jobs if j.status == JobStatus.BLOCKED]),
        ("Awaiting approval", [j for j in jobs if j.status in (JobStatus.PENDING, JobStatus.APPROVED)]),
        ("Rejected", [j for j in jobs if j.status == JobStatus.REJECTED]),
    ]
    for title, group in groups:
        if group:
            lines = "\n".join(f"- {format_job_line(job)}" for job in group)
            sections.append(f"### {title} ({len(group)})\n{lines}")
    return "\n\n".join(sections)
