"""
Nightshift - Models
===================

Shared enums for jobs, executors and overnight tasks, plus the SQLAlchemy
models persisted by the task store.
"""

import enum
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from nightshift.core.database import Base


def _new_id() -> str:
    return str(uuid4())


# ==========================================================================
# Job Enums
# ==========================================================================

class RiskLevel(str, enum.Enum):
    """How much damage a job can do if it misbehaves."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ApprovalLevel(str, enum.Enum):
    """Approval gate derived from risk."""
    GREEN = "green"    # Auto-execute
    YELLOW = "yellow"  # Execute, notify user
    RED = "red"        # Manual approval required


class JobStatus(str, enum.Enum):
    """Job lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"      # A dependency failed
    APPROVED = "approved"    # Red job unlocked by a human
    REJECTED = "rejected"    # Terminal, carries the reason


class JobType(str, enum.Enum):
    """Kinds of work the night supervisor knows how to run."""
    CONTEXT_REFRESH = "context_refresh"
    WEB_RESEARCH = "web_research"
    IDEA_EXPLORATION = "idea_exploration"
    IDEA_CONSOLIDATION = "idea_consolidation"
    PROJECT_PLAN = "project_plan"
    CODE_PROPOSAL = "code_proposal"
    CODE_VERIFY = "code_verify"
    EXECUTE_CHANGE = "execute_change"
    NOTIFY_USER = "notify_user"
    MORNING_BRIEFING = "morning_briefing"


class NightPhase(str, enum.Enum):
    """Phases of one night session."""
    IDLE = "idle"
    INGESTION = "ingestion"
    DEEP_WORK = "deep_work"
    SYNTHESIS = "synthesis"
    BRIEFING = "briefing"


# ==========================================================================
# Executor Enums
# ==========================================================================

class ExecutorType(str, enum.Enum):
    """External CLI agents the engine can drive."""
    CLAUDE = "claude"
    GEMINI = "gemini-cli"
    CODEX = "codex"
    KIMI = "kimi"


class TaskType(str, enum.Enum):
    """Routing categories for executor selection."""
    DISCOVERY = "discovery"
    LONG_CONTEXT = "long_context"
    CODE_CHANGE = "code_change"
    VERIFICATION = "verification"
    BATCH = "batch"
    GENERAL = "general"


# ==========================================================================
# Overnight Enums
# ==========================================================================

class OvernightTaskType(str, enum.Enum):
    """Ad-hoc task pipelines."""
    PROTOTYPE_WORK = "prototype_work"
    RESEARCH_DIVE = "research_dive"


class OvernightTaskStatus(str, enum.Enum):
    """Overnight task lifecycle."""
    QUEUED = "queued"
    CLARIFYING = "clarifying"
    PLANNING = "planning"
    EXECUTING = "executing"
    SYNTHESIZING = "synthesizing"
    READY = "ready"          # Options waiting for the user
    PRESENTED = "presented"
    SELECTED = "selected"
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"
    EXPIRED = "expired"


class IterationStatus(str, enum.Enum):
    """Status of one approach iteration."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ApproachLabel(str, enum.Enum):
    """Labels of the three competing approaches."""
    A = "A"
    B = "B"
    C = "C"


class ApproachName(str, enum.Enum):
    """Names of the three competing approaches."""
    CONSERVATIVE = "Conservative"
    INNOVATIVE = "Innovative"
    PRAGMATIC = "Pragmatic"


APPROACH_NAMES: dict[ApproachLabel, ApproachName] = {
    ApproachLabel.A: ApproachName.CONSERVATIVE,
    ApproachLabel.B: ApproachName.INNOVATIVE,
    ApproachLabel.C: ApproachName.PRAGMATIC,
}


class MilestoneType(str, enum.Enum):
    """Checkpoints reported while an overnight task runs."""
    QUEUED = "queued"
    STARTED = "started"
    PLANNING = "planning"
    ITERATION_START = "iteration_start"
    ITERATION_COMPLETE = "iteration_complete"
    SYNTHESIS = "synthesis"
    READY = "ready"
    SELECTED = "selected"
    APPLIED = "applied"
    FAILED = "failed"


class QueryCategory(str, enum.Enum):
    """Research query categories."""
    WEB = "web"
    DOCS = "docs"
    CODE = "code"
    ACADEMIC = "academic"


class QueryPriority(str, enum.Enum):
    """Harvest tiers, run strictly in this order."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# ==========================================================================
# Proposal Enums
# ==========================================================================

class ProposalStage(str, enum.Enum):
    """Proposal lifecycle stage."""
    IDEA = "idea"
    RESEARCH = "research"
    PLAN = "plan"
    ARCHIVED = "archived"    # Terminal
    REJECTED = "rejected"    # Terminal


class ApprovalStatus(str, enum.Enum):
    """Human decision on a proposal."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SNOOZED = "snoozed"


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ==========================================================================
# Models
# ==========================================================================

class OvernightTask(Base, TimestampMixin):
    """
    An ad-hoc unit of work processed through a fixed multi-phase pipeline.

    Exclusively owns its iterations and milestones.
    """

    __tablename__ = "overnight_tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    task_type: Mapped[OvernightTaskType] = mapped_column(
        Enum(OvernightTaskType),
        nullable=False,
    )
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    constraints: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    status: Mapped[OvernightTaskStatus] = mapped_column(
        Enum(OvernightTaskStatus),
        default=OvernightTaskStatus.QUEUED,
        index=True,
        nullable=False,
    )
    source_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    intent_confidence: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Where the prototype copies its source from, if any
    project_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    artifacts: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    findings: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    iterations: Mapped[list["OvernightIteration"]] = relationship(
        back_populates="task",
        cascade="all, delete-orphan",
        order_by="OvernightIteration.label",
    )
    milestones: Mapped[list["OvernightMilestone"]] = relationship(
        back_populates="task",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<OvernightTask {self.id[:8]} {self.task_type.value} {self.status.value}>"


class OvernightIteration(Base, TimestampMixin):
    """
    One labelled approach within a task.

    References (never owns) the executor and workspace used to produce it.
    """

    __tablename__ = "overnight_iterations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    task_id: Mapped[str] = mapped_column(
        ForeignKey("overnight_tasks.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    label: Mapped[ApproachLabel] = mapped_column(Enum(ApproachLabel), nullable=False)
    approach_name: Mapped[ApproachName] = mapped_column(Enum(ApproachName), nullable=False)
    executor: Mapped[str] = mapped_column(String(32), nullable=False)
    strategy: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[IterationStatus] = mapped_column(
        Enum(IterationStatus),
        default=IterationStatus.PENDING,
        nullable=False,
    )
    output: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    workspace_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    artifacts: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    task: Mapped["OvernightTask"] = relationship(back_populates="iterations")


class OvernightMilestone(Base):
    """Checkpoint record for an overnight task."""

    __tablename__ = "overnight_milestones"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    task_id: Mapped[str] = mapped_column(
        ForeignKey("overnight_tasks.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    milestone_type: Mapped[MilestoneType] = mapped_column(Enum(MilestoneType), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    task: Mapped["OvernightTask"] = relationship(back_populates="milestones")


class MorningChoice(Base, TimestampMixin):
    """Ranked options presented to the user for one task."""

    __tablename__ = "morning_choices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    task_id: Mapped[str] = mapped_column(
        ForeignKey("overnight_tasks.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    options: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    recommendation: Mapped[Optional[str]] = mapped_column(String(1), nullable=True)
    recommendation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    selected_label: Mapped[Optional[str]] = mapped_column(String(1), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class Proposal(Base, TimestampMixin):
    """Discovered or queued work moving through the approval lifecycle."""

    __tablename__ = "proposals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    stage: Mapped[ProposalStage] = mapped_column(
        Enum(ProposalStage),
        default=ProposalStage.IDEA,
        index=True,
        nullable=False,
    )
    risk: Mapped[RiskLevel] = mapped_column(
        Enum(RiskLevel),
        default=RiskLevel.LOW,
        nullable=False,
    )
    approval_status: Mapped[ApprovalStatus] = mapped_column(
        Enum(ApprovalStatus),
        default=ApprovalStatus.PENDING,
        nullable=False,
    )
    target_project: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    source_job_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    snoozed_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Proposal {self.id[:8]} {self.stage.value} {self.approval_status.value}>"
