"""
Night Supervisor
================

Top-level sequencer for one night session:

    overnight tasks -> ingestion -> deep work -> synthesis -> briefing

1. Queued ad-hoc overnight tasks run first so user requests are not
   starved by the nightly agenda.
2. Ingestion builds the context pack.
3. A planning executor returns a JSON plan; unusable output becomes an
   empty plan.
4. The plan becomes jobs, consolidation first.
5. Jobs run one at a time until none are runnable, NIGHT_MAX_JOBS ran or
   NIGHT_TOTAL_TIMEOUT_SECONDS elapsed.
6. A briefing is written by an executor, or from a template when that fails.
7. state.json is written and the running flag cleared no matter what.

Only one run() at a time per instance; SupervisorLock keeps other
processes out.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

import structlog
from sqlalchemy.exc import SQLAlchemyError

from nightshift.core.config import Settings
from nightshift.core.executors.adapter import ExecuteOptions, ExecutionResult
from nightshift.core.executors.router import ExecutorRouter
from nightshift.core.models import (
    ApprovalLevel,
    ExecutorType,
    JobType,
    MilestoneType,
    NightPhase,
    OvernightTask,
    OvernightTaskStatus,
    OvernightTaskType,
    TaskType,
)
from nightshift.core.night.context import ContextPack, ContextProvider
from nightshift.core.night.jobs import Job, JobQueue, JobResult, format_jobs_for_briefing
from nightshift.core.night.proposals import ProposalService
from nightshift.core.notifications import (
    NotificationChannel,
    NotificationSink,
    NotificationTemplates,
    notify_safely,
)
from nightshift.core.overnight.base import BaseOrchestrator, OrchestratorResult
from nightshift.core.overnight.presenter import MorningPresenter
from nightshift.core.overnight.prototype import PrototypeOrchestrator
from nightshift.core.overnight.research import ResearchOrchestrator
from nightshift.core.overnight.store import SqlTaskStore
from nightshift.core.overnight.workspace import WorkspaceManager
from nightshift.core.schemas import (
    ChangePayload,
    IdeaPayload,
    MessagePayload,
    NightPlan,
    ProposalPayload,
    ResearchPayload,
    parse_plan,
)

logger = structlog.get_logger()

# Job types that are a single executor call, and how they are routed
JOB_ROUTES: dict[JobType, TaskType] = {
    JobType.WEB_RESEARCH: TaskType.DISCOVERY,
    JobType.IDEA_EXPLORATION: TaskType.DISCOVERY,
    JobType.IDEA_CONSOLIDATION: TaskType.GENERAL,
    JobType.PROJECT_PLAN: TaskType.LONG_CONTEXT,
    JobType.CODE_VERIFY: TaskType.VERIFICATION,
    JobType.EXECUTE_CHANGE: TaskType.CODE_CHANGE,
}

OVERNIGHT_BATCH_LIMIT = 10

PLAN_PROMPT = """You are the Night Supervisor. Analyze the context and create a plan for tonight's autonomous work.

Focus on:
1. Idea consolidation (always include): deduplicate ideas.md, merge similar entries, archive stale drafts
2. Research tasks that would provide value (web searches, documentation lookups)
3. Ideas worth exploring further (pick 1-2 high-value ones)
4. Code improvements or proposals (be conservative, these require verification)
5. Priority actions for tomorrow

Return a JSON plan with this structure:
{
  "summary": "Brief description of tonight's focus",
  "maintenance_tasks": [{"id": "m1", "task": "idea_consolidation", "priority": "high"}],
  "research_tasks": [{"id": "r1", "query": "...", "priority": "medium"}],
  "ideas_to_explore": [{"id": "i1", "topic": "...", "connection_to_projects": "..."}],
  "code_proposals": [{"id": "p1", "description": "...", "target_project": "...", "risk": "medium"}],
  "priority_actions": ["..."]
}

Be selective, quality over quantity."""

CONSOLIDATION_PROMPT = """You are consolidating the ideas file. Read ideas.md in the working directory and:

1. Find ideas about the same topic
2. Merge duplicates, keeping the most comprehensive entry
3. Archive ideas older than 14 days that are still drafts

Edit the file in place, then output a summary:
- Duplicates merged: X
- Stale ideas archived: Y"""


class SupervisorBusyError(Exception):
    """run() called while a session is already in progress."""
    pass


@dataclass
class NightSession:
    """State of one night run."""
    id: str = field(default_factory=lambda: f"night_{uuid4().hex[:8]}")
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    ended_at: Optional[datetime] = None
    phase: NightPhase = NightPhase.IDLE
    dry_run: bool = False
    plan_summary: str = ""
    planner_session_id: Optional[str] = None
    jobs: list[Job] = field(default_factory=list)
    findings: list[str] = field(default_factory=list)
    proposals: list[str] = field(default_factory=list)
    overnight_results: list[dict[str, Any]] = field(default_factory=list)
    jobs_completed: int = 0
    jobs_failed: int = 0
    briefing: Optional[str] = None
    briefing_fallback: bool = False
    error: Optional[str] = None
    total_duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "phase": self.phase.value,
            "dry_run": self.dry_run,
            "plan_summary": self.plan_summary,
            "planner_session_id": self.planner_session_id,
            "job_ids": [job.id for job in self.jobs],
            "findings": self.findings,
            "proposals": self.proposals,
            "overnight_results": self.overnight_results,
            "jobs_completed": self.jobs_completed,
            "jobs_failed": self.jobs_failed,
            "briefing_fallback": self.briefing_fallback,
            "error": self.error,
            "total_duration_ms": self.total_duration_ms,
        }


def _job_result(result: ExecutionResult, started: float, artifacts: Optional[list[str]] = None) -> JobResult:
    return JobResult(
        success=result.success,
        output=result.output,
        error=None if result.success else f"{result.outcome.value}: {result.output[-300:]}",
        artifacts=artifacts or [],
        duration_ms=int((time.monotonic() - started) * 1000),
    )


class NightSupervisor:
    """
    Runs night sessions.

    All collaborators are injected; running state lives on the instance so
    independent supervisors can coexist (in tests, for example).
    """

    def __init__(
        self,
        config: Settings,
        router: ExecutorRouter,
        context_provider: ContextProvider,
        store: SqlTaskStore,
        notifier: Optional[NotificationSink] = None,
        output_dir: Optional[Path] = None,
        workspace_manager: Optional[WorkspaceManager] = None,
        presenter: Optional[MorningPresenter] = None,
    ):
        self.config = config
        self.router = router
        self.context_provider = context_provider
        self.store = store
        self.notifier = notifier
        self.output_dir = Path(output_dir) if output_dir is not None else config.output_path
        self.workspace_manager = workspace_manager or WorkspaceManager(
            config.workspaces_path,
            retention_days=config.WORKSPACE_RETENTION_DAYS,
        )
        self.presenter = presenter or MorningPresenter(store, expiration_hours=config.CHOICE_EXPIRATION_HOURS)
        self.proposals = ProposalService(store)

        self.is_running = False
        self.session: Optional[NightSession] = None
        self.last_session: Optional[NightSession] = None
        self.queue = JobQueue(auto_approve_green=config.NIGHT_AUTO_APPROVE_GREEN)

    # ==========================================================================
    # Session
    # ==========================================================================

    async def run(self, dry_run: bool = False) -> NightSession:
        """
        Run one night session.

        Args:
            dry_run: Plan and persist, but run no overnight tasks or jobs

        Raises:
            SupervisorBusyError: If a session is already running
        """
        if self.is_running:
            raise SupervisorBusyError("Night supervisor is already running")

        self.is_running = True
        started = time.monotonic()
        self.router.resume()
        self.queue = JobQueue(auto_approve_green=self.config.NIGHT_AUTO_APPROVE_GREEN)
        session = NightSession(dry_run=dry_run)
        self.session = session
        logger.info("Night session starting", session_id=session.id, dry_run=dry_run)

        try:
            self._ensure_directories()

            if not dry_run:
                await self.process_overnight_tasks()

            self._set_phase(NightPhase.INGESTION)
            pack = await self.context_provider.build_context_pack()

            self._set_phase(NightPhase.DEEP_WORK)
            plan = await self.generate_plan(pack)
            session.plan_summary = plan.summary
            session.jobs = self.queue.create_jobs_from_plan(plan)
            self._save_plan(plan)

            if dry_run:
                logger.info("Dry run, skipping job execution", jobs=len(session.jobs))
                session.findings.append(f"Dry run: {len(session.jobs)} jobs planned")
            else:
                await self.execute_jobs()
                self._set_phase(NightPhase.SYNTHESIS)
                await self.generate_briefing(pack)
                self._set_phase(NightPhase.BRIEFING)

        except Exception as e:
            logger.error("Night session error", session_id=session.id, error=str(e), exc_info=True)
            session.error = str(e)
            session.findings.append(f"Error: {e}")
            await notify_safely(
                self.notifier,
                NotificationChannel.ALERTS.value,
                NotificationTemplates.session_failed(session.id, str(e)).render(),
            )
        finally:
            session.jobs = self.queue.jobs
            session.ended_at = datetime.now(timezone.utc)
            session.total_duration_ms = int((time.monotonic() - started) * 1000)
            self._save_state(session)
            self.last_session = session
            self.session = None
            self.is_running = False
            logger.info(
                "Night session ended",
                session_id=session.id,
                completed=session.jobs_completed,
                failed=session.jobs_failed,
                duration_ms=session.total_duration_ms,
            )

        return session

    def _set_phase(self, phase: NightPhase) -> None:
        if self.session is not None:
            self.session.phase = phase
            logger.info("Phase transition", session_id=self.session.id, phase=phase.value)

    def shutdown(self) -> int:
        """Cancel every in-flight executor invocation."""
        logger.warning("Night supervisor shutting down", running=self.is_running)
        return self.router.cancel_all()

    def get_status(self) -> dict[str, Any]:
        session = self.session or self.last_session
        return {
            "is_running": self.is_running,
            "session": session.to_dict() if session else None,
            "job_stats": self.queue.get_stats(),
            "pending_approvals": [job.id for job in self.queue.get_pending_approvals()],
            "router": self.router.status(),
        }

    # ==========================================================================
    # Overnight Tasks
    # ==========================================================================

    async def process_overnight_tasks(self) -> list[OrchestratorResult]:
        tasks = await self.store.get_queued_tasks(limit=OVERNIGHT_BATCH_LIMIT)
        if not tasks:
            return []

        logger.info("Processing overnight tasks", count=len(tasks))
        self.workspace_manager.cleanup_old()

        results = []
        for task in tasks:
            result = await self._run_overnight_task(task)
            results.append(result)
            if self.session is not None:
                self.session.overnight_results.append({
                    "task_id": task.id,
                    "task_type": task.task_type.value,
                    "subject": task.subject,
                    "success": result.success,
                    "error": result.error,
                })
                status = "ready" if result.success else f"failed ({result.error})"
                self.session.findings.append(f"Overnight {task.task_type.value}: {task.subject} - {status}")
        return results

    def _orchestrator_for(self, task: OvernightTask) -> BaseOrchestrator:
        common = dict(
            task=task,
            store=self.store,
            router=self.router,
            output_dir=self.output_dir,
            on_milestone=self._on_milestone,
            job_timeout=self.config.OVERNIGHT_JOB_TIMEOUT_SECONDS,
            presenter=self.presenter,
        )
        if task.task_type == OvernightTaskType.PROTOTYPE_WORK:
            return PrototypeOrchestrator(workspace_manager=self.workspace_manager, **common)
        return ResearchOrchestrator(**common)

    async def _run_overnight_task(self, task: OvernightTask) -> OrchestratorResult:
        orchestrator = self._orchestrator_for(task)
        budget = self.config.OVERNIGHT_TOTAL_TIMEOUT_SECONDS
        try:
            return await asyncio.wait_for(orchestrator.execute(), timeout=budget)
        except asyncio.TimeoutError:
            error = f"Overnight task exceeded {budget:.0f}s budget"
            logger.error("Overnight task timed out", task_id=task.id, budget=budget)
            await self.store.update_task_status(task.id, OvernightTaskStatus.FAILED, error=error)
            await self.store.create_milestone(task.id, MilestoneType.FAILED, error)
            return OrchestratorResult(success=False, task_id=task.id, error=error)

    async def _on_milestone(self, task: OvernightTask, milestone: MilestoneType, message: str) -> None:
        notification = NotificationTemplates.milestone(task.id, task.subject, milestone.value, message)
        await notify_safely(self.notifier, NotificationChannel.OVERNIGHT.value, notification.render())

    # ==========================================================================
    # Planning
    # ==========================================================================

    async def generate_plan(self, pack: ContextPack) -> NightPlan:
        """Ask the planning executor for tonight's plan; never raises on bad output."""
        options = ExecuteOptions(
            timeout=self.config.NIGHT_JOB_TIMEOUT_SECONDS,
            context=pack.compiled,
            sandbox=True,
        )
        result = await self.router.run(ExecutorType.GEMINI, PLAN_PROMPT, options)
        if self.session is not None:
            self.session.planner_session_id = result.resumable_session_id

        if not result.success:
            logger.error("Plan generation failed", outcome=result.outcome.value, output=result.output[:200])
            return NightPlan.empty(f"Planning failed: {result.outcome.value}")

        plan = parse_plan(
            result.output,
            max_research=self.config.NIGHT_MAX_RESEARCH_TASKS,
            max_ideas=self.config.NIGHT_MAX_IDEAS,
            max_proposals=self.config.NIGHT_MAX_CODE_PROPOSALS,
        )
        logger.info(
            "Night plan generated",
            research=len(plan.research_tasks),
            ideas=len(plan.ideas_to_explore),
            proposals=len(plan.code_proposals),
        )
        return plan

    # ==========================================================================
    # Job Execution
    # ==========================================================================

    async def execute_jobs(self) -> None:
        """Run runnable jobs sequentially within the session budgets."""
        await self._request_approvals()

        deadline = time.monotonic() + self.config.NIGHT_TOTAL_TIMEOUT_SECONDS
        executed = 0
        while executed < self.config.NIGHT_MAX_JOBS:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning("Night time budget exhausted", executed=executed)
                self._finding("Time budget exhausted before all jobs ran")
                break

            job = self.queue.get_next_executable_job()
            if job is None:
                break

            self.queue.start_job(job.id)
            logger.info("Executing job", job_id=job.id, type=job.type.value, job_name=job.name)
            try:
                result = await asyncio.wait_for(self.execute_job(job), timeout=remaining)
            except asyncio.TimeoutError:
                result = JobResult(success=False, error="Night time budget exhausted")
            except Exception as e:
                logger.error("Job raised", job_id=job.id, error=str(e), exc_info=True)
                result = JobResult(success=False, error=str(e))

            self.queue.set_job_result(job.id, result)
            executed += 1
            await self._after_job(job, result)

        logger.info(
            "Job execution finished",
            executed=executed,
            completed=self.session.jobs_completed if self.session else 0,
            failed=self.session.jobs_failed if self.session else 0,
        )

    async def _request_approvals(self) -> None:
        for job in self.queue.get_pending_approvals():
            notification = NotificationTemplates.approval_required(job.id, job.name, job.description)
            await notify_safely(self.notifier, NotificationChannel.APPROVALS.value, notification.render())

    async def _after_job(self, job: Job, result: JobResult) -> None:
        if self.session is not None:
            if result.success:
                self.session.jobs_completed += 1
                self._finding(f"✅ {job.name}: {result.output[:200]}")
            else:
                self.session.jobs_failed += 1
                self._finding(f"❌ {job.name}: {result.error}")

        if job.approval == ApprovalLevel.YELLOW:
            notification = NotificationTemplates.yellow_job_executed(job.id, job.name, result.success, result.error)
            await notify_safely(self.notifier, NotificationChannel.JOBS.value, notification.render())

        if job.type == JobType.CODE_PROPOSAL and result.success and isinstance(job.payload, ProposalPayload):
            try:
                await self.proposals.create(
                    title=job.payload.description,
                    description=result.output,
                    risk=job.risk,
                    target_project=job.payload.target_project,
                    source_job_id=job.id,
                )
            except SQLAlchemyError as e:
                logger.error("Failed to record proposal", job_id=job.id, error=str(e))

    def _finding(self, text: str) -> None:
        if self.session is not None:
            self.session.findings.append(text)

    async def execute_job(self, job: Job) -> JobResult:
        """Execute one job; expected failures come back as JobResult(success=False)."""
        started = time.monotonic()
        payload = job.payload

        if job.type == JobType.CODE_PROPOSAL and isinstance(payload, ProposalPayload):
            path = self._save_proposal(job, payload)
            if self.session is not None:
                self.session.proposals.append(str(path))
            return JobResult(
                success=True,
                output=f"Proposal saved to {path}",
                artifacts=[str(path)],
                duration_ms=int((time.monotonic() - started) * 1000),
            )

        if job.type == JobType.CONTEXT_REFRESH:
            pack = await self.context_provider.build_context_pack()
            return JobResult(success=True, output=f"Context refreshed ({len(pack.compiled)} chars)")

        if job.type == JobType.NOTIFY_USER:
            message = payload.message if isinstance(payload, MessagePayload) else job.description
            sent = await notify_safely(self.notifier, NotificationChannel.JOBS.value, message)
            return JobResult(success=sent, output=message, error=None if sent else "Notification not delivered")

        task_type = JOB_ROUTES.get(job.type)
        if task_type is None:
            return JobResult(success=False, error=f"Unsupported job type: {job.type.value}")

        options = ExecuteOptions(timeout=self.config.NIGHT_JOB_TIMEOUT_SECONDS)
        if job.type == JobType.IDEA_CONSOLIDATION:
            options.cwd = str(self.config.memory_path)
        elif isinstance(payload, ChangePayload) and payload.target_project:
            options.cwd = payload.target_project
        else:
            options.sandbox = True

        result = await self.router.run_task(task_type, self._job_prompt(job), options)

        artifacts: list[str] = []
        if job.type == JobType.WEB_RESEARCH and result.output:
            query = payload.query if isinstance(payload, ResearchPayload) else job.description
            artifacts.append(str(self._save_research(job, query, result.output)))
        return _job_result(result, started, artifacts)

    def _job_prompt(self, job: Job) -> str:
        payload = job.payload
        if isinstance(payload, ResearchPayload):
            return f"Research the following topic thoroughly and provide key insights:\n\n{payload.query}"
        if isinstance(payload, IdeaPayload):
            if payload.connection:
                return (
                    "Explore this idea and how it connects to the project:\n\n"
                    f"Idea: {payload.topic}\nProject: {payload.connection}"
                )
            return f"Explore this idea and identify potential applications:\n\n{payload.topic}"
        if job.type == JobType.IDEA_CONSOLIDATION:
            return CONSOLIDATION_PROMPT
        if isinstance(payload, ChangePayload):
            patch = f"\n\nApply the patch at {payload.patch_path}." if payload.patch_path else ""
            return f"Implement the following approved change:\n\n{payload.description}{patch}"
        return f"{job.name}\n\n{job.description}"

    # ==========================================================================
    # Briefing
    # ==========================================================================

    async def generate_briefing(self, pack: ContextPack) -> str:
        """Executor-written briefing, or the template when that fails in any way."""
        session = self.session
        findings = "\n".join(session.findings) if session else ""
        prompt = (
            "Write tonight's morning briefing in markdown for the user. "
            "Lead with what needs their attention (approvals, failures), then results and proposals. "
            "Keep it short.\n\n"
            f"## Findings\n{findings}\n\n"
            f"## Jobs\n{format_jobs_for_briefing(self.queue.jobs)}"
        )
        options = ExecuteOptions(
            timeout=self.config.NIGHT_JOB_TIMEOUT_SECONDS,
            context=pack.sections.get("daily_log"),
        )

        briefing: Optional[str] = None
        try:
            result = await self.router.run(ExecutorType.CLAUDE, prompt, options)
            if result.success and result.output.strip():
                briefing = result.output.strip()
            else:
                logger.warning("Briefing generation failed", outcome=result.outcome.value)
        except Exception as e:
            logger.error("Briefing generation raised", error=str(e))

        if briefing is None:
            briefing = self.fallback_briefing()
            if session is not None:
                session.briefing_fallback = True

        path = self._write(Path("handoffs") / "morning_briefing.md", briefing)
        if session is not None:
            session.briefing = briefing
            notification = NotificationTemplates.briefing_ready(str(path), session.jobs_completed, session.jobs_failed)
            await notify_safely(self.notifier, NotificationChannel.BRIEFING.value, notification.render())
        return briefing

    def fallback_briefing(self) -> str:
        stats = self.queue.get_stats()
        session = self.session
        findings = "\n".join(f"- {f}" for f in (session.findings[:5] if session else []))
        proposals = "\n".join(f"- {p}" for p in (session.proposals if session else [])) or "None"
        return (
            f"## Morning Briefing: {date.today().isoformat()}\n\n"
            "### Overnight Summary\n"
            f"- Jobs completed: {stats['completed']}\n"
            f"- Jobs failed: {stats['failed']}\n"
            f"- Jobs blocked: {stats['blocked']}\n"
            f"- Pending approval: {len(self.queue.get_pending_approvals())}\n\n"
            f"### Findings\n{findings or '- None'}\n\n"
            f"### Proposals\n{proposals}\n\n"
            "---\n"
            "*Generated by Night Supervisor*"
        )

    # ==========================================================================
    # Files
    # ==========================================================================

    def _ensure_directories(self) -> None:
        for sub in ("", "research", "drafts", "handoffs"):
            (self.output_dir / sub).mkdir(parents=True, exist_ok=True)

    def _write(self, relative: Path, content: str) -> Path:
        path = self.output_dir / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        logger.debug("File written", path=str(path))
        return path

    def _save_plan(self, plan: NightPlan) -> Path:
        return self._write(Path(f"plan_{date.today().isoformat()}.json"), plan.model_dump_json(indent=2))

    def _save_research(self, job: Job, query: str, content: str) -> Path:
        body = (
            f"# Research: {query[:100]}\n\n"
            f"**Date:** {datetime.now(timezone.utc).isoformat()}\n"
            f"**Job ID:** {job.id}\n\n"
            f"---\n\n{content}\n"
        )
        return self._write(Path("research") / f"{date.today().isoformat()}_{job.id}.md", body)

    def _save_proposal(self, job: Job, payload: ProposalPayload) -> Path:
        body = (
            "# Code Proposal\n\n"
            f"**Date:** {datetime.now(timezone.utc).isoformat()}\n"
            f"**Job ID:** {job.id}\n"
            f"**Target Project:** {payload.target_project}\n"
            f"**Risk:** {job.risk.value}\n"
            "**Status:** PENDING_VERIFICATION\n\n"
            f"## Description\n\n{payload.description}\n\n"
            "---\n"
            "*Requires verification before execution*\n"
        )
        return self._write(Path("drafts") / f"{date.today().isoformat()}_{job.id}.plan", body)

    def _save_state(self, session: NightSession) -> None:
        state = {
            "session": session.to_dict(),
            "job_queue": self.queue.to_snapshot(),
            "last_updated": datetime.now(timezone.utc).isoformat(),
        }
        try:
            self._write(Path("state.json"), json.dumps(state, indent=2, default=str))
        except OSError as e:
            logger.error("Failed to save session state", session_id=session.id, error=str(e))
