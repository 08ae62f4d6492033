"""
Night Supervisor Tests
======================

Session sequencing, gating of red jobs, fallbacks and cleanup.
"""

import asyncio
import json
from datetime import date

import pytest

from conftest import FakeRouter, make_result
from nightshift.core.executors.errors import RunOutcome
from nightshift.core.models import (
    ExecutorType,
    JobStatus,
    JobType,
    NightPhase,
    OvernightTaskStatus,
    OvernightTaskType,
    ProposalStage,
)
from nightshift.core.night.context import ContextPack
from nightshift.core.night.supervisor import NightSupervisor, SupervisorBusyError
from nightshift.core.notifications import LoggingNotificationSink


PLAN = json.dumps({
    "summary": "Storage night",
    "maintenance_tasks": [{"id": "m1", "task": "idea_consolidation", "priority": "high"}],
    "research_tasks": [{"id": "r1", "query": "sqlite wal tuning", "priority": "medium"}],
    "code_proposals": [
        {"id": "p1", "description": "add retry to webhook sink", "target_project": "nightshift", "risk": "medium"},
        {"id": "p2", "description": "rewrite storage layer", "target_project": "nightshift", "risk": "high"},
    ],
    "priority_actions": ["review proposals"],
})


class StaticContext:
    """Context provider with a fixed pack; optionally waits on a gate or fails."""

    def __init__(self, gate: asyncio.Event = None, error: Exception = None):
        self.gate = gate
        self.error = error
        self.calls = 0

    async def build_context_pack(self) -> ContextPack:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return ContextPack(compiled="# Context\nnotes", sections={"daily_log": "worked on storage"})


def night_handler(plan=PLAN, briefing="# Briefing\nAll quiet."):
    def handler(executor, prompt, options):
        if prompt.startswith("You are the Night Supervisor"):
            return plan
        if prompt.startswith("Write tonight's morning briefing"):
            return briefing
        if prompt.startswith("You are expanding"):
            return "no idea"
        if prompt.startswith("You are synthesizing"):
            return "still no idea"
        if executor == ExecutorType.CODEX:
            return "CONSISTENT"
        return f"done by {executor.value}: " + "insight " * 20
    return handler


def make_supervisor(config, store, router, context=None, notifier=None):
    return NightSupervisor(
        config,
        router,
        context or StaticContext(),
        store,
        notifier=notifier if notifier is not None else LoggingNotificationSink(),
    )


def channels(sink: LoggingNotificationSink) -> list[str]:
    return [channel for channel, _ in sink.sent]


# ==========================================================================
# Full Session
# ==========================================================================

class TestSession:
    """A normal night."""

    async def test_full_night(self, test_settings, file_store):
        router = FakeRouter(night_handler())
        sink = LoggingNotificationSink()
        supervisor = make_supervisor(test_settings, file_store, router, notifier=sink)

        session = await supervisor.run()

        assert session.error is None
        assert session.phase == NightPhase.BRIEFING
        assert session.plan_summary == "Storage night"
        assert session.jobs_completed == 3
        assert session.jobs_failed == 0
        assert router.resumed == 1

        by_type = {}
        for job in session.jobs:
            by_type.setdefault(job.type, []).append(job)
        consolidation = by_type[JobType.IDEA_CONSOLIDATION][0]
        assert consolidation is session.jobs[0]
        assert consolidation.status == JobStatus.COMPLETED
        assert by_type[JobType.WEB_RESEARCH][0].status == JobStatus.COMPLETED
        yellow, red = by_type[JobType.CODE_PROPOSAL]
        assert yellow.status == JobStatus.COMPLETED
        assert red.status == JobStatus.PENDING

        output = test_settings.output_path
        assert (output / "handoffs" / "morning_briefing.md").read_text() == "# Briefing\nAll quiet."
        assert (output / f"plan_{date.today().isoformat()}.json").exists()
        assert len(list((output / "research").glob("*.md"))) == 1
        assert len(list((output / "drafts").glob("*.plan"))) == 1

        state = json.loads((output / "state.json").read_text())
        assert state["session"]["jobs_completed"] == 3
        assert len(state["job_queue"]["jobs"]) == 4

        sent = channels(sink)
        assert sent.count("approvals") == 1
        assert "jobs" in sent
        assert sent[-1] == "briefing"
        assert red.id in dict(sink.sent)["approvals"]

    async def test_consolidation_runs_in_memory_dir(self, test_settings, file_store):
        router = FakeRouter(night_handler())
        supervisor = make_supervisor(test_settings, file_store, router)

        await supervisor.run()

        call = next(c for c in router.calls if c["prompt"].startswith("You are consolidating"))
        assert call["options"].cwd == str(test_settings.memory_path)
        assert call["executor"] == ExecutorType.GEMINI
        assert call["fallbacks"] == [ExecutorType.KIMI]

    async def test_yellow_proposal_recorded(self, test_settings, file_store):
        supervisor = make_supervisor(test_settings, file_store, FakeRouter(night_handler()))

        session = await supervisor.run()

        proposals = await file_store.list_proposals()
        assert [p.title for p in proposals] == ["add retry to webhook sink"]
        assert proposals[0].stage == ProposalStage.IDEA
        assert len(session.proposals) == 1

    async def test_yellow_job_always_notifies(self, test_settings, file_store):
        sink = LoggingNotificationSink()
        supervisor = make_supervisor(test_settings, file_store, FakeRouter(night_handler()), notifier=sink)

        await supervisor.run()

        job_messages = [message for channel, message in sink.sent if channel == "jobs"]
        assert len(job_messages) == 1
        assert job_messages[0].startswith("🟡 Job Executed")
        assert "add retry to webhook sink" in job_messages[0]
        assert "✅ done" in job_messages[0]

    async def test_red_job_never_runs(self, test_settings, file_store):
        router = FakeRouter(night_handler())
        supervisor = make_supervisor(test_settings, file_store, router)

        await supervisor.run()

        red = next(j for j in supervisor.queue.jobs if j.risk.value == "high")
        assert red.status == JobStatus.PENDING
        assert red.started_at is None
        assert supervisor.queue.get_pending_approvals() == [red]
        assert red.id in supervisor.get_status()["pending_approvals"]

    async def test_max_jobs_cap(self, test_settings, file_store):
        config = test_settings.model_copy(update={"NIGHT_MAX_JOBS": 1})
        supervisor = make_supervisor(config, file_store, FakeRouter(night_handler()))

        session = await supervisor.run()

        assert session.jobs_completed == 1
        assert session.jobs[0].status == JobStatus.COMPLETED
        assert all(j.status == JobStatus.PENDING for j in session.jobs[1:])


# ==========================================================================
# Fallbacks
# ==========================================================================

class TestFallbacks:
    """Unusable executor output never sinks the night."""

    async def test_planner_garbage_still_consolidates(self, test_settings, file_store):
        router = FakeRouter(night_handler(plan="Sorry, I cannot help with planning tonight."))
        supervisor = make_supervisor(test_settings, file_store, router)

        session = await supervisor.run()

        assert session.error is None
        assert [j.type for j in session.jobs] == [JobType.IDEA_CONSOLIDATION]
        assert session.jobs_completed == 1

    async def test_planner_failure_still_consolidates(self, test_settings, file_store):
        def handler(executor, prompt, options):
            if prompt.startswith("You are the Night Supervisor"):
                return make_result("quota", outcome=RunOutcome.ACCOUNTS_EXHAUSTED)
            return night_handler()(executor, prompt, options)

        supervisor = make_supervisor(test_settings, file_store, FakeRouter(handler))

        session = await supervisor.run()

        assert session.plan_summary.startswith("Planning failed")
        assert [j.type for j in session.jobs] == [JobType.IDEA_CONSOLIDATION]

    async def test_briefing_fallback(self, test_settings, file_store):
        def handler(executor, prompt, options):
            if executor == ExecutorType.CLAUDE:
                return make_result("usage limit reached", outcome=RunOutcome.QUOTA_EXHAUSTED)
            return night_handler()(executor, prompt, options)

        supervisor = make_supervisor(test_settings, file_store, FakeRouter(handler))

        session = await supervisor.run()

        assert session.briefing_fallback
        briefing = (test_settings.output_path / "handoffs" / "morning_briefing.md").read_text()
        assert briefing.startswith("## Morning Briefing")
        assert "- Jobs completed: 3" in briefing
        assert "- Pending approval: 1" in briefing

    async def test_briefing_exception_falls_back(self, test_settings, file_store):
        def handler(executor, prompt, options):
            if prompt.startswith("Write tonight's morning briefing"):
                return RuntimeError("router exploded")
            return night_handler()(executor, prompt, options)

        supervisor = make_supervisor(test_settings, file_store, FakeRouter(handler))

        session = await supervisor.run()

        assert session.error is None
        assert session.briefing_fallback

    async def test_failed_job_recorded(self, test_settings, file_store):
        def handler(executor, prompt, options):
            if prompt.startswith("Research the following topic"):
                return make_result("segfault", outcome=RunOutcome.FAILED)
            return night_handler()(executor, prompt, options)

        supervisor = make_supervisor(test_settings, file_store, FakeRouter(handler))

        session = await supervisor.run()

        assert session.jobs_failed == 1
        # Both proposals depended on the failed research job
        proposals = [j for j in session.jobs if j.type == JobType.CODE_PROPOSAL]
        assert all(j.status == JobStatus.BLOCKED for j in proposals)


# ==========================================================================
# Lifecycle
# ==========================================================================

class TestLifecycle:
    """Re-entry, errors, dry runs and shutdown."""

    async def test_reentry_rejected(self, test_settings, file_store):
        gate = asyncio.Event()
        supervisor = make_supervisor(test_settings, file_store, FakeRouter(night_handler()), StaticContext(gate=gate))

        running = asyncio.create_task(supervisor.run(dry_run=True))
        await asyncio.sleep(0)
        assert supervisor.is_running
        assert supervisor.get_status()["session"]["dry_run"] is True

        with pytest.raises(SupervisorBusyError):
            await supervisor.run()

        gate.set()
        session = await running
        assert session.error is None
        assert not supervisor.is_running

    async def test_error_clears_running_flag(self, test_settings, file_store):
        sink = LoggingNotificationSink()
        supervisor = make_supervisor(
            test_settings,
            file_store,
            FakeRouter(night_handler()),
            StaticContext(error=RuntimeError("memory dir unreadable")),
            notifier=sink,
        )

        session = await supervisor.run()

        assert session.error == "memory dir unreadable"
        assert not supervisor.is_running
        assert supervisor.last_session is session
        assert channels(sink) == ["alerts"]
        state = json.loads((test_settings.output_path / "state.json").read_text())
        assert state["session"]["error"] == "memory dir unreadable"

        # A fresh run is allowed afterwards
        supervisor.context_provider = StaticContext()
        assert (await supervisor.run()).error is None

    async def test_dry_run(self, test_settings, file_store):
        task = await file_store.create_task(OvernightTaskType.RESEARCH_DIVE, "vector databases")
        router = FakeRouter(night_handler())
        supervisor = make_supervisor(test_settings, file_store, router)

        session = await supervisor.run(dry_run=True)

        assert len(router.calls) == 1
        assert router.calls[0]["options"].sandbox is True
        assert all(j.status == JobStatus.PENDING for j in session.jobs)
        assert session.findings == ["Dry run: 4 jobs planned"]
        assert (test_settings.output_path / f"plan_{date.today().isoformat()}.json").exists()
        assert (test_settings.output_path / "state.json").exists()
        assert not (test_settings.output_path / "handoffs" / "morning_briefing.md").exists()
        assert (await file_store.get_task(task.id)).status == OvernightTaskStatus.QUEUED

    async def test_shutdown_cancels_router(self, test_settings, file_store):
        router = FakeRouter(night_handler())
        supervisor = make_supervisor(test_settings, file_store, router)

        supervisor.shutdown()

        assert router.cancelled == 1

    async def test_status_when_idle(self, test_settings, file_store):
        supervisor = make_supervisor(test_settings, file_store, FakeRouter(night_handler()))

        status = supervisor.get_status()

        assert status["is_running"] is False
        assert status["session"] is None
        assert status["job_stats"]["total"] == 0


# ==========================================================================
# Overnight Tasks
# ==========================================================================

class TestOvernightTasks:
    """Queued ad-hoc tasks run before the nightly agenda."""

    async def test_research_task_processed_first(self, test_settings, file_store):
        task = await file_store.create_task(OvernightTaskType.RESEARCH_DIVE, "vector databases")
        router = FakeRouter(night_handler())
        sink = LoggingNotificationSink()
        supervisor = make_supervisor(test_settings, file_store, router, notifier=sink)

        session = await supervisor.run()

        assert router.calls[0]["prompt"].startswith("You are expanding")
        assert session.overnight_results == [{
            "task_id": task.id,
            "task_type": "research_dive",
            "subject": "vector databases",
            "success": True,
            "error": None,
        }]
        assert (await file_store.get_task(task.id)).status == OvernightTaskStatus.READY
        assert (await file_store.get_morning_choice(task.id)) is not None
        assert "overnight" in channels(sink)
        assert (test_settings.output_path / "overnight" / task.id / "summary.md").exists()

    async def test_overnight_budget_exceeded(self, test_settings, file_store):
        task = await file_store.create_task(OvernightTaskType.RESEARCH_DIVE, "slow topic")
        config = test_settings.model_copy(update={"OVERNIGHT_TOTAL_TIMEOUT_SECONDS": 0.05})

        async def slow(executor, prompt, options):
            await asyncio.sleep(1)
            return "late"

        def handler(executor, prompt, options):
            if prompt.startswith("You are expanding"):
                return slow(executor, prompt, options)
            return night_handler()(executor, prompt, options)

        supervisor = make_supervisor(config, file_store, FakeRouter(handler))

        session = await supervisor.run()

        assert session.error is None
        assert session.overnight_results[0]["success"] is False
        assert "budget" in session.overnight_results[0]["error"]
        stored = await file_store.get_task(task.id)
        assert stored.status == OvernightTaskStatus.FAILED
