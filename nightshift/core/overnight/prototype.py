"""
Prototype Orchestrator
======================

Builds three competing implementations of one task, each by a different,
fixed executor in its own workspace:

    A  Conservative  codex   precision, established patterns
    B  Innovative    gemini  exploration, newer approaches
    C  Pragmatic     claude  balanced delivery

The approaches never fall back to another executor; diversity of outcome
comes from the executors themselves. Finished approaches are cross-scored
by an executor other than the one that built them, then ranked.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import structlog

from nightshift.core.executors.adapter import ExecuteOptions
from nightshift.core.models import (
    APPROACH_NAMES,
    ApproachLabel,
    ExecutorType,
    IterationStatus,
    MilestoneType,
    OvernightTaskStatus,
)
from nightshift.core.overnight.base import (
    BaseOrchestrator,
    IterationOutcome,
    OrchestrationError,
    OrchestratorResult,
)
from nightshift.core.overnight.presenter import DEFAULT_SCORE
from nightshift.core.overnight.workspace import WorkspaceManager
from nightshift.core.schemas import parse_strategies, parse_verdict

logger = structlog.get_logger()

UNPARSED_VERDICT_SCORE = 60.0


@dataclass(frozen=True)
class ApproachDefinition:
    label: ApproachLabel
    executor: ExecutorType
    description: str

    @property
    def name(self) -> str:
        return APPROACH_NAMES[self.label].value


APPROACH_DEFINITIONS: dict[ApproachLabel, ApproachDefinition] = {
    ApproachLabel.A: ApproachDefinition(
        ApproachLabel.A,
        ExecutorType.CODEX,
        "Minimal changes, established patterns, proven libraries. Prioritize safety and maintainability.",
    ),
    ApproachLabel.B: ApproachDefinition(
        ApproachLabel.B,
        ExecutorType.GEMINI,
        "Creative solutions, modern approaches, new patterns. Prioritize elegance and future-proofing.",
    ),
    ApproachLabel.C: ApproachDefinition(
        ApproachLabel.C,
        ExecutorType.CLAUDE,
        "Balanced trade-offs, practical implementation. Prioritize delivery and simplicity.",
    ),
}

# Validators tried in order, skipping the executor that built the approach
VALIDATOR_ORDER = (ExecutorType.CODEX, ExecutorType.CLAUDE)


class PrototypeOrchestrator(BaseOrchestrator):
    """Runs one prototype task end to end."""

    def __init__(self, *args, workspace_manager: WorkspaceManager, **kwargs):
        super().__init__(*args, **kwargs)
        self.workspace_manager = workspace_manager

    async def _run(self) -> OrchestratorResult:
        await self.set_status(OvernightTaskStatus.PLANNING)
        await self.milestone(MilestoneType.PLANNING, "Planning three approaches")
        strategies = await self.generate_strategies()

        await self.set_status(OvernightTaskStatus.EXECUTING)
        settled = await asyncio.gather(
            *(self.run_approach(APPROACH_DEFINITIONS[label], strategies[label]) for label in ApproachLabel),
            return_exceptions=True,
        )

        outcomes: list[IterationOutcome] = []
        for label, outcome in zip(ApproachLabel, settled):
            if isinstance(outcome, BaseException):
                definition = APPROACH_DEFINITIONS[label]
                logger.error("Approach crashed", task_id=self.task.id, approach=label.value, error=str(outcome))
                outcome = IterationOutcome(
                    label=label.value,
                    name=definition.name,
                    executor=definition.executor.value,
                    success=False,
                    error=str(outcome),
                )
            outcomes.append(outcome)

        completed = [o for o in outcomes if o.success]
        if not completed:
            errors = "; ".join(f"{o.label}: {o.error}" for o in outcomes)
            raise OrchestrationError(f"All approaches failed ({errors})")

        await self.set_status(OvernightTaskStatus.SYNTHESIZING)
        await self.milestone(MilestoneType.SYNTHESIS, f"Cross-validating {len(completed)} approaches")
        for outcome in completed:
            await self.validate_approach(outcome)

        summary = self.format_summary(outcomes)
        await self.write_artifact("summary.md", summary)
        if self.presenter is not None:
            await self.presenter.create_choice(self.task.id, outcomes)

        await self.set_status(OvernightTaskStatus.READY, findings=summary)
        await self.milestone(
            MilestoneType.READY,
            f"{len(completed)}/{len(outcomes)} approaches ready: {self.task.subject}",
        )
        return OrchestratorResult(success=True, task_id=self.task.id, iterations=outcomes, synthesis=summary)

    def _constraints_block(self) -> str:
        if not self.task.constraints:
            return ""
        return "\n\nConstraints:\n" + "\n".join(f"- {c}" for c in self.task.constraints)

    # ==========================================================================
    # Strategies
    # ==========================================================================

    async def generate_strategies(self) -> dict[ApproachLabel, str]:
        """One strategy per label; labels the planner missed get their default."""
        approaches = "\n\n".join(
            f"Approach {d.label.value}: {d.name}\n{d.description}" for d in APPROACH_DEFINITIONS.values()
        )
        prompt = (
            "You are planning 3 different implementation approaches for an overnight coding task.\n\n"
            f"Task: {self.task.subject}{self._constraints_block()}\n\n"
            f"{approaches}\n\n"
            "For each approach give a 2-3 sentence strategy naming the key decisions and trade-offs.\n\n"
            'Respond with JSON only: {"approaches": [{"label": "A", "strategy": "..."}]}'
        )
        result = await self.router.run(ExecutorType.GEMINI, prompt, ExecuteOptions(timeout=self.job_timeout, sandbox=True))
        parsed = parse_strategies(result.output) if result.success else {}
        if len(parsed) < len(APPROACH_DEFINITIONS):
            logger.warning(
                "Strategy generation incomplete, filling defaults",
                task_id=self.task.id,
                parsed=sorted(parsed),
                outcome=result.outcome.value,
            )
        return {
            label: parsed.get(label.value) or definition.description
            for label, definition in APPROACH_DEFINITIONS.items()
        }

    # ==========================================================================
    # Execution
    # ==========================================================================

    def build_prompt(self, definition: ApproachDefinition, strategy: str) -> str:
        return (
            f"You are implementing Approach {definition.label.value} ({definition.name}) "
            "for an overnight coding task.\n\n"
            f"Task: {self.task.subject}{self._constraints_block()}\n\n"
            f"Your approach: {strategy}\n\n"
            "1. Implement the solution following your approach philosophy\n"
            "2. Create all necessary files and modifications\n"
            "3. Include tests if applicable\n"
            "4. Write a brief SUMMARY.md of what you implemented\n\n"
            "Your work will be reviewed in the morning."
        )

    async def run_approach(self, definition: ApproachDefinition, strategy: str) -> IterationOutcome:
        label = definition.label
        iteration = await self.store.create_iteration(
            self.task.id,
            label,
            APPROACH_NAMES[label],
            definition.executor.value,
            strategy=strategy,
        )
        outcome = IterationOutcome(
            label=label.value,
            name=definition.name,
            executor=definition.executor.value,
            success=False,
            iteration_id=iteration.id,
        )
        await self.milestone(
            MilestoneType.ITERATION_START,
            f"Approach {label.value} ({definition.name}) started on {definition.executor.value}",
            {"label": label.value, "executor": definition.executor.value},
        )
        started = time.monotonic()

        try:
            workspace = await self.workspace_manager.create(self.task.id, label.value, self.task.project_path)
        except Exception as e:
            outcome.error = f"Workspace setup failed: {e}"
            await self._finish_iteration(iteration.id, outcome, started)
            return outcome

        outcome.workspace_path = str(workspace.path)
        await self.store.update_iteration(
            iteration.id,
            status=IterationStatus.RUNNING,
            workspace_path=outcome.workspace_path,
            started_at=datetime.now(timezone.utc),
        )

        result = await self.router.run(
            definition.executor,
            self.build_prompt(definition, strategy),
            ExecuteOptions(cwd=outcome.workspace_path, timeout=self.job_timeout),
            fallbacks=[],
        )
        outcome.output = result.output
        outcome.success = result.success
        if not result.success:
            outcome.error = f"{result.outcome.value}: {result.output[-300:]}"

        outcome.artifacts = self.workspace_manager.collect_artifacts(workspace.path)
        stats = await self.workspace_manager.change_stats(workspace.path)
        outcome.lines_changed = stats.lines_changed
        outcome.files_changed = stats.files_changed

        await self._finish_iteration(iteration.id, outcome, started)
        return outcome

    async def _finish_iteration(self, iteration_id: str, outcome: IterationOutcome, started: float) -> None:
        outcome.duration_ms = int((time.monotonic() - started) * 1000)
        await self.store.update_iteration(
            iteration_id,
            status=IterationStatus.COMPLETED if outcome.success else IterationStatus.FAILED,
            output=outcome.output,
            artifacts=outcome.artifacts,
            error=outcome.error,
            duration_ms=outcome.duration_ms,
            completed_at=datetime.now(timezone.utc),
        )
        await self.milestone(
            MilestoneType.ITERATION_COMPLETE,
            f"Approach {outcome.label} {'completed' if outcome.success else 'failed'}",
            {"label": outcome.label, "success": outcome.success, "duration_ms": outcome.duration_ms},
        )
        logger.info(
            "Approach finished",
            task_id=self.task.id,
            approach=outcome.label,
            executor=outcome.executor,
            success=outcome.success,
            files_changed=outcome.files_changed,
            duration_ms=outcome.duration_ms,
        )

    # ==========================================================================
    # Cross-validation
    # ==========================================================================

    async def validate_approach(self, outcome: IterationOutcome) -> None:
        """Score one completed approach; never raises."""
        if not outcome.workspace_path:
            outcome.score, outcome.summary = DEFAULT_SCORE, "No workspace to validate"
        else:
            try:
                outcome.score, outcome.summary = await self._score(outcome)
            except Exception as e:
                logger.warning("Approach validation failed", approach=outcome.label, error=str(e))
                outcome.score, outcome.summary = DEFAULT_SCORE, "Validation failed"

        if outcome.iteration_id:
            await self.store.update_iteration(outcome.iteration_id, score=outcome.score, summary=outcome.summary)

    async def _score(self, outcome: IterationOutcome) -> tuple[float, str]:
        validators = [e for e in VALIDATOR_ORDER if e.value != outcome.executor]
        prompt = (
            f'Review this implementation for the task: "{self.task.subject}"\n\n'
            f"Approach: {outcome.label} ({outcome.name})\n"
            f"Workspace: {outcome.workspace_path}\n\n"
            f"Executor output:\n{outcome.output[:2000] or 'No output recorded'}\n\n"
            "Rate it from 0 to 100 for completeness, correctness, code quality and risk.\n\n"
            'Respond with JSON only: {"score": 85, "summary": "...", "issues": ["..."]}'
        )
        result = await self.router.run(
            validators[0],
            prompt,
            ExecuteOptions(cwd=outcome.workspace_path, timeout=self.job_timeout),
            fallbacks=validators[1:],
        )
        if not result.success:
            return DEFAULT_SCORE, f"Validation unavailable ({result.outcome.value})"

        verdict = parse_verdict(result.output)
        if verdict is None:
            return UNPARSED_VERDICT_SCORE, result.output.strip()[:200]
        return verdict.score, verdict.summary or "Validation completed"

    # ==========================================================================
    # Summary
    # ==========================================================================

    def format_summary(self, outcomes: list[IterationOutcome]) -> str:
        lines = [f"# Prototype Summary: {self.task.subject}", ""]
        if self.presenter is not None:
            options = self.presenter.rank(outcomes)
            recommendation, reason = self.presenter.recommend(options)
            lines += [self.presenter.format_choice(self.task.subject, options, recommendation, reason), ""]

        for outcome in outcomes:
            status = "completed" if outcome.success else "failed"
            lines.append(f"## {outcome.label}: {outcome.name} ({outcome.executor}, {status})")
            lines.append("")
            if outcome.workspace_path:
                lines.append(f"- Workspace: {outcome.workspace_path}")
            if outcome.score is not None:
                lines.append(f"- Score: {outcome.score:.0f}")
            lines.append(f"- Changes: {outcome.files_changed} files, {outcome.lines_changed} lines")
            if outcome.artifacts:
                lines.append(f"- Artifacts: {', '.join(Path(a).name for a in outcome.artifacts)}")
            if outcome.error:
                lines.append(f"- Error: {outcome.error[:200]}")
            if outcome.summary:
                lines += ["", outcome.summary]
            lines.append("")
        return "\n".join(lines)
