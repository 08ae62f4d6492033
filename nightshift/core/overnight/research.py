"""
Research Orchestrator
=====================

Research dive pipeline for one overnight task:

1. Expansion   - one executor call turns the subject into 10-15 queries
2. Harvest     - high, then medium, then low tier; queries inside a tier
                 run concurrently and failed queries are dropped
3. Validation  - same-category findings cross-checked by another executor
4. Synthesis   - three labelled interpretations (A/B/C)
5. Persistence - harvest.md, synthesis.md and summary.md
"""

import asyncio
import re
from collections import defaultdict
from dataclasses import dataclass, field

import structlog

from nightshift.core.executors.adapter import ExecuteOptions, ExecutionResult
from nightshift.core.models import (
    APPROACH_NAMES,
    ApproachLabel,
    ExecutorType,
    IterationStatus,
    MilestoneType,
    OvernightTaskStatus,
    QueryCategory,
    QueryPriority,
)
from nightshift.core.overnight.base import (
    BaseOrchestrator,
    IterationOutcome,
    OrchestrationError,
    OrchestratorResult,
)
from nightshift.core.schemas import Interpretation, ResearchQuery, parse_interpretations, parse_queries

logger = structlog.get_logger()

MAX_QUERIES = 15
TIER_ORDER = (QueryPriority.HIGH, QueryPriority.MEDIUM, QueryPriority.LOW)

_URL = re.compile(r"https?://[^\s<>\"]+")
_CONSISTENT = re.compile(r"\bCONSISTENT\b")
_INCONSISTENT = re.compile(r"\bINCONSISTENT\b")


@dataclass
class Finding:
    """One harvested query result."""
    query: str
    category: QueryCategory
    priority: QueryPriority
    content: str
    executor: str
    sources: list[str] = field(default_factory=list)
    confidence: float = 0.5


def extract_sources(content: str) -> list[str]:
    return list(dict.fromkeys(_URL.findall(content)))


def estimate_confidence(content: str) -> float:
    """Length and attribution heuristic."""
    if len(content) < 100:
        return 0.3
    if len(content) < 500:
        return 0.5
    if "source" in content or "according to" in content:
        return 0.8
    return 0.6


def default_queries(subject: str) -> list[ResearchQuery]:
    return [
        ResearchQuery(query=f"{subject} best practices", category=QueryCategory.WEB, priority=QueryPriority.HIGH),
        ResearchQuery(query=f"{subject} implementation guide", category=QueryCategory.DOCS, priority=QueryPriority.HIGH),
        ResearchQuery(query=f"{subject} examples github", category=QueryCategory.CODE, priority=QueryPriority.MEDIUM),
        ResearchQuery(query=f"{subject} comparison alternatives", category=QueryCategory.WEB, priority=QueryPriority.MEDIUM),
        ResearchQuery(query=f"{subject} performance benchmarks", category=QueryCategory.WEB, priority=QueryPriority.LOW),
    ]


def default_interpretations(subject: str) -> list[Interpretation]:
    """Deterministic triple used when synthesis output is unusable."""
    return [
        Interpretation(
            label=label.value,
            name=name.value,
            summary=f"{name.value} interpretation of research on {subject}",
            key_findings=["Research synthesis required manual review"],
            recommendations=["Review raw findings for detailed analysis"],
            concerns=["Automatic synthesis was limited"],
            confidence=0.5,
        )
        for label, name in APPROACH_NAMES.items()
    ]


class ResearchOrchestrator(BaseOrchestrator):
    """Runs one research dive task end to end."""

    async def _run(self) -> OrchestratorResult:
        # Phase 1
        await self.set_status(OvernightTaskStatus.PLANNING)
        await self.milestone(MilestoneType.PLANNING, "Expanding research queries")
        queries = await self.expand_queries()

        # Phase 2
        await self.set_status(OvernightTaskStatus.EXECUTING)
        await self.milestone(
            MilestoneType.ITERATION_START,
            f"Harvesting {len(queries)} queries",
            {"queries": len(queries)},
        )
        findings = await self.harvest(queries)
        if not findings:
            raise OrchestrationError("Harvest produced no findings")
        await self.milestone(
            MilestoneType.ITERATION_COMPLETE,
            f"Harvested {len(findings)}/{len(queries)} queries",
            {"findings": len(findings), "queries": len(queries)},
        )

        # Phase 3
        await self.validate(findings)

        # Phase 4
        await self.set_status(OvernightTaskStatus.SYNTHESIZING)
        await self.milestone(MilestoneType.SYNTHESIS, "Synthesizing interpretations")
        interpretations, executor = await self.synthesize(findings)
        outcomes = await self._record_iterations(interpretations, executor)

        # Phase 5
        await self.write_artifact("harvest.md", self.format_harvest(findings))
        await self.write_artifact("synthesis.md", self.format_synthesis(interpretations))
        summary = self.format_summary(findings, interpretations, outcomes)
        await self.write_artifact("summary.md", summary)

        if self.presenter is not None:
            await self.presenter.create_choice(self.task.id, outcomes)

        await self.set_status(OvernightTaskStatus.READY, findings=summary)
        await self.milestone(MilestoneType.READY, f"Research ready: {self.task.subject}")
        return OrchestratorResult(
            success=True,
            task_id=self.task.id,
            iterations=outcomes,
            synthesis=summary,
        )

    def _options(self) -> ExecuteOptions:
        return ExecuteOptions(timeout=self.job_timeout, cwd=self.task.project_path)

    # ==========================================================================
    # Phase 1: Expansion
    # ==========================================================================

    async def expand_queries(self) -> list[ResearchQuery]:
        constraints = "\n".join(f"- {c}" for c in self.task.constraints) or "None specified"
        prompt = (
            "You are expanding a research topic into multiple specific queries.\n\n"
            f"Topic: {self.task.subject}\n\n"
            f"Constraints:\n{constraints}\n\n"
            "Generate 10-15 specific research queries across these categories:\n"
            "- web: current articles, blog posts, discussions\n"
            "- docs: official documentation, API references\n"
            "- code: repositories, implementations, examples\n"
            "- academic: papers and formal analyses\n\n"
            "Give each query a priority of high, medium or low.\n\n"
            'Respond with JSON only: {"queries": [{"query": "...", "category": "web", "priority": "high"}]}'
        )
        result = await self.router.run(ExecutorType.GEMINI, prompt, ExecuteOptions(timeout=self.job_timeout, sandbox=True))

        queries = parse_queries(result.output, limit=MAX_QUERIES) if result.success else []
        if not queries:
            logger.warning(
                "Query expansion unusable, using default queries",
                task_id=self.task.id,
                outcome=result.outcome.value,
            )
            return default_queries(self.task.subject)
        logger.info("Queries expanded", task_id=self.task.id, count=len(queries))
        return queries

    # ==========================================================================
    # Phase 2: Harvest
    # ==========================================================================

    async def harvest(self, queries: list[ResearchQuery]) -> list[Finding]:
        """Staged harvest; never raises for individual query failures."""
        findings: list[Finding] = []
        for tier in TIER_ORDER:
            batch = [q for q in queries if q.priority == tier]
            if not batch:
                continue
            settled = await asyncio.gather(
                *(self.harvest_query(q) for q in batch),
                return_exceptions=True,
            )
            for query, outcome in zip(batch, settled):
                if isinstance(outcome, BaseException):
                    logger.warning("Harvest query dropped", query=query.query[:80], error=str(outcome))
                    continue
                findings.append(outcome)
            logger.info("Harvest tier complete", tier=tier.value, queries=len(batch), findings=len(findings))
        return findings

    async def harvest_query(self, query: ResearchQuery) -> Finding:
        prompt = (
            "Research the following topic and provide a comprehensive summary.\n\n"
            f"Query: {query.query}\n"
            f"Category: {query.category.value}\n\n"
            "1. Search for relevant information\n"
            "2. Extract key insights and facts\n"
            "3. Note any conflicting information\n"
            "4. List all sources used (URLs where available)\n\n"
            "Structure the answer as main findings (3-5 bullets), key details and sources."
        )
        result = await self.router.run(ExecutorType.GEMINI, prompt, self._options())
        if not result.success:
            raise OrchestrationError(f"{result.outcome.value}: {result.output[:200]}")
        return Finding(
            query=query.query,
            category=query.category,
            priority=query.priority,
            content=result.output,
            executor=_executor_name(result),
            sources=extract_sources(result.output),
            confidence=estimate_confidence(result.output),
        )

    # ==========================================================================
    # Phase 3: Validation
    # ==========================================================================

    async def validate(self, findings: list[Finding]) -> None:
        """Adjust confidence per category; failures are logged and ignored."""
        by_category: dict[QueryCategory, list[Finding]] = defaultdict(list)
        for finding in findings:
            by_category[finding.category].append(finding)

        for category, group in by_category.items():
            if len(group) < 2:
                continue
            compared = "\n\n".join(f"Finding {i}:\n{f.content[:500]}" for i, f in enumerate(group, start=1))
            prompt = (
                f"Compare these research findings for contradictions:\n\n{compared}\n\n"
                "List any contradictions or inconsistencies found. "
                'If the findings are consistent, answer "CONSISTENT".'
            )
            try:
                result = await self.router.run(
                    ExecutorType.CODEX,
                    prompt,
                    self._options(),
                    fallbacks=[ExecutorType.CLAUDE],
                )
            except Exception as e:
                logger.warning("Validation failed", category=category.value, error=str(e))
                continue

            if not result.success:
                logger.warning("Validation unavailable", category=category.value, outcome=result.outcome.value)
                continue
            if _CONSISTENT.search(result.output):
                for finding in group:
                    finding.confidence = min(1.0, finding.confidence + 0.1)
            elif _INCONSISTENT.search(result.output):
                for finding in group:
                    finding.confidence = max(0.0, finding.confidence - 0.1)
                logger.info("Validation flagged contradictions", category=category.value)

    # ==========================================================================
    # Phase 4: Synthesis
    # ==========================================================================

    async def synthesize(self, findings: list[Finding]) -> tuple[list[Interpretation], str]:
        compiled = "\n\n---\n\n".join(
            f"## {f.query} ({f.category.value}, confidence: {f.confidence:.2f})\n\n{f.content}"
            for f in findings
        )
        prompt = (
            "You are synthesizing research findings into 3 distinct interpretations.\n\n"
            f"Research topic: {self.task.subject}\n\n"
            "A: Conservative - well-established facts, proven approaches, cautious conclusions\n"
            "B: Innovative - emerging trends and forward-looking conclusions\n"
            "C: Pragmatic - established knowledge balanced with new developments\n\n"
            "For each give a 2-3 sentence summary, 3-5 key findings, 2-3 recommendations, "
            "concerns, and a confidence score from 0 to 100.\n\n"
            'Respond with JSON only: {"interpretations": [{"label": "A", "name": "Conservative", '
            '"summary": "...", "key_findings": ["..."], "recommendations": ["..."], '
            '"concerns": ["..."], "confidence": 85}]}'
        )
        options = ExecuteOptions(timeout=self.job_timeout, context=f"# Compiled Findings\n\n{compiled}")
        result = await self.router.run(ExecutorType.KIMI, prompt, options, fallbacks=[ExecutorType.CLAUDE])

        interpretations = parse_interpretations(result.output) if result.success else None
        if interpretations is None:
            logger.warning(
                "Synthesis unusable, using fallback interpretations",
                task_id=self.task.id,
                outcome=result.outcome.value,
            )
            return default_interpretations(self.task.subject), "fallback"
        return interpretations, _executor_name(result)

    async def _record_iterations(self, interpretations: list[Interpretation], executor: str) -> list[IterationOutcome]:
        outcomes = []
        for interpretation in interpretations:
            label = ApproachLabel(interpretation.label)
            name = APPROACH_NAMES[label]
            output = format_interpretation(interpretation)
            score = round(interpretation.confidence * 100, 1)

            iteration = await self.store.create_iteration(self.task.id, label, name, executor)
            await self.store.update_iteration(
                iteration.id,
                status=IterationStatus.COMPLETED,
                output=output,
                summary=interpretation.summary,
                confidence=interpretation.confidence,
                score=score,
            )
            outcomes.append(IterationOutcome(
                label=label.value,
                name=name.value,
                executor=executor,
                success=True,
                output=output,
                summary=interpretation.summary,
                score=score,
                confidence=interpretation.confidence,
                iteration_id=iteration.id,
            ))
        return outcomes

    # ==========================================================================
    # Phase 5: Artifacts
    # ==========================================================================

    def format_harvest(self, findings: list[Finding]) -> str:
        parts = [f"# Research Harvest: {self.task.subject}\n"]
        for finding in findings:
            sources = "\n".join(f"- {s}" for s in finding.sources) or "- none"
            parts.append(
                f"## {finding.query}\n\n"
                f"Category: {finding.category.value} | Priority: {finding.priority.value} | "
                f"Confidence: {finding.confidence:.2f} | Executor: {finding.executor}\n\n"
                f"{finding.content}\n\n"
                f"### Sources\n{sources}\n"
            )
        return "\n".join(parts)

    def format_synthesis(self, interpretations: list[Interpretation]) -> str:
        parts = [f"# Research Synthesis: {self.task.subject}\n"]
        parts += [format_interpretation(i) for i in interpretations]
        return "\n\n".join(parts)

    def format_summary(
        self,
        findings: list[Finding],
        interpretations: list[Interpretation],
        outcomes: list[IterationOutcome],
    ) -> str:
        sources = {s for f in findings for s in f.sources}
        lines = [
            f"# Research Summary: {self.task.subject}",
            "",
            f"- Findings harvested: {len(findings)}",
            f"- Unique sources: {len(sources)}",
            "",
        ]
        if self.presenter is not None:
            options = self.presenter.rank(outcomes)
            recommendation, reason = self.presenter.recommend(options)
            lines.append(self.presenter.format_choice(self.task.subject, options, recommendation, reason))
        else:
            for interpretation in interpretations:
                lines.append(
                    f"- {interpretation.label}: {interpretation.name} "
                    f"({interpretation.confidence:.0%}) {interpretation.summary}"
                )
        return "\n".join(lines)


def format_interpretation(interpretation: Interpretation) -> str:
    def bullets(items: list[str]) -> str:
        return "\n".join(f"- {item}" for item in items) or "- none"

    return (
        f"## {interpretation.label}: {interpretation.name}\n\n"
        f"{interpretation.summary}\n\n"
        f"Confidence: {interpretation.confidence:.0%}\n\n"
        f"### Key Findings\n{bullets(interpretation.key_findings)}\n\n"
        f"### Recommendations\n{bullets(interpretation.recommendations)}\n\n"
        f"### Concerns\n{bullets(interpretation.concerns)}"
    )


def _executor_name(result: ExecutionResult) -> str:
    return result.executor.value if result.executor else "unknown"
