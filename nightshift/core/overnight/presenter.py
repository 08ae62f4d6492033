"""
Morning Presenter
=================

Turns finished iterations into ranked options plus a recommendation and
stores them as a MorningChoice for the user to pick from.
"""

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog

from nightshift.core.models import MorningChoice
from nightshift.core.overnight.base import IterationOutcome
from nightshift.core.overnight.store import TaskStore

logger = structlog.get_logger()

DEFAULT_SCORE = 50.0
HIGH_RISK_PENALTY = 10.0

_SUMMARY_SECTION = re.compile(r"(?:summary|overview|description):\s*(.+?)(?:\n\n|\n#|$)", re.IGNORECASE | re.DOTALL)
_BULLET = re.compile(r"^\s*[-*]\s+(.+)$", re.MULTILINE)


@dataclass
class RankedOption:
    label: str
    name: str
    executor: str
    score: float
    risk: str
    summary: str
    highlights: list[str] = field(default_factory=list)
    lines_changed: int = 0
    files_changed: int = 0
    confidence: Optional[float] = None
    workspace_path: Optional[str] = None


def assess_risk(lines_changed: int, files_changed: int) -> str:
    if lines_changed > 500 or files_changed > 10:
        return "high"
    if lines_changed > 100 or files_changed > 5:
        return "medium"
    return "low"


def extract_summary(output: str, limit: int = 200) -> str:
    match = _SUMMARY_SECTION.search(output)
    if match:
        return match.group(1).strip()[:limit]
    return output.split("\n\n")[0].strip()[:limit]


def extract_highlights(output: str, limit: int = 3) -> list[str]:
    return [h.strip() for h in _BULLET.findall(output)[:limit]]


class MorningPresenter:
    """Ranks iteration outcomes and persists the morning choice."""

    def __init__(self, store: TaskStore, expiration_hours: int = 24):
        self.store = store
        self.expiration_hours = expiration_hours

    def rank(self, outcomes: list[IterationOutcome]) -> list[RankedOption]:
        """Completed outcomes as options, best validation score first."""
        options = [
            RankedOption(
                label=o.label,
                name=o.name,
                executor=o.executor,
                score=o.score if o.score is not None else DEFAULT_SCORE,
                risk=assess_risk(o.lines_changed, o.files_changed),
                summary=o.summary or extract_summary(o.output),
                highlights=extract_highlights(o.output),
                lines_changed=o.lines_changed,
                files_changed=o.files_changed,
                confidence=o.confidence,
                workspace_path=o.workspace_path,
            )
            for o in outcomes
            if o.success
        ]
        # Stable sort keeps A/B/C order among equal scores
        options.sort(key=lambda option: option.score, reverse=True)
        return options

    @staticmethod
    def recommend(options: list[RankedOption]) -> tuple[str, str]:
        if not options:
            return "A", "No options available"

        best = max(
            options,
            key=lambda option: option.score - (HIGH_RISK_PENALTY if option.risk == "high" else 0.0),
        )
        if best.score >= 80:
            reason = "Highest validation score with good quality"
        elif best.risk == "low":
            reason = "Safest approach with acceptable quality"
        else:
            reason = "Best balance of quality and risk"
        return best.label, reason

    async def create_choice(self, task_id: str, outcomes: list[IterationOutcome]) -> MorningChoice:
        options = self.rank(outcomes)
        recommendation, reason = self.recommend(options)
        expires_at = datetime.now(timezone.utc) + timedelta(hours=self.expiration_hours)
        choice = await self.store.create_morning_choice(
            task_id,
            options=[asdict(option) for option in options],
            recommendation=recommendation,
            recommendation_reason=reason,
            expires_at=expires_at,
        )
        logger.info(
            "Morning choice created",
            task_id=task_id,
            options=len(options),
            recommendation=recommendation,
        )
        return choice

    @staticmethod
    def format_choice(subject: str, options: list[RankedOption], recommendation: str, reason: str) -> str:
        """Markdown comparison table for the briefing."""
        lines = [
            f"## Options: {subject}",
            "",
            "| Option | Executor | Score | Risk | Summary |",
            "|--------|----------|-------|------|---------|",
        ]
        if not options:
            lines.append("| - | - | - | - | _No options available_ |")
        for option in options:
            summary = option.summary.replace("\n", " ").replace("|", "/")[:80]
            lines.append(
                f"| {option.label}: {option.name} | {option.executor} | {option.score:.0f} | {option.risk} | {summary} |"
            )
        lines += ["", f"**Recommended:** {recommendation} ({reason})"]
        return "\n".join(lines)
