"""
Nightshift - Pydantic Schemas
=============================

Parse-boundary schemas for structured executor output and typed job
payloads. Anything an executor returns goes through here before it is
allowed to drive execution; unknown shapes are dropped or replaced by a
deterministic fallback, never raised.
"""

import json
import re
from typing import Annotated, Any, Literal, Optional, Union

import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from nightshift.core.models import QueryCategory, QueryPriority, RiskLevel

logger = structlog.get_logger()


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


# ==========================================================================
# JSON Extraction
# ==========================================================================

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_OBJECT = re.compile(r"\{[\s\S]*\}")
_ARRAY = re.compile(r"\[[\s\S]*\]")


def extract_json(text: Optional[str]) -> Any:
    """
    Pull the first JSON document out of free-form executor output.

    Tries fenced ```json blocks first, then the widest {...} span, then the
    widest [...] span. Returns None when nothing parses.
    """
    if not text:
        return None

    candidates = [m.group(1) for m in _FENCED_JSON.finditer(text)]
    for pattern in (_OBJECT, _ARRAY):
        match = pattern.search(text)
        if match:
            candidates.append(match.group(0))

    for candidate in candidates:
        try:
            return json.loads(candidate.strip())
        except (ValueError, RecursionError):
            continue
    return None


def _validate_items(model: type[BaseModel], raw: Any, limit: int) -> list:
    """Validate list items one by one, dropping bad ones, capped at limit."""
    if not isinstance(raw, list):
        return []
    items = []
    for entry in raw:
        if len(items) >= limit:
            break
        try:
            items.append(model.model_validate(entry))
        except ValidationError:
            logger.debug("Dropping malformed item", model=model.__name__)
    return items


# ==========================================================================
# Night Plan
# ==========================================================================

PriorityLiteral = Literal["high", "medium", "low"]


class MaintenanceTask(BaseSchema):
    id: str = ""
    task: Literal["idea_consolidation", "memory_cleanup", "log_archival"]
    priority: PriorityLiteral = "high"


class ResearchTask(BaseSchema):
    id: str = ""
    query: str = Field(min_length=1)
    priority: PriorityLiteral = "medium"


class IdeaTask(BaseSchema):
    id: str = ""
    topic: str = Field(min_length=1)
    connection_to_projects: Optional[str] = None


class CodeProposal(BaseSchema):
    id: str = ""
    description: str = Field(min_length=1)
    target_project: str = "unknown"
    risk: RiskLevel = RiskLevel.MEDIUM


class NightPlan(BaseSchema):
    """Structured plan returned by the planning executor."""

    summary: str = ""
    maintenance_tasks: list[MaintenanceTask] = Field(default_factory=list)
    research_tasks: list[ResearchTask] = Field(default_factory=list)
    ideas_to_explore: list[IdeaTask] = Field(default_factory=list)
    code_proposals: list[CodeProposal] = Field(default_factory=list)
    priority_actions: list[str] = Field(default_factory=list)

    @classmethod
    def empty(cls, summary: str = "Failed to parse plan") -> "NightPlan":
        return cls(summary=summary)


def parse_plan(
    text: Optional[str],
    max_research: int = 10,
    max_ideas: int = 5,
    max_proposals: int = 3,
) -> NightPlan:
    """
    Parse a night plan out of executor output.

    Every list is hard-capped. Malformed items are dropped individually;
    output with no usable JSON object yields an empty plan.
    """
    data = extract_json(text)
    if not isinstance(data, dict):
        logger.warning("Failed to parse plan JSON, using empty plan")
        return NightPlan.empty()

    summary = data.get("summary")
    actions = data.get("priority_actions")
    return NightPlan(
        summary=summary if isinstance(summary, str) else "",
        maintenance_tasks=_validate_items(MaintenanceTask, data.get("maintenance_tasks"), 5),
        research_tasks=_validate_items(ResearchTask, data.get("research_tasks"), max_research),
        ideas_to_explore=_validate_items(IdeaTask, data.get("ideas_to_explore"), max_ideas),
        code_proposals=_validate_items(CodeProposal, data.get("code_proposals"), max_proposals),
        priority_actions=[a for a in actions if isinstance(a, str)][:10] if isinstance(actions, list) else [],
    )


# ==========================================================================
# Job Payloads (closed union, one per job family)
# ==========================================================================

class MaintenancePayload(BaseSchema):
    kind: Literal["maintenance"] = "maintenance"
    task: str = "idea_consolidation"
    priority: PriorityLiteral = "high"


class ResearchPayload(BaseSchema):
    kind: Literal["research"] = "research"
    query: str
    priority: PriorityLiteral = "medium"


class IdeaPayload(BaseSchema):
    kind: Literal["idea"] = "idea"
    topic: str
    connection: Optional[str] = None


class ProposalPayload(BaseSchema):
    kind: Literal["proposal"] = "proposal"
    description: str
    target_project: str = "unknown"


class ChangePayload(BaseSchema):
    kind: Literal["change"] = "change"
    description: str
    target_project: Optional[str] = None
    patch_path: Optional[str] = None


class MessagePayload(BaseSchema):
    kind: Literal["message"] = "message"
    message: str = ""


JobPayload = Annotated[
    Union[
        MaintenancePayload,
        ResearchPayload,
        IdeaPayload,
        ProposalPayload,
        ChangePayload,
        MessagePayload,
    ],
    Field(discriminator="kind"),
]


# ==========================================================================
# Research Pipeline
# ==========================================================================

class ResearchQuery(BaseSchema):
    query: str = Field(min_length=1)
    category: QueryCategory = QueryCategory.WEB
    priority: QueryPriority = QueryPriority.MEDIUM

    @field_validator("category", "priority", mode="before")
    @classmethod
    def _lowercase(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value


def parse_queries(text: Optional[str], limit: int = 15) -> list[ResearchQuery]:
    """Parse expanded research queries; empty list when unusable."""
    data = extract_json(text)
    if isinstance(data, dict):
        data = data.get("queries")
    return _validate_items(ResearchQuery, data, limit)


class Interpretation(BaseSchema):
    label: Literal["A", "B", "C"]
    name: str
    summary: str
    key_findings: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("key_findings", "keyFindings"),
    )
    recommendations: list[str] = Field(default_factory=list)
    concerns: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)

    @field_validator("confidence", mode="before")
    @classmethod
    def _percent_to_ratio(cls, value: Any) -> Any:
        # Executors answer in 0-100; stored as 0-1
        if isinstance(value, (int, float)) and value > 1:
            return min(value / 100.0, 1.0)
        return value


def parse_interpretations(text: Optional[str]) -> Optional[list[Interpretation]]:
    """
    Parse exactly three labelled interpretations (A, B, C).

    Returns None unless all three labels are present.
    """
    data = extract_json(text)
    if isinstance(data, dict):
        data = data.get("interpretations")
    items = _validate_items(Interpretation, data, 10)
    by_label = {item.label: item for item in items}
    if set(by_label) != {"A", "B", "C"}:
        return None
    return [by_label["A"], by_label["B"], by_label["C"]]


# ==========================================================================
# Prototype Pipeline
# ==========================================================================

class ApproachStrategy(BaseSchema):
    label: Literal["A", "B", "C"]
    strategy: str = Field(min_length=1)


def parse_strategies(text: Optional[str]) -> dict[str, str]:
    """Parse per-label strategies; missing labels are simply absent."""
    data = extract_json(text)
    if isinstance(data, dict):
        data = data.get("strategies", data.get("approaches"))
    return {s.label: s.strategy for s in _validate_items(ApproachStrategy, data, 3)}


class ValidationVerdict(BaseSchema):
    score: float = Field(ge=0, le=100)
    summary: str = ""
    issues: list[str] = Field(default_factory=list)


def parse_verdict(text: Optional[str]) -> Optional[ValidationVerdict]:
    data = extract_json(text)
    if not isinstance(data, dict):
        return None
    try:
        return ValidationVerdict.model_validate(data)
    except ValidationError:
        return None
