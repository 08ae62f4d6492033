"""
Overnight Intent Parser
=======================

Detects "do this tonight" requests in free-form messages and extracts the
task type, subject, constraints and a confidence score. Low-confidence
results carry a clarification question instead of being queued blindly.
"""

import re
from dataclasses import dataclass, field
from typing import Optional

from nightshift.core.models import OvernightTaskType

CLARIFICATION_THRESHOLD = 0.7

OVERNIGHT_PATTERNS = [
    re.compile(r"\btonight\b", re.IGNORECASE),
    re.compile(r"\bovernight\b", re.IGNORECASE),
    re.compile(r"\bwhile\s+i\s+sleep\b", re.IGNORECASE),
    re.compile(r"\bfor\s+me\s+tonight\b", re.IGNORECASE),
    re.compile(r"\bfor\s+tonight\b", re.IGNORECASE),
    re.compile(r"\bby\s+(tomorrow\s+)?morning\b", re.IGNORECASE),
    re.compile(r"\bwhen\s+i\s+wake\s+up\b", re.IGNORECASE),
    re.compile(r"\bwhile\s+i('m|\s+am)\s+(asleep|sleeping)\b", re.IGNORECASE),
    re.compile(r"\bwork\s+on\s+.+\s+tonight\b", re.IGNORECASE),
    re.compile(r"\bresearch\s+.+\s+(tonight|overnight)\b", re.IGNORECASE),
]

PROTOTYPE_PATTERNS = [
    re.compile(r"\b(work\s+on|implement|add|create|build|develop|code|write)\b", re.IGNORECASE),
    re.compile(r"\b(feature|component|function|api|endpoint|service)\b", re.IGNORECASE),
    re.compile(r"\b(fix|refactor|improve|optimize|update)\b", re.IGNORECASE),
    re.compile(r"\b(prototype|mvp|poc|proof\s+of\s+concept)\b", re.IGNORECASE),
    re.compile(r"\b(rate\s+limit|auth|caching|database|migration)\b", re.IGNORECASE),
]

RESEARCH_PATTERNS = [
    re.compile(r"\b(research|investigate|explore|analyze|study)\b", re.IGNORECASE),
    re.compile(r"\b(find\s+out|figure\s+out|learn\s+about|understand)\b", re.IGNORECASE),
    re.compile(r"\b(compare|evaluate|assess|review)\b", re.IGNORECASE),
    re.compile(r"\b(best\s+practices|alternatives|options|approaches)\b", re.IGNORECASE),
    re.compile(r"\b(how\s+to|what\s+is|why\s+does|should\s+i)\b", re.IGNORECASE),
    re.compile(r"\b(market|competitor|trend|opportunity)\b", re.IGNORECASE),
    re.compile(r"\b(documentation|paper|article|resource)\b", re.IGNORECASE),
]

CONSTRAINT_PATTERNS = [
    re.compile(rf"\b{word}\s+(.+?)(?:\.|,|$)", re.IGNORECASE)
    for word in (r"with(?:out)?", "using", "must", "should", "no", "only", "prefer")
]

_LEADING_ASK = re.compile(r"^(can you|could you|please|i want you to|i need you to)\s*", re.IGNORECASE)
_LEADING_VERB = re.compile(r"^(work on|implement|add|create|research|investigate)\s*", re.IGNORECASE)
_TRAILING_FOR = re.compile(r"\s*(for me|for tonight)$", re.IGNORECASE)
_SUBJECT_HEAD = re.compile(r"^(.+?)(?:\s+(?:with|using|must|should|and|but|,|\.|\?|!))", re.IGNORECASE)
_TONIGHT = re.compile(r"\b(tonight|overnight)\b", re.IGNORECASE)


@dataclass
class ClarificationOption:
    label: str
    value: str
    description: str


@dataclass
class Clarification:
    question: str
    options: list[ClarificationOption] = field(default_factory=list)


@dataclass
class OvernightIntent:
    """Result of parsing one message."""
    is_overnight: bool
    raw_message: str
    task_type: Optional[OvernightTaskType] = None
    subject: str = ""
    constraints: list[str] = field(default_factory=list)
    confidence: float = 1.0
    clarification: Optional[Clarification] = None

    @property
    def needs_clarification(self) -> bool:
        return self.clarification is not None


def might_be_overnight_request(message: str) -> bool:
    return any(p.search(message) for p in OVERNIGHT_PATTERNS)


def _count_matches(message: str, patterns: list[re.Pattern]) -> int:
    return sum(1 for p in patterns if p.search(message))


def detect_task_type(message: str) -> tuple[Optional[OvernightTaskType], float]:
    """Higher pattern score wins; a tie is ambiguous."""
    prototype = _count_matches(message, PROTOTYPE_PATTERNS)
    research = _count_matches(message, RESEARCH_PATTERNS)

    if prototype == 0 and research == 0:
        return None, 0.0
    if prototype > research:
        return OvernightTaskType.PROTOTYPE_WORK, prototype / (prototype + research + 1)
    if research > prototype:
        return OvernightTaskType.RESEARCH_DIVE, research / (prototype + research + 1)
    return None, 0.5


def extract_subject(message: str) -> str:
    cleaned = message
    for pattern in OVERNIGHT_PATTERNS:
        cleaned = pattern.sub("", cleaned, count=1)

    cleaned = _LEADING_ASK.sub("", cleaned.strip(), count=1)
    cleaned = _LEADING_VERB.sub("", cleaned, count=1)
    cleaned = _TRAILING_FOR.sub("", cleaned, count=1).strip()

    match = _SUBJECT_HEAD.match(cleaned)
    if match:
        return match.group(1).strip()
    head = re.split(r"[.,!?]", cleaned)[0].strip()
    return head or cleaned


def extract_constraints(message: str) -> list[str]:
    constraints: list[str] = []
    for pattern in CONSTRAINT_PATTERNS:
        for match in pattern.finditer(message):
            constraint = match.group(1).strip()
            if 2 < len(constraint) < 100 and constraint not in constraints:
                constraints.append(constraint)
    return constraints


def calculate_confidence(
    message: str,
    task_type: Optional[OvernightTaskType],
    type_confidence: float,
    subject: str,
) -> float:
    confidence = 0.5

    if task_type is not None:
        confidence += 0.2 * type_confidence

    if 10 <= len(subject) <= 100:
        confidence += 0.15
    elif len(subject) < 5:
        confidence -= 0.2

    confidence += min(0.15, _count_matches(message, OVERNIGHT_PATTERNS) * 0.05)

    if _TONIGHT.search(message):
        confidence += 0.1

    return max(0.0, min(1.0, confidence))


def build_clarification(task_type: Optional[OvernightTaskType], subject: str) -> Clarification:
    cancel = ClarificationOption("Cancel", "cancel", "Don't queue this task")

    if task_type is None:
        return Clarification(
            question=f'I\'ll work on "{subject}" tonight. What type of work?',
            options=[
                ClarificationOption("Build/Code", OvernightTaskType.PROTOTYPE_WORK.value, "Create 3 implementation approaches"),
                ClarificationOption("Research", OvernightTaskType.RESEARCH_DIVE.value, "Deep investigation with synthesis"),
                cancel,
            ],
        )

    if len(subject) < 5:
        return Clarification(
            question="What specifically should I work on?",
            options=[ClarificationOption("Describe", "describe", "Tell me more about the task"), cancel],
        )

    verb = "Build" if task_type == OvernightTaskType.PROTOTYPE_WORK else "Research"
    return Clarification(
        question=f'Confirm: {verb} "{subject}"?',
        options=[
            ClarificationOption("Yes", "confirm", "Proceed with this interpretation"),
            ClarificationOption("Modify", "modify", "Let me clarify what I need"),
            cancel,
        ],
    )


def parse_overnight_intent(message: str, threshold: float = CLARIFICATION_THRESHOLD) -> OvernightIntent:
    """
    Parse a message for overnight work intent.

    Args:
        message: Raw user message
        threshold: Confidence below which a clarification is attached

    Returns:
        OvernightIntent; is_overnight False when no trigger phrase matched
    """
    trimmed = message.strip()
    if not might_be_overnight_request(trimmed):
        return OvernightIntent(is_overnight=False, raw_message=trimmed)

    task_type, type_confidence = detect_task_type(trimmed)
    subject = extract_subject(trimmed)
    confidence = calculate_confidence(trimmed, task_type, type_confidence, subject)

    return OvernightIntent(
        is_overnight=True,
        raw_message=trimmed,
        task_type=task_type,
        subject=subject,
        constraints=extract_constraints(trimmed),
        confidence=confidence,
        clarification=build_clarification(task_type, subject) if confidence < threshold else None,
    )
