"""
Intent Parser Tests
===================

Natural-language "do this tonight" requests.
"""

from nightshift.core.models import OvernightTaskType
from nightshift.core.overnight.intent import (
    build_clarification,
    detect_task_type,
    extract_constraints,
    extract_subject,
    might_be_overnight_request,
    parse_overnight_intent,
)


class TestDetection:
    """Trigger phrases and task type scoring."""

    def test_trigger_phrases(self):
        assert might_be_overnight_request("look into this while I sleep")
        assert might_be_overnight_request("have it ready by tomorrow morning")
        assert not might_be_overnight_request("refactor the auth module")

    def test_not_overnight(self):
        intent = parse_overnight_intent("Refactor the auth module")

        assert not intent.is_overnight
        assert intent.task_type is None

    def test_prototype_wins(self):
        task_type, confidence = detect_task_type("Work on rate limiting for the API tonight")

        assert task_type == OvernightTaskType.PROTOTYPE_WORK
        assert confidence == 2 / 3

    def test_research_wins(self):
        task_type, _ = detect_task_type("Research vector database options overnight")

        assert task_type == OvernightTaskType.RESEARCH_DIVE

    def test_tie_is_ambiguous(self):
        assert detect_task_type("build and research") == (None, 0.5)

    def test_no_signal(self):
        assert detect_task_type("hello there") == (None, 0.0)


class TestExtraction:
    """Subject and constraints."""

    def test_subject_strips_trigger_and_verb(self):
        assert extract_subject("Work on rate limiting for the API tonight") == "rate limiting for the API"

    def test_subject_strips_polite_prefix(self):
        assert extract_subject("Can you research vector databases overnight") == "vector databases"

    def test_subject_stops_at_constraint(self):
        assert extract_subject("Add caching tonight using redis") == "caching"

    def test_constraints(self):
        constraints = extract_constraints("Add caching tonight using redis, without breaking the API.")

        assert constraints == ["breaking the API", "redis"]


class TestParse:
    """End-to-end parsing and clarifications."""

    def test_confident_prototype(self):
        intent = parse_overnight_intent("Work on rate limiting for the API tonight")

        assert intent.is_overnight
        assert intent.task_type == OvernightTaskType.PROTOTYPE_WORK
        assert intent.subject == "rate limiting for the API"
        assert intent.confidence >= 0.9
        assert not intent.needs_clarification

    def test_confident_research(self):
        intent = parse_overnight_intent("Research vector database options overnight")

        assert intent.task_type == OvernightTaskType.RESEARCH_DIVE
        assert intent.subject == "vector database options"
        assert not intent.needs_clarification

    def test_vague_request_asks_for_type(self):
        intent = parse_overnight_intent("do it tonight")

        assert intent.task_type is None
        assert intent.confidence < 0.7
        assert intent.needs_clarification
        assert [o.value for o in intent.clarification.options] == ["prototype_work", "research_dive", "cancel"]

    def test_threshold_forces_confirmation(self):
        intent = parse_overnight_intent("Work on rate limiting for the API tonight", threshold=1.01)

        assert intent.clarification.question == 'Confirm: Build "rate limiting for the API"?'

    def test_short_subject_clarification(self):
        clarification = build_clarification(OvernightTaskType.PROTOTYPE_WORK, "x")

        assert clarification.question == "What specifically should I work on?"
        assert clarification.options[-1].value == "cancel"

    def test_research_confirmation(self):
        clarification = build_clarification(OvernightTaskType.RESEARCH_DIVE, "vector databases")

        assert clarification.question == 'Confirm: Research "vector databases"?'
