"""
Morning Presenter Tests
=======================

Ranking, recommendation and the persisted morning choice.
"""

import pytest

from nightshift.core.models import OvernightTaskType
from nightshift.core.overnight.base import IterationOutcome
from nightshift.core.overnight.presenter import (
    MorningPresenter,
    RankedOption,
    assess_risk,
    extract_highlights,
    extract_summary,
)


def outcome(label, score=None, success=True, lines=0, files=0, output="", summary=""):
    names = {"A": "Conservative", "B": "Innovative", "C": "Pragmatic"}
    return IterationOutcome(
        label=label,
        name=names[label],
        executor="codex",
        success=success,
        output=output,
        summary=summary,
        score=score,
        lines_changed=lines,
        files_changed=files,
    )


def option(label, score, risk="low"):
    return RankedOption(label=label, name=label, executor="codex", score=score, risk=risk, summary="s")


class TestHeuristics:
    """Risk and text extraction."""

    @pytest.mark.parametrize(
        "lines, files, risk",
        [(501, 1, "high"), (10, 11, "high"), (101, 1, "medium"), (0, 6, "medium"), (100, 5, "low")],
    )
    def test_assess_risk(self, lines, files, risk):
        assert assess_risk(lines, files) == risk

    def test_summary_section(self):
        assert extract_summary("Done.\n\nSummary: added a cache layer\n\nDetails follow") == "added a cache layer"

    def test_summary_first_paragraph(self):
        assert extract_summary("Implemented the thing.\n\nMore text") == "Implemented the thing."

    def test_highlights(self):
        assert extract_highlights("- one\n* two\n- three\n- four") == ["one", "two", "three"]


class TestRanking:
    """rank() and recommend()."""

    def test_failed_excluded_and_sorted(self):
        presenter = MorningPresenter(store=None)

        options = presenter.rank([
            outcome("A", score=70),
            outcome("B", score=90, success=False),
            outcome("C", score=85),
        ])

        assert [o.label for o in options] == ["C", "A"]

    def test_missing_score_defaults(self):
        options = MorningPresenter(store=None).rank([outcome("A"), outcome("B", score=50)])

        assert [(o.label, o.score) for o in options] == [("A", 50.0), ("B", 50.0)]

    def test_summary_from_output(self):
        options = MorningPresenter(store=None).rank([outcome("A", output="Summary: tidy fix\n\n- bullet")])

        assert options[0].summary == "tidy fix"
        assert options[0].highlights == ["bullet"]

    def test_no_options(self):
        assert MorningPresenter.recommend([]) == ("A", "No options available")

    def test_high_risk_penalised(self):
        label, reason = MorningPresenter.recommend([option("A", 85, "high"), option("B", 80)])

        assert label == "B"
        assert reason == "Highest validation score with good quality"

    def test_safest_reason(self):
        assert MorningPresenter.recommend([option("B", 70)]) == ("B", "Safest approach with acceptable quality")

    def test_balance_reason(self):
        assert MorningPresenter.recommend([option("C", 70, "medium")]) == ("C", "Best balance of quality and risk")

    def test_format_choice(self):
        text = MorningPresenter.format_choice("caching", [option("A", 85)], "A", "Highest validation score")

        assert text.startswith("## Options: caching")
        assert "| A: A | codex | 85 | low | s |" in text
        assert text.endswith("**Recommended:** A (Highest validation score)")

    def test_format_empty(self):
        text = MorningPresenter.format_choice("caching", [], "A", "No options available")

        assert "_No options available_" in text


class TestChoice:
    """Persisted morning choices."""

    async def test_create_choice(self, store):
        task = await store.create_task(OvernightTaskType.PROTOTYPE_WORK, "caching")
        presenter = MorningPresenter(store, expiration_hours=12)

        choice = await presenter.create_choice(task.id, [outcome("A", score=60), outcome("B", score=88)])

        stored = await store.get_morning_choice(task.id)
        assert stored.id == choice.id
        assert stored.recommendation == "B"
        assert [o["label"] for o in stored.options] == ["B", "A"]
        assert stored.options[0]["score"] == 88
        assert stored.expires_at is not None
        assert stored.selected_label is None
