"""
Context Pack Tests
==================

Section reading, per-section caps, idea and project extraction.
"""

from datetime import date

from nightshift.core.night.context import (
    TRUNCATION_MARKER,
    FileContextProvider,
    extract_active_projects,
    extract_pending_ideas,
    truncate,
)

IDEAS = """# Ideas

## Auto tagging
Tag notes automatically.

## Old thing [archived]
Nobody cares any more.

### Voice memos
Transcribe and file them.

#### Not a header level we track
"""

WORK = """# Work

## Projects
- nightshift
- notes app

## Other
- not a project
"""


class TestExtraction:
    """Markdown helpers."""

    def test_pending_ideas_skip_archived(self):
        ideas = extract_pending_ideas(IDEAS)

        assert len(ideas) == 2
        assert ideas[0].startswith("## Auto tagging")
        assert ideas[1].startswith("### Voice memos")
        assert all("Nobody cares" not in idea for idea in ideas)

    def test_pending_ideas_limit(self):
        assert len(extract_pending_ideas(IDEAS, limit=1)) == 1

    def test_active_projects(self):
        assert extract_active_projects(WORK) == ["nightshift", "notes app"]
        assert extract_active_projects("# nothing here") == []

    def test_truncate(self):
        assert truncate("short", 10) == "short"
        assert truncate("0123456789abc", 10) == "0123456789" + TRUNCATION_MARKER


class TestFileContextProvider:
    """Pack assembly from the memory directory."""

    async def test_builds_sections(self, tmp_path):
        memory = tmp_path / "memory"
        (memory / "daily").mkdir(parents=True)
        (memory / "daily" / "2026-10-18.md").write_text("Today: shipped the queue.")
        (memory / "daily" / "2026-10-17.md").write_text("Yesterday: wrote tests.")
        (memory / "daily" / "2026-10-10.md").write_text("Too old to include.")
        (memory / "me.md").write_text("I build tools.")
        (memory / "work.md").write_text(WORK)
        (memory / "ideas.md").write_text(IDEAS)
        handoffs = tmp_path / "out" / "handoffs"
        handoffs.mkdir(parents=True)
        (handoffs / "morning_briefing.md").write_text("## Morning Briefing")

        provider = FileContextProvider(memory, tmp_path / "out", daily_log_days=3, today=date(2026, 10, 18))
        pack = await provider.build_context_pack()

        assert pack.sections["daily_log"] == "Today: shipped the queue."
        assert "Yesterday: wrote tests." in pack.sections["recent_logs"]
        assert "Too old" not in pack.compiled
        assert pack.active_projects == ["nightshift", "notes app"]
        assert len(pack.pending_ideas) == 2
        assert "## Previous Morning Briefing" in pack.compiled
        assert pack.compiled.startswith("# Night Mode Context Pack")

    async def test_each_section_capped(self, tmp_path):
        memory = tmp_path / "memory"
        (memory / "daily").mkdir(parents=True)
        (memory / "daily" / "2026-10-18.md").write_text("x" * 500)
        (memory / "me.md").write_text("short identity")

        provider = FileContextProvider(
            memory,
            tmp_path / "out",
            section_limits={"daily_log": 100},
            today=date(2026, 10, 18),
        )
        pack = await provider.build_context_pack()

        assert pack.sections["daily_log"] == "x" * 100 + TRUNCATION_MARKER
        assert pack.sections["me"] == "short identity"

    async def test_missing_files_give_empty_pack(self, tmp_path):
        provider = FileContextProvider(tmp_path / "nope", tmp_path / "out")

        pack = await provider.build_context_pack()

        assert pack.sections == {}
        assert pack.pending_ideas == []
        assert "System Information" in pack.compiled
