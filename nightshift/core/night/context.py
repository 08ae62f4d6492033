"""
Night Context
=============

Builds the context pack handed to the planning executor.

Each section is read, length-capped on its own and only then concatenated,
so one oversized file can never crowd out the rest.
"""

import platform
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Protocol

import structlog

logger = structlog.get_logger()

TRUNCATION_MARKER = "\n\n[... truncated for context limit ...]"

# Per-section caps in characters
SECTION_LIMITS: dict[str, int] = {
    "daily_log": 10000,
    "recent_logs": 8000,
    "me": 3000,
    "work": 5000,
    "projects": 2000,
    "ideas": 4000,
    "tools": 2000,
    "last_briefing": 2000,
}

_IDEA_HEADER = re.compile(r"^#{2,3}\s+.+")
_CLOSED_IDEA_TAGS = ("[archived]", "[done]", "[completed]")
_PROJECTS_SECTION = re.compile(r"^## Projects.*?(?=^## |\Z)", re.IGNORECASE | re.MULTILINE | re.DOTALL)
_BULLET = re.compile(r"^[-*]\s+(.+)$", re.MULTILINE)


@dataclass
class ContextPack:
    """Compiled context plus what went into it."""
    compiled: str
    sections: dict[str, str] = field(default_factory=dict)
    pending_ideas: list[str] = field(default_factory=list)
    active_projects: list[str] = field(default_factory=list)
    built_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ContextProvider(Protocol):
    async def build_context_pack(self) -> ContextPack: ...


def truncate(content: str, limit: int) -> str:
    if len(content) <= limit:
        return content
    return content[:limit] + TRUNCATION_MARKER


def extract_pending_ideas(content: str, limit: int = 10) -> list[str]:
    """Idea blocks under ##/### headers that are not archived or done."""
    ideas: list[str] = []
    current: list[str] = []
    open_idea = False

    for line in content.splitlines():
        if _IDEA_HEADER.match(line):
            if open_idea and current:
                ideas.append("\n".join(current).strip())
            lowered = line.lower()
            open_idea = not any(tag in lowered for tag in _CLOSED_IDEA_TAGS)
            current = [line] if open_idea else []
        elif open_idea:
            current.append(line)

    if open_idea and current:
        ideas.append("\n".join(current).strip())
    return ideas[:limit]


def extract_active_projects(work_content: str, limit: int = 10) -> list[str]:
    match = _PROJECTS_SECTION.search(work_content)
    if not match:
        return []
    return [bullet.strip() for bullet in _BULLET.findall(match.group(0))][:limit]


class FileContextProvider:
    """Reads the context pack from the memory and output directories."""

    def __init__(
        self,
        memory_dir: Path,
        output_dir: Path,
        daily_log_days: int = 3,
        max_pending_ideas: int = 10,
        section_limits: Optional[dict[str, int]] = None,
        today: Optional[date] = None,
    ):
        self.memory_dir = Path(memory_dir)
        self.output_dir = Path(output_dir)
        self.daily_log_days = daily_log_days
        self.max_pending_ideas = max_pending_ideas
        self.section_limits = {**SECTION_LIMITS, **(section_limits or {})}
        self._today = today

    def _read(self, path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Failed to read context file", path=str(path), error=str(e))
            return ""

    def _cap(self, name: str, content: str) -> str:
        return truncate(content, self.section_limits[name])

    async def build_context_pack(self) -> ContextPack:
        today = self._today or date.today()
        daily_dir = self.memory_dir / "daily"

        daily_log = self._read(daily_dir / f"{today.isoformat()}.md")
        recent = []
        for offset in range(1, self.daily_log_days):
            day = today - timedelta(days=offset)
            log = self._read(daily_dir / f"{day.isoformat()}.md")
            if log:
                recent.append(f"## {day.isoformat()}\n\n{log}")

        me = self._read(self.memory_dir / "me.md")
        work = self._read(self.memory_dir / "work.md")
        tools = self._read(self.memory_dir / "tools.md")
        ideas = extract_pending_ideas(self._read(self.memory_dir / "ideas.md"), self.max_pending_ideas)
        projects = extract_active_projects(work)
        last_briefing = self._read(self.output_dir / "handoffs" / "morning_briefing.md")

        sections: dict[str, str] = {}
        if daily_log:
            sections["daily_log"] = self._cap("daily_log", daily_log)
        if recent:
            sections["recent_logs"] = self._cap("recent_logs", "\n\n---\n\n".join(recent))
        if me:
            sections["me"] = self._cap("me", me)
        if work:
            sections["work"] = self._cap("work", work)
        if projects:
            sections["projects"] = self._cap("projects", "\n".join(f"- {p}" for p in projects))
        if ideas:
            sections["ideas"] = self._cap("ideas", "\n\n---\n\n".join(ideas[:5]))
        if tools:
            sections["tools"] = self._cap("tools", tools)
        if last_briefing:
            sections["last_briefing"] = self._cap("last_briefing", last_briefing)

        compiled = self._compile(sections)
        logger.info(
            "Context pack built",
            sections=list(sections),
            pending_ideas=len(ideas),
            active_projects=len(projects),
            length=len(compiled),
        )
        return ContextPack(
            compiled=compiled,
            sections=sections,
            pending_ideas=ideas,
            active_projects=projects,
        )

    def _compile(self, sections: dict[str, str]) -> str:
        now = datetime.now()
        titles = {
            "daily_log": "Today's Daily Log",
            "recent_logs": f"Recent Activity (Last {self.daily_log_days} Days)",
            "me": "Identity (me.md)",
            "work": "Work Context (work.md)",
            "projects": "Active Projects",
            "ideas": "Pending Ideas",
            "tools": "Available Tools (tools.md)",
            "last_briefing": "Previous Morning Briefing",
        }
        parts = [
            "# Night Mode Context Pack\n\n"
            "## System Information\n"
            f"Local Time: {now.isoformat(timespec='minutes')}\n"
            f"Day of Week: {now.strftime('%A')}\n"
            f"Platform: {platform.system()}"
        ]
        parts += [f"## {titles[name]}\n{body}" for name, body in sections.items()]
        return "\n\n---\n\n".join(parts)
