"""
Overnight Tasks
===============

Ad-hoc multi-phase tasks queued during the day and run by the night
supervisor. Research dives fan out queries and synthesize three
interpretations; prototype work builds three competing approaches in
isolated workspaces. Both end in a morning choice.
"""

from .base import BaseOrchestrator, IterationOutcome, OrchestrationError, OrchestratorResult
from .intent import OvernightIntent, parse_overnight_intent
from .presenter import MorningPresenter
from .prototype import PrototypeOrchestrator
from .research import ResearchOrchestrator
from .store import SqlTaskStore, TaskStore
from .workspace import WorkspaceManager

__all__ = [
    "BaseOrchestrator",
    "IterationOutcome",
    "MorningPresenter",
    "OrchestrationError",
    "OrchestratorResult",
    "OvernightIntent",
    "PrototypeOrchestrator",
    "ResearchOrchestrator",
    "SqlTaskStore",
    "TaskStore",
    "WorkspaceManager",
    "parse_overnight_intent",
]
