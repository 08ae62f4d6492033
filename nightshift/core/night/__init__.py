"""
Night Supervisor
================

Plans the night from the context pack, runs the job queue under the
risk/approval rules, processes queued overnight tasks, and writes the
morning briefing.
"""

from .context import ContextPack, FileContextProvider
from .jobs import Job, JobQueue, JobResult
from .lock import LockHeldError, SupervisorLock
from .proposals import ProposalService
from .supervisor import NightSession, NightSupervisor, SupervisorBusyError

__all__ = [
    "ContextPack",
    "FileContextProvider",
    "Job",
    "JobQueue",
    "JobResult",
    "LockHeldError",
    "NightSession",
    "NightSupervisor",
    "ProposalService",
    "SupervisorBusyError",
]
