"""
Proposal Lifecycle
==================

Stage machine for discovered work:

    idea -> research -> plan -> archived
      \\________\\________\\-> rejected

archived and rejected are terminal. Each approval advances exactly one
stage; rejection is allowed from any non-terminal stage.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog

from nightshift.core.models import ApprovalStatus, Proposal, ProposalStage, RiskLevel
from nightshift.core.overnight.store import SqlTaskStore

logger = structlog.get_logger()


PROPOSAL_TRANSITIONS: dict[ProposalStage, set[ProposalStage]] = {
    ProposalStage.IDEA: {ProposalStage.RESEARCH, ProposalStage.REJECTED},
    ProposalStage.RESEARCH: {ProposalStage.PLAN, ProposalStage.REJECTED},
    ProposalStage.PLAN: {ProposalStage.ARCHIVED, ProposalStage.REJECTED},
    ProposalStage.ARCHIVED: set(),
    ProposalStage.REJECTED: set(),
}

NEXT_STAGE: dict[ProposalStage, ProposalStage] = {
    ProposalStage.IDEA: ProposalStage.RESEARCH,
    ProposalStage.RESEARCH: ProposalStage.PLAN,
    ProposalStage.PLAN: ProposalStage.ARCHIVED,
}


class InvalidTransitionError(Exception):
    """Stage change not present in the transition table."""

    def __init__(self, current: ProposalStage, target: ProposalStage):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move proposal from {current.value} to {target.value}")


def is_terminal(stage: ProposalStage) -> bool:
    return not PROPOSAL_TRANSITIONS[stage]


def check_transition(current: ProposalStage, target: ProposalStage) -> None:
    if target not in PROPOSAL_TRANSITIONS[current]:
        raise InvalidTransitionError(current, target)


class ProposalService:
    """Applies lifecycle decisions and persists them through the store."""

    def __init__(self, store: SqlTaskStore):
        self.store = store

    async def create(
        self,
        title: str,
        description: Optional[str] = None,
        risk: RiskLevel = RiskLevel.LOW,
        target_project: Optional[str] = None,
        source_job_id: Optional[str] = None,
    ) -> Proposal:
        proposal = await self.store.create_proposal(
            title=title[:255],
            description=description,
            risk=risk,
            target_project=target_project,
            source_job_id=source_job_id,
        )
        logger.info("Proposal created", proposal_id=proposal.id, risk=risk.value)
        return proposal

    async def _get(self, proposal_id: str) -> Proposal:
        proposal = await self.store.get_proposal(proposal_id)
        if proposal is None:
            raise KeyError(f"Proposal not found: {proposal_id}")
        return proposal

    async def approve(self, proposal_id: str) -> Proposal:
        """
        Advance a proposal by one stage.

        Raises:
            KeyError: Unknown proposal
            InvalidTransitionError: Proposal is already terminal
        """
        proposal = await self._get(proposal_id)
        target = NEXT_STAGE.get(proposal.stage)
        if target is None:
            raise InvalidTransitionError(proposal.stage, proposal.stage)
        check_transition(proposal.stage, target)

        status = ApprovalStatus.APPROVED if is_terminal(target) else ApprovalStatus.PENDING
        updated = await self.store.update_proposal(
            proposal_id,
            stage=target,
            approval_status=status,
            snoozed_until=None,
        )
        logger.info("Proposal advanced", proposal_id=proposal_id, stage=target.value)
        return updated

    async def reject(self, proposal_id: str, reason: str = "") -> Proposal:
        proposal = await self._get(proposal_id)
        check_transition(proposal.stage, ProposalStage.REJECTED)
        updated = await self.store.update_proposal(
            proposal_id,
            stage=ProposalStage.REJECTED,
            approval_status=ApprovalStatus.REJECTED,
            rejection_reason=reason or None,
        )
        logger.info("Proposal rejected", proposal_id=proposal_id, reason=reason)
        return updated

    async def snooze(self, proposal_id: str, hours: int = 24) -> Proposal:
        proposal = await self._get(proposal_id)
        if is_terminal(proposal.stage):
            raise InvalidTransitionError(proposal.stage, proposal.stage)
        return await self.store.update_proposal(
            proposal_id,
            approval_status=ApprovalStatus.SNOOZED,
            snoozed_until=datetime.now(timezone.utc) + timedelta(hours=hours),
        )

    async def list_open(self) -> list[Proposal]:
        proposals = await self.store.list_proposals()
        return [p for p in proposals if not is_terminal(p.stage)]
