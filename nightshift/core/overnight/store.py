"""
Overnight Task Store
====================

Persistence contract for overnight tasks, iterations, milestones,
morning choices and proposals, with a SQLAlchemy implementation.

The orchestrators only talk to the TaskStore protocol; the schema stays
behind SqlTaskStore.
"""

from datetime import datetime, timezone
from typing import Any, Optional, Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nightshift.core.models import (
    ApproachLabel,
    ApproachName,
    IterationStatus,
    MilestoneType,
    MorningChoice,
    OvernightIteration,
    OvernightMilestone,
    OvernightTask,
    OvernightTaskStatus,
    OvernightTaskType,
    Proposal,
    ProposalStage,
    RiskLevel,
)

logger = structlog.get_logger()


class TaskStore(Protocol):
    """What the engine needs from storage."""

    async def create_task(
        self,
        task_type: OvernightTaskType,
        subject: str,
        constraints: Optional[list[str]] = None,
        **fields: Any,
    ) -> OvernightTask: ...

    async def get_task(self, task_id: str) -> Optional[OvernightTask]: ...

    async def get_queued_tasks(self, limit: int = 10) -> list[OvernightTask]: ...

    async def update_task_status(
        self,
        task_id: str,
        status: OvernightTaskStatus,
        **fields: Any,
    ) -> Optional[OvernightTask]: ...

    async def append_task_artifact(self, task_id: str, path: str) -> None: ...

    async def create_iteration(
        self,
        task_id: str,
        label: ApproachLabel,
        approach_name: ApproachName,
        executor: str,
        strategy: Optional[str] = None,
    ) -> OvernightIteration: ...

    async def update_iteration(self, iteration_id: str, **fields: Any) -> Optional[OvernightIteration]: ...

    async def get_iterations(self, task_id: str) -> list[OvernightIteration]: ...

    async def create_milestone(
        self,
        task_id: str,
        milestone_type: MilestoneType,
        message: str,
        data: Optional[dict] = None,
    ) -> OvernightMilestone: ...

    async def create_morning_choice(
        self,
        task_id: str,
        options: list[dict],
        recommendation: Optional[str],
        recommendation_reason: Optional[str],
        expires_at: Optional[datetime],
    ) -> MorningChoice: ...


class SqlTaskStore:
    """TaskStore backed by SQLAlchemy async sessions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _add(self, obj: Any) -> Any:
        async with self._session_factory() as session:
            session.add(obj)
            await session.commit()
            await session.refresh(obj)
            return obj

    async def _update(self, model: type, obj_id: str, fields: dict[str, Any]) -> Any:
        async with self._session_factory() as session:
            obj = await session.get(model, obj_id)
            if obj is None:
                return None
            for name, value in fields.items():
                setattr(obj, name, value)
            await session.commit()
            await session.refresh(obj)
            return obj

    # ==========================================================================
    # Tasks
    # ==========================================================================

    async def create_task(
        self,
        task_type: OvernightTaskType,
        subject: str,
        constraints: Optional[list[str]] = None,
        **fields: Any,
    ) -> OvernightTask:
        task = await self._add(OvernightTask(
            task_type=task_type,
            subject=subject,
            constraints=list(constraints or []),
            status=OvernightTaskStatus.QUEUED,
            **fields,
        ))
        logger.info("Overnight task queued", task_id=task.id, task_type=task_type.value)
        return task

    async def get_task(self, task_id: str) -> Optional[OvernightTask]:
        async with self._session_factory() as session:
            return await session.get(OvernightTask, task_id)

    async def get_queued_tasks(self, limit: int = 10) -> list[OvernightTask]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(OvernightTask)
                .where(OvernightTask.status == OvernightTaskStatus.QUEUED)
                .order_by(OvernightTask.priority.desc(), OvernightTask.created_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_tasks(self, limit: int = 20) -> list[OvernightTask]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(OvernightTask).order_by(OvernightTask.created_at.desc()).limit(limit)
            )
            return list(result.scalars().all())

    async def update_task_status(
        self,
        task_id: str,
        status: OvernightTaskStatus,
        **fields: Any,
    ) -> Optional[OvernightTask]:
        now = datetime.now(timezone.utc)
        updates: dict[str, Any] = {"status": status, **fields}
        if status in (OvernightTaskStatus.PLANNING, OvernightTaskStatus.EXECUTING) and "started_at" not in fields:
            task = await self.get_task(task_id)
            if task is not None and task.started_at is None:
                updates["started_at"] = now
        if status in (OvernightTaskStatus.READY, OvernightTaskStatus.FAILED):
            updates.setdefault("completed_at", now)
        return await self._update(OvernightTask, task_id, updates)

    async def append_task_artifact(self, task_id: str, path: str) -> None:
        async with self._session_factory() as session:
            task = await session.get(OvernightTask, task_id)
            if task is None:
                return
            # New list so the JSON column registers the change
            task.artifacts = [*task.artifacts, path]
            await session.commit()

    # ==========================================================================
    # Iterations
    # ==========================================================================

    async def create_iteration(
        self,
        task_id: str,
        label: ApproachLabel,
        approach_name: ApproachName,
        executor: str,
        strategy: Optional[str] = None,
    ) -> OvernightIteration:
        return await self._add(OvernightIteration(
            task_id=task_id,
            label=label,
            approach_name=approach_name,
            executor=executor,
            strategy=strategy,
            status=IterationStatus.PENDING,
        ))

    async def update_iteration(self, iteration_id: str, **fields: Any) -> Optional[OvernightIteration]:
        return await self._update(OvernightIteration, iteration_id, fields)

    async def get_iterations(self, task_id: str) -> list[OvernightIteration]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(OvernightIteration)
                .where(OvernightIteration.task_id == task_id)
                .order_by(OvernightIteration.label)
            )
            return list(result.scalars().all())

    # ==========================================================================
    # Milestones & Choices
    # ==========================================================================

    async def create_milestone(
        self,
        task_id: str,
        milestone_type: MilestoneType,
        message: str,
        data: Optional[dict] = None,
    ) -> OvernightMilestone:
        return await self._add(OvernightMilestone(
            task_id=task_id,
            milestone_type=milestone_type,
            message=message,
            data=data,
        ))

    async def get_milestones(self, task_id: str) -> list[OvernightMilestone]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(OvernightMilestone)
                .where(OvernightMilestone.task_id == task_id)
                .order_by(OvernightMilestone.created_at)
            )
            return list(result.scalars().all())

    async def create_morning_choice(
        self,
        task_id: str,
        options: list[dict],
        recommendation: Optional[str],
        recommendation_reason: Optional[str],
        expires_at: Optional[datetime],
    ) -> MorningChoice:
        return await self._add(MorningChoice(
            task_id=task_id,
            options=options,
            recommendation=recommendation,
            recommendation_reason=recommendation_reason,
            expires_at=expires_at,
        ))

    async def get_morning_choice(self, task_id: str) -> Optional[MorningChoice]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(MorningChoice)
                .where(MorningChoice.task_id == task_id)
                .order_by(MorningChoice.created_at.desc())
                .limit(1)
            )
            return result.scalars().first()

    # ==========================================================================
    # Proposals
    # ==========================================================================

    async def create_proposal(
        self,
        title: str,
        description: Optional[str] = None,
        risk: RiskLevel = RiskLevel.LOW,
        **fields: Any,
    ) -> Proposal:
        return await self._add(Proposal(title=title, description=description, risk=risk, **fields))

    async def get_proposal(self, proposal_id: str) -> Optional[Proposal]:
        async with self._session_factory() as session:
            return await session.get(Proposal, proposal_id)

    async def list_proposals(self, stage: Optional[ProposalStage] = None) -> list[Proposal]:
        async with self._session_factory() as session:
            query = select(Proposal).order_by(Proposal.created_at)
            if stage is not None:
                query = query.where(Proposal.stage == stage)
            result = await session.execute(query)
            return list(result.scalars().all())

    async def update_proposal(self, proposal_id: str, **fields: Any) -> Optional[Proposal]:
        return await self._update(Proposal, proposal_id, fields)
