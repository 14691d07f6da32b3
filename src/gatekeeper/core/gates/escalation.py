"""
Escalation Manager - Human attention when automatic repair runs out.

Escalations are only ever created by the self-healing loop after its
attempt budget is exhausted.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.core.models import AgentRole, Escalation, EscalationStatus

logger = logging.getLogger(__name__)


class EscalationManager:
    """
    Escalation records for a project.

    Levels run L1 (team lead) to L3 (stakeholder). Self-healing failures
    open at L1 with severity "high".
    """

    LEVELS = ["L1", "L2", "L3"]

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_escalation(
        self,
        project_id: UUID,
        from_role: AgentRole,
        summary: str,
        gate_id: Optional[str] = None,
        severity: str = "high",
        escalation_type: str = "technical",
        level: str = "L1",
        context: Optional[dict] = None,
    ) -> Escalation:
        """
        Open a pending escalation.

        Args:
            project_id: Project needing attention
            from_role: Role whose work could not be repaired
            summary: Human readable reason
            gate_id: Gate the failure happened at
            severity: Severity label
            escalation_type: Kind of problem
            level: Escalation level
            context: Structured details (execution id, attempts, errors)

        Returns:
            Created Escalation
        """
        if level not in self.LEVELS:
            raise ValueError(f"Unknown escalation level: {level}")

        escalation = Escalation(
            project_id=project_id,
            gate_id=gate_id,
            from_role=from_role,
            level=level,
            escalation_type=escalation_type,
            severity=severity,
            summary=summary,
            context=context or {},
            status=EscalationStatus.PENDING,
        )
        self.db.add(escalation)
        await self.db.commit()
        await self.db.refresh(escalation)

        logger.warning(
            f"Escalation {escalation.id} opened for {from_role.value} ({severity}, {level}): {summary}"
        )
        return escalation

    async def resolve(self, escalation_id: UUID, actor: str, resolution: str) -> Escalation:
        """Close an escalation with a resolution note."""
        escalation = await self.db.get(Escalation, escalation_id)
        if escalation is None:
            raise LookupError(f"Escalation not found: {escalation_id}")
        if escalation.status == EscalationStatus.RESOLVED:
            return escalation

        escalation.status = EscalationStatus.RESOLVED
        escalation.resolved_by = actor
        escalation.resolved_at = datetime.now(timezone.utc)
        escalation.resolution = resolution
        await self.db.commit()

        logger.info(f"Escalation {escalation_id} resolved by {actor}")
        return escalation

    async def pending_for_project(self, project_id: UUID) -> list[Escalation]:
        result = await self.db.execute(
            select(Escalation)
            .where(
                Escalation.project_id == project_id,
                Escalation.status == EscalationStatus.PENDING,
            )
            .order_by(Escalation.created_at)
        )
        return list(result.scalars().all())

    async def has_pending(
        self,
        project_id: UUID,
        role: AgentRole,
        gate_id: Optional[str] = None,
    ) -> bool:
        query = select(Escalation.id).where(
            Escalation.project_id == project_id,
            Escalation.from_role == role,
            Escalation.status == EscalationStatus.PENDING,
        )
        if gate_id is not None:
            query = query.where(Escalation.gate_id == gate_id)
        result = await self.db.execute(query.limit(1))
        return result.first() is not None
