"""
Handoff Manager - Work passed between roles.

Records handoffs, detects "handoff to <role>" in agent output and builds
the short context block each role receives before it runs.
"""

import logging
import re
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.core.models import (
    AgentRole,
    Gate,
    Handoff,
    HandoffStatus,
    Task,
    TaskStatus,
)

logger = logging.getLogger(__name__)

HANDOFF_PATTERN = re.compile(r"handoff to (\w+)", re.IGNORECASE)


class HandoffManager:
    """Creates and reads handoff records for a project."""

    def __init__(self, db: AsyncSession, context_limit: int = 10):
        self.db = db
        self.context_limit = context_limit

    async def create_handoff(
        self,
        project_id: UUID,
        from_role: AgentRole,
        to_role: AgentRole,
        phase: Optional[str] = None,
        status: HandoffStatus = HandoffStatus.COMPLETE,
        notes: Optional[str] = None,
        deliverables: Optional[list[str]] = None,
    ) -> Handoff:
        """
        Record a handoff between two roles.

        Args:
            project_id: Project the handoff belongs to
            from_role: Role handing work off
            to_role: Role receiving it
            phase: Project phase at the time of the handoff
            status: Complete, or partial when work was cut short
            notes: Free-form note for the receiving role
            deliverables: Names of deliverables passed along

        Returns:
            Created Handoff
        """
        handoff = Handoff(
            project_id=project_id,
            from_role=from_role,
            to_role=to_role,
            phase=phase,
            status=status,
            notes=notes,
            deliverables=list(deliverables or []),
        )
        self.db.add(handoff)
        await self.db.commit()
        await self.db.refresh(handoff)

        logger.info(
            f"Created handoff {handoff.id}: {from_role.value}->{to_role.value} [{status.value}]"
        )
        return handoff

    @staticmethod
    def parse_successor(output: str) -> Optional[AgentRole]:
        """Role named by a "handoff to <role>" phrase, if it is a known role."""
        match = HANDOFF_PATTERN.search(output or "")
        if not match:
            return None
        name = match.group(1).lower()
        try:
            return AgentRole(name)
        except ValueError:
            logger.debug(f"Ignoring handoff to unknown role '{name}'")
            return None

    async def recent_handoffs(
        self,
        project_id: UUID,
        to_role: Optional[AgentRole] = None,
        limit: Optional[int] = None,
    ) -> list[Handoff]:
        """Most recent handoffs first."""
        query = select(Handoff).where(Handoff.project_id == project_id)
        if to_role is not None:
            query = query.where(Handoff.to_role == to_role)
        query = query.order_by(Handoff.created_at.desc()).limit(limit or self.context_limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def build_context(self, project_id: UUID, gate_id: str, role: AgentRole) -> str:
        """
        Context block for a role about to run at a gate.

        Lists the role's open tasks, handoffs addressed to it and the
        gate's passing criteria.
        """
        sections: list[str] = []

        tasks = await self.db.execute(
            select(Task)
            .where(
                Task.project_id == project_id,
                Task.role == role,
                Task.status != TaskStatus.COMPLETE,
            )
            .order_by(Task.sequence)
        )
        task_lines = [f"- [{t.priority}] {t.description}" for t in tasks.scalars().all()]
        if task_lines:
            sections.append("## Assigned Tasks\n" + "\n".join(task_lines))

        handoffs = await self.recent_handoffs(project_id, to_role=role)
        if handoffs:
            lines = []
            for h in handoffs:
                line = f"- From {h.from_role.value} ({h.status.value})"
                if h.notes:
                    line += f": {h.notes}"
                if h.deliverables:
                    line += f" [{', '.join(h.deliverables)}]"
                lines.append(line)
            sections.append("## Handoffs\n" + "\n".join(lines))

        gate = await self.db.execute(
            select(Gate).where(Gate.project_id == project_id, Gate.gate_id == gate_id)
        )
        gate = gate.scalar_one_or_none()
        if gate is not None and gate.passing_criteria:
            sections.append(f"## Gate {gate_id} Passing Criteria\n{gate.passing_criteria}")

        return "\n\n".join(sections)
