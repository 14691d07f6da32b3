"""
Deliverable and Proof Tracker.

Answers "is this gate's work complete?" from deliverable rows and proof
artifacts. Deliverables are always filtered by the gate they belong to,
and only the most recent artifact per proof type is ever considered.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.core.exceptions import ProjectNotFound
from gatekeeper.core.gates.catalog import GateCatalog
from gatekeeper.core.models import (
    AgentRole,
    Deliverable,
    DeliverableStatus,
    Project,
    ProjectCategory,
    ProofArtifact,
    ProofType,
)

logger = logging.getLogger(__name__)


# Tried in order; the last one accepts any percentage
COVERAGE_PATTERNS = [
    re.compile(r"coverage[:\s]+(\d+(?:\.\d+)?)\s*%", re.IGNORECASE),
    re.compile(r"(\d+(?:\.\d+)?)\s*%\s*coverage", re.IGNORECASE),
    re.compile(r"total[:\s]+(\d+(?:\.\d+)?)\s*%", re.IGNORECASE),
    re.compile(r"lines[:\s]+(\d+(?:\.\d+)?)\s*%", re.IGNORECASE),
    re.compile(r"statements[:\s]+(\d+(?:\.\d+)?)\s*%", re.IGNORECASE),
    re.compile(r'"coverage"[:\s]*(\d+(?:\.\d+)?)', re.IGNORECASE),
    re.compile(r"(\d+(?:\.\d+)?)\s*%"),
]


@dataclass
class ProofCheck:
    """Outcome of a proof requirement check."""
    ok: bool
    missing_types: list[str] = field(default_factory=list)   # No artifact, or latest one failing
    failing_types: list[str] = field(default_factory=list)   # Latest artifact exists and failed

    def merge(self, other: "ProofCheck") -> "ProofCheck":
        missing = self.missing_types + [t for t in other.missing_types if t not in self.missing_types]
        failing = self.failing_types + [t for t in other.failing_types if t not in self.failing_types]
        return ProofCheck(ok=self.ok and other.ok, missing_types=missing, failing_types=failing)


def latest_by_type(artifacts: Iterable[ProofArtifact]) -> dict[ProofType, ProofArtifact]:
    """Most recent artifact per proof type. ``artifacts`` must be oldest first."""
    latest: dict[ProofType, ProofArtifact] = {}
    for artifact in artifacts:
        latest[artifact.proof_type] = artifact
    return latest


def latest_by_role_and_type(
    artifacts: Iterable[ProofArtifact],
) -> dict[tuple[Optional[AgentRole], ProofType], ProofArtifact]:
    latest: dict[tuple[Optional[AgentRole], ProofType], ProofArtifact] = {}
    for artifact in artifacts:
        latest[(artifact.role, artifact.proof_type)] = artifact
    return latest


def proof_requirements_satisfied(
    gate_id: str,
    artifacts: Sequence[ProofArtifact],
    required: Optional[Sequence[ProofType]] = None,
) -> ProofCheck:
    """
    Check that every required proof type has a passing latest artifact.

    Args:
        gate_id: Gate the artifacts belong to (used for logging only)
        artifacts: Artifacts for the gate, oldest first
        required: Required proof types. Empty means at least one passing
            artifact of any type.

    Returns:
        ProofCheck listing missing and failing types
    """
    latest = latest_by_type(artifacts)

    if not required:
        if any(a.passed for a in latest.values()):
            return ProofCheck(ok=True)
        failing = sorted(t.value for t, a in latest.items() if not a.passed)
        logger.debug(f"{gate_id}: no passing proof artifact of any type")
        return ProofCheck(ok=False, missing_types=["any"], failing_types=failing)

    missing: list[str] = []
    failing: list[str] = []
    for proof_type in required:
        artifact = latest.get(proof_type)
        if artifact is None:
            missing.append(proof_type.value)
        elif not artifact.passed:
            missing.append(proof_type.value)
            failing.append(proof_type.value)

    return ProofCheck(ok=not missing, missing_types=missing, failing_types=failing)


def role_proofs_satisfied(
    artifacts: Sequence[ProofArtifact],
    roles: Iterable[AgentRole],
    proof_types: Sequence[ProofType],
) -> ProofCheck:
    """
    Check that each role's latest artifact of every type is passing.

    Missing and failing entries are reported as ``"<role>:<type>"``.
    """
    latest = latest_by_role_and_type(artifacts)
    missing: list[str] = []
    failing: list[str] = []
    for role in roles:
        for proof_type in proof_types:
            artifact = latest.get((role, proof_type))
            key = f"{role.value}:{proof_type.value}"
            if artifact is None:
                missing.append(key)
            elif not artifact.passed:
                missing.append(key)
                failing.append(key)
    return ProofCheck(ok=not missing, missing_types=missing, failing_types=failing)


def parse_coverage_percentage(text: Optional[str]) -> Optional[float]:
    """Pull a coverage percentage out of a report summary."""
    if not text:
        return None
    for pattern in COVERAGE_PATTERNS:
        match = pattern.search(text)
        if match:
            return float(match.group(1))
    return None


def coverage_satisfied(artifacts: Sequence[ProofArtifact], threshold: float) -> tuple[bool, Optional[float]]:
    """
    Check the latest coverage report against a threshold.

    A passing report whose summary carries no percentage is accepted.

    Returns:
        (ok, parsed coverage or None)
    """
    report = latest_by_type(artifacts).get(ProofType.COVERAGE_REPORT)
    if report is None or not report.passed:
        return False, None
    coverage = parse_coverage_percentage(report.summary)
    if coverage is None:
        return True, None
    return coverage >= threshold, coverage


class DeliverableTracker:
    """Persistence side of deliverable and proof tracking."""

    def __init__(self, db: AsyncSession, catalog: Optional[GateCatalog] = None):
        self.db = db
        self.catalog = catalog or GateCatalog.default()

    async def _current_gate_id(self, project_id: UUID) -> Optional[str]:
        project = await self.db.get(Project, project_id)
        if project is None:
            raise ProjectNotFound(project_id)
        return project.current_gate_id

    # ==========================================================================
    # Deliverables
    # ==========================================================================

    async def create_deliverables_for_gate(
        self,
        project_id: UUID,
        category: ProjectCategory,
        gate_id: str,
    ) -> list[Deliverable]:
        """
        Add the catalog deliverables for a gate to the session.

        The caller owns the transaction; nothing is committed here.
        """
        deliverables = [
            Deliverable(
                project_id=project_id,
                gate_id=gate_id,
                name=spec.name,
                owner=spec.owner,
                path=spec.path,
                status=DeliverableStatus.NOT_STARTED,
            )
            for spec in self.catalog.deliverables_for(category, gate_id)
        ]
        self.db.add_all(deliverables)
        return deliverables

    async def get_deliverables(
        self,
        project_id: UUID,
        gate_id: str,
        roles: Optional[Iterable[AgentRole]] = None,
    ) -> list[Deliverable]:
        query = select(Deliverable).where(
            Deliverable.project_id == project_id,
            Deliverable.gate_id == gate_id,
        )
        if roles is not None:
            query = query.where(Deliverable.owner.in_(list(roles)))
        result = await self.db.execute(query.order_by(Deliverable.created_at))
        return list(result.scalars().all())

    async def incomplete_deliverables(
        self,
        project_id: UUID,
        gate_id: Optional[str] = None,
    ) -> list[Deliverable]:
        gate_id = gate_id or await self._current_gate_id(project_id)
        if gate_id is None:
            return []
        deliverables = await self.get_deliverables(project_id, gate_id)
        return [d for d in deliverables if d.status != DeliverableStatus.COMPLETE]

    async def all_deliverables_complete(
        self,
        project_id: UUID,
        gate_id: Optional[str] = None,
    ) -> bool:
        """True iff every deliverable of the gate (default: current gate) is complete."""
        return not await self.incomplete_deliverables(project_id, gate_id)

    async def _set_role_status(
        self,
        project_id: UUID,
        role: AgentRole,
        gate_id: Optional[str],
        status: DeliverableStatus,
    ) -> int:
        gate_id = gate_id or await self._current_gate_id(project_id)
        if gate_id is None:
            return 0
        deliverables = await self.get_deliverables(project_id, gate_id, roles=[role])
        changed = 0
        for deliverable in deliverables:
            if deliverable.status == status or deliverable.status == DeliverableStatus.COMPLETE:
                continue
            deliverable.status = status
            if status == DeliverableStatus.COMPLETE:
                deliverable.completed_at = datetime.now(timezone.utc)
            changed += 1
        await self.db.commit()
        return changed

    async def mark_deliverable_complete(
        self,
        project_id: UUID,
        role: AgentRole,
        gate_id: Optional[str] = None,
    ) -> int:
        """
        Mark every deliverable the role owns at the gate as complete.

        Returns:
            Number of deliverables changed
        """
        changed = await self._set_role_status(project_id, role, gate_id, DeliverableStatus.COMPLETE)
        if changed:
            logger.info(f"Marked {changed} deliverable(s) complete for {role.value}")
        return changed

    async def mark_role_deliverables_in_progress(
        self,
        project_id: UUID,
        role: AgentRole,
        gate_id: Optional[str] = None,
    ) -> int:
        return await self._set_role_status(project_id, role, gate_id, DeliverableStatus.IN_PROGRESS)

    # ==========================================================================
    # Proof artifacts
    # ==========================================================================

    async def record_proof_artifact(
        self,
        project_id: UUID,
        gate_id: str,
        proof_type: ProofType,
        passed: bool,
        summary: Optional[str] = None,
        role: Optional[AgentRole] = None,
        file_path: Optional[str] = None,
    ) -> ProofArtifact:
        """Append a proof artifact. Earlier artifacts are never modified."""
        artifact = ProofArtifact(
            project_id=project_id,
            gate_id=gate_id,
            proof_type=proof_type,
            passed=passed,
            summary=summary,
            role=role,
            file_path=file_path,
        )
        self.db.add(artifact)
        await self.db.commit()
        await self.db.refresh(artifact)

        verdict = "pass" if passed else "fail"
        role_label = role.value if role else "-"
        logger.info(f"Recorded {proof_type.value} ({verdict}) for {gate_id} by {role_label}")
        return artifact

    async def artifacts_for_gate(self, project_id: UUID, gate_id: str) -> list[ProofArtifact]:
        """All artifacts for a gate, oldest first."""
        result = await self.db.execute(
            select(ProofArtifact)
            .where(
                ProofArtifact.project_id == project_id,
                ProofArtifact.gate_id == gate_id,
            )
            .order_by(ProofArtifact.created_at)
        )
        return list(result.scalars().all())
