"""
Gate State Machine - Per-project gate lifecycle.

Owns every gate status change and the project's gate pointer:

    PENDING -> IN_REVIEW -> APPROVED
                        \\-> REJECTED

Approval is atomic. The gate is approved, its successor (with deliverables)
is created and the pointer advances inside a single transaction, so a crash
can never leave an approved gate without a successor.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.core.config import Settings, get_settings
from gatekeeper.core.exceptions import (
    AmbiguousApproval,
    GateNotFound,
    ProjectNotFound,
    TransitionDenied,
)
from gatekeeper.core.gates.catalog import COMPLETE_PHASE, GateCatalog
from gatekeeper.core.gates.notifications import NotificationTemplates, Notifier
from gatekeeper.core.gates.tracker import (
    DeliverableTracker,
    coverage_satisfied,
    proof_requirements_satisfied,
)
from gatekeeper.core.models import (
    Gate,
    GateStatus,
    Project,
    ProjectCategory,
    ProjectStatus,
)

logger = logging.getLogger(__name__)

NEGATIONS = frozenset({"no", "not", "don't", "dont", "never", "reject", "rejected"})


@dataclass
class ApprovalCheck:
    """Result of an approval precondition check."""
    ok: bool
    reason: Optional[str] = None


@dataclass
class ApprovalOutcome:
    """Result of a successful approval."""
    gate_id: str
    next_gate_id: Optional[str]
    project_complete: bool


class GateStateMachine:
    """
    Gate lifecycle service.

    Works on a single AsyncSession; callers running roles concurrently
    create one state machine per session.
    """

    def __init__(
        self,
        db: AsyncSession,
        catalog: Optional[GateCatalog] = None,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.catalog = catalog or GateCatalog.default()
        self.notifier = notifier or Notifier()
        self.settings = settings or get_settings()
        self.tracker = DeliverableTracker(db, self.catalog)

    # ==========================================================================
    # Lookups
    # ==========================================================================

    async def get_project(self, project_id: UUID) -> Project:
        project = await self.db.get(Project, project_id)
        if project is None:
            raise ProjectNotFound(project_id)
        return project

    async def get_gate(self, project_id: UUID, gate_id: str) -> Optional[Gate]:
        result = await self.db.execute(
            select(Gate).where(
                Gate.project_id == project_id,
                Gate.gate_id == gate_id,
            )
        )
        return result.scalar_one_or_none()

    async def require_gate(self, project_id: UUID, gate_id: str) -> Gate:
        gate = await self.get_gate(project_id, gate_id)
        if gate is None:
            raise GateNotFound(project_id, gate_id)
        return gate

    async def list_gates(self, project_id: UUID) -> list[Gate]:
        """All gates of a project in sequence order."""
        result = await self.db.execute(select(Gate).where(Gate.project_id == project_id))
        gates = list(result.scalars().all())
        return sorted(gates, key=lambda g: self.catalog.index(g.gate_id))

    async def get_current_gate(self, project_id: UUID) -> Optional[Gate]:
        project = await self.get_project(project_id)
        if project.current_gate_id is None:
            return None
        return await self.get_gate(project_id, project.current_gate_id)

    def _add_gate(self, project: Project, gate_id: str) -> Gate:
        """Stage a new PENDING gate. The caller commits."""
        definition = self.catalog.get(project.category, gate_id)
        gate = Gate(
            project_id=project.id,
            gate_id=gate_id,
            status=GateStatus.PENDING,
            requires_proof=definition.requires_proof,
            description=definition.description,
            passing_criteria=definition.passing_criteria,
        )
        self.db.add(gate)
        return gate

    async def _create_gate(self, project: Project, gate_id: str) -> Gate:
        """Stage a gate and its catalog deliverables in the current transaction."""
        gate = self._add_gate(project, gate_id)
        await self.tracker.create_deliverables_for_gate(project.id, project.category, gate_id)
        return gate

    # ==========================================================================
    # Creation
    # ==========================================================================

    async def initialize_gates(
        self,
        project_id: UUID,
        category: Optional[ProjectCategory] = None,
    ) -> Gate:
        """
        Create the first gate for a new project.

        Args:
            project_id: Project to initialize
            category: Optional category override stored on the project

        Returns:
            The first gate, PENDING

        Raises:
            TransitionDenied: If the project already has gates
        """
        project = await self.get_project(project_id)
        existing = await self.db.execute(
            select(Gate.id).where(Gate.project_id == project_id).limit(1)
        )
        if existing.first() is not None:
            raise TransitionDenied("Gates already initialized for project")

        if category is not None:
            project.category = category

        first_gate_id = self.catalog.first_gate_id
        gate = await self._create_gate(project, first_gate_id)
        project.current_gate_id = first_gate_id
        project.current_phase = self.catalog.phase_for_gate(first_gate_id)
        project.status = ProjectStatus.ACTIVE

        await self.db.commit()
        await self.db.refresh(gate)

        logger.info(f"Initialized gates for project {project_id} at {first_gate_id}")
        return gate

    async def ensure_exists(self, project_id: UUID, gate_id: str) -> Gate:
        """
        Create a gate (with deliverables) if it does not exist yet.

        Idempotent. A concurrent creation of the same gate resolves to the
        row that won the unique constraint.
        """
        if not self.catalog.is_known(gate_id):
            raise GateNotFound(project_id, gate_id)

        gate = await self.get_gate(project_id, gate_id)
        if gate is not None:
            return gate

        project = await self.get_project(project_id)
        gate = await self._create_gate(project, gate_id)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info(f"Gate {gate_id} for project {project_id} created concurrently")
            return await self.require_gate(project_id, gate_id)

        logger.info(f"Created gate {gate_id} for project {project_id}")
        return gate

    # ==========================================================================
    # Transitions
    # ==========================================================================

    async def transition_to_review(
        self,
        project_id: UUID,
        gate_id: str,
        passing_criteria: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Gate:
        """
        Move a PENDING gate to IN_REVIEW. Already IN_REVIEW is a no-op.

        Raises:
            GateNotFound: If the gate does not exist
            TransitionDenied: If the gate is not PENDING
        """
        gate = await self.require_gate(project_id, gate_id)
        if gate.status == GateStatus.IN_REVIEW:
            return gate
        if gate.status != GateStatus.PENDING:
            raise TransitionDenied(
                f"Gate {gate_id} is {gate.status.value}; only pending gates can move to review",
                gate_id,
            )

        gate.status = GateStatus.IN_REVIEW
        if passing_criteria:
            gate.passing_criteria = passing_criteria
        if description:
            gate.description = description
        await self.db.commit()

        logger.info(f"Gate {gate_id} for project {project_id} moved to review")
        return gate

    async def can_approve(self, project_id: UUID, gate_id: str, actor: str) -> ApprovalCheck:
        """
        Evaluate approval preconditions in order; the first failure wins.
        """
        project = await self.get_project(project_id)
        if actor != project.approver:
            return ApprovalCheck(False, "Only the project approver can approve gates")

        gate = await self.get_gate(project_id, gate_id)
        if gate is None:
            return ApprovalCheck(False, "Gate not found")
        if gate.status == GateStatus.APPROVED:
            return ApprovalCheck(False, "Gate already approved")
        if gate.status == GateStatus.REJECTED:
            return ApprovalCheck(False, "Gate was rejected")
        if gate.status == GateStatus.BLOCKED:
            return ApprovalCheck(False, "Gate is blocked by dependencies")

        previous_id = self.catalog.previous_gate_id(gate_id)
        if previous_id is not None:
            previous = await self.get_gate(project_id, previous_id)
            if previous is None or previous.status != GateStatus.APPROVED:
                return ApprovalCheck(False, f"Previous gate {previous_id} must be approved first")

        definition = self.catalog.get(project.category, gate_id)
        if gate.requires_proof:
            artifacts = await self.tracker.artifacts_for_gate(project_id, gate_id)
            check = proof_requirements_satisfied(gate_id, artifacts, definition.required_proofs)
            if not check.ok:
                missing = ", ".join(check.missing_types)
                return ApprovalCheck(False, f"Gate requires proof artifacts before approval (missing: {missing})")
            if definition.requires_coverage:
                threshold = self.settings.COVERAGE_THRESHOLD_PERCENT
                covered, coverage = coverage_satisfied(artifacts, threshold)
                if not covered:
                    if coverage is None:
                        return ApprovalCheck(False, "Gate requires a passing coverage report")
                    return ApprovalCheck(
                        False, f"Coverage {coverage:.1f}% is below the {threshold:.0f}% threshold"
                    )

        incomplete = await self.tracker.incomplete_deliverables(project_id, gate_id)
        if incomplete:
            names = ", ".join(d.name for d in incomplete)
            return ApprovalCheck(
                False,
                f"Gate has incomplete deliverables: {names}. "
                "All deliverables must be complete before gate approval.",
            )

        return ApprovalCheck(True)

    def validate_approval_token(self, token: Optional[str]) -> str:
        """
        Accept only explicit approval wording.

        Returns:
            Normalized token

        Raises:
            AmbiguousApproval: For ambiguous, negated or unrecognized tokens
        """
        accepted = {t.lower() for t in self.settings.APPROVAL_ACCEPTED_TOKENS}
        ambiguous = {t.lower() for t in self.settings.APPROVAL_AMBIGUOUS_TOKENS}
        options = ", ".join(f'"{t}"' for t in self.settings.APPROVAL_ACCEPTED_TOKENS)

        normalized = (token or "").strip().lower()
        if not normalized:
            raise AmbiguousApproval("", f"An explicit approval is required. Please use {options}.")

        words = re.findall(r"[a-z']+", normalized)
        if normalized.strip(" .!") in ambiguous or (words and set(words) <= ambiguous):
            raise AmbiguousApproval(
                token, f'"{token}" is ambiguous. Please provide explicit approval using {options}.'
            )
        if any(w in NEGATIONS for w in words):
            raise AmbiguousApproval(token, f'"{token}" does not read as an approval. Use {options}.')
        if not any(w in accepted for w in words):
            raise AmbiguousApproval(
                token, f'"{token}" is not a recognized approval. Please use {options}.'
            )
        return normalized

    async def approve(
        self,
        project_id: UUID,
        gate_id: str,
        actor: str,
        approval_token: str,
        notes: Optional[str] = None,
    ) -> ApprovalOutcome:
        """
        Approve a gate and advance the project in one transaction.

        Args:
            project_id: Project owning the gate
            gate_id: Gate to approve
            actor: Approving identity
            approval_token: Explicit approval wording
            notes: Optional review notes

        Returns:
            ApprovalOutcome naming the successor gate, or project completion

        Raises:
            AmbiguousApproval: If the token is not an explicit approval
            TransitionDenied: If approval preconditions fail
        """
        self.validate_approval_token(approval_token)
        check = await self.can_approve(project_id, gate_id, actor)
        if not check.ok:
            raise TransitionDenied(check.reason or "Gate cannot be approved", gate_id)

        project = await self.get_project(project_id)
        gate = await self.require_gate(project_id, gate_id)
        next_gate_id = self.catalog.next_gate_id(gate_id)

        try:
            now = datetime.now(timezone.utc)
            gate.status = GateStatus.APPROVED
            gate.approved_by = actor
            gate.approved_at = now
            gate.review_notes = notes

            if next_gate_id is not None:
                if await self.get_gate(project_id, next_gate_id) is None:
                    await self._create_gate(project, next_gate_id)
                project.current_gate_id = next_gate_id
                project.current_phase = self.catalog.phase_for_gate(next_gate_id)
            else:
                project.status = ProjectStatus.COMPLETE
                project.current_phase = COMPLETE_PHASE
                project.completed_at = now

            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Approval of {gate_id} for project {project_id} rolled back: {e}")
            raise

        logger.info(f"Gate {gate_id} approved by {actor} for project {project_id}")

        await self.notifier.send(
            NotificationTemplates.gate_approved(project_id, gate_id, actor, next_gate_id)
        )
        if next_gate_id is None:
            await self.notifier.send(NotificationTemplates.project_complete(project_id, actor))

        return ApprovalOutcome(
            gate_id=gate_id,
            next_gate_id=next_gate_id,
            project_complete=next_gate_id is None,
        )

    async def reject(self, project_id: UUID, gate_id: str, actor: str, reason: str) -> Gate:
        """
        Reject a gate. No successor is created.

        Raises:
            TransitionDenied: Wrong actor, terminal gate or empty reason
            GateNotFound: If the gate does not exist
        """
        project = await self.get_project(project_id)
        if actor != project.approver:
            raise TransitionDenied("Only the project approver can reject gates", gate_id)

        gate = await self.require_gate(project_id, gate_id)
        if gate.status in (GateStatus.APPROVED, GateStatus.REJECTED):
            raise TransitionDenied(f"Gate {gate_id} is already {gate.status.value}", gate_id)
        if not reason or not reason.strip():
            raise TransitionDenied("A rejection reason is required", gate_id)

        gate.status = GateStatus.REJECTED
        gate.rejected_by = actor
        gate.rejection_reason = reason.strip()
        await self.db.commit()

        logger.info(f"Gate {gate_id} rejected by {actor} for project {project_id}")
        await self.notifier.send(
            NotificationTemplates.gate_rejected(project_id, gate_id, actor, gate.rejection_reason)
        )
        return gate

    async def reconcile(self, project_id: UUID) -> Optional[str]:
        """
        Repair a project whose pointer sits on an approved gate.

        Creates the missing successor and advances the pointer, or marks the
        project complete after the final gate.

        Returns:
            The gate id the pointer was moved to, or None if nothing changed
        """
        project = await self.get_project(project_id)
        if project.status == ProjectStatus.COMPLETE or project.current_gate_id is None:
            return None

        gate = await self.get_gate(project_id, project.current_gate_id)
        if gate is None or gate.status != GateStatus.APPROVED:
            return None

        next_gate_id = self.catalog.next_gate_id(gate.gate_id)
        if next_gate_id is None:
            project.status = ProjectStatus.COMPLETE
            project.current_phase = COMPLETE_PHASE
            project.completed_at = gate.approved_at or datetime.now(timezone.utc)
            await self.db.commit()
            logger.warning(f"Project {project_id} was missing its completion marker; repaired")
            return None

        if await self.get_gate(project_id, next_gate_id) is None:
            await self._create_gate(project, next_gate_id)
        project.current_gate_id = next_gate_id
        project.current_phase = self.catalog.phase_for_gate(next_gate_id)
        await self.db.commit()

        logger.warning(f"Project {project_id} pointer repaired: {gate.gate_id} -> {next_gate_id}")
        return next_gate_id
