"""Gate state machine transitions"""

import pytest
from sqlalchemy import select

from gatekeeper.core.exceptions import AmbiguousApproval, GateNotFound, TransitionDenied
from gatekeeper.core.gates.state_machine import GateStateMachine
from gatekeeper.core.gates.notifications import Notifier
from gatekeeper.core.models import (
    AgentRole,
    Deliverable,
    DeliverableStatus,
    Gate,
    GateStatus,
    Project,
    ProjectCategory,
    ProjectStatus,
    ProofType,
)

APPROVER = "alice@example.com"


async def complete_g1(machine: GateStateMachine, project_id) -> None:
    await machine.tracker.mark_deliverable_complete(project_id, AgentRole.PRODUCT_MANAGER_ONBOARDING, "G1")
    await machine.transition_to_review(project_id, "G1")


# ==========================================================================
# Initialization
# ==========================================================================

async def test_initialize_creates_first_gate_with_deliverables(machine, project):
    gates = await machine.list_gates(project.id)
    assert [g.gate_id for g in gates] == ["G1"]
    assert gates[0].status == GateStatus.PENDING

    stored = await machine.get_project(project.id)
    assert stored.current_gate_id == "G1"
    assert stored.current_phase == "intake"


async def test_initialize_twice_is_denied(machine, project):
    with pytest.raises(TransitionDenied):
        await machine.initialize_gates(project.id)


async def test_ensure_exists_is_idempotent(machine, project, db_session):
    first = await machine.ensure_exists(project.id, "G2")
    second = await machine.ensure_exists(project.id, "G2")
    assert first.id == second.id

    result = await db_session.execute(
        select(Deliverable).where(Deliverable.project_id == project.id, Deliverable.gate_id == "G2")
    )
    assert len(result.scalars().all()) == 2


async def test_ensure_exists_rejects_unknown_gate(machine, project):
    with pytest.raises(GateNotFound):
        await machine.ensure_exists(project.id, "G42")


# ==========================================================================
# Review and approval
# ==========================================================================

async def test_transition_to_review_only_from_pending(machine, project):
    await complete_g1(machine, project.id)
    gate = await machine.transition_to_review(project.id, "G1")
    assert gate.status == GateStatus.IN_REVIEW

    await machine.approve(project.id, "G1", APPROVER, "approved")
    with pytest.raises(TransitionDenied):
        await machine.transition_to_review(project.id, "G1")


async def test_approve_advances_pointer_and_creates_successor(machine, project, notifications):
    await complete_g1(machine, project.id)
    outcome = await machine.approve(project.id, "G1", APPROVER, "Approved!", notes="Looks right")

    assert outcome.next_gate_id == "G2"
    assert not outcome.project_complete

    g1 = await machine.require_gate(project.id, "G1")
    assert g1.status == GateStatus.APPROVED
    assert g1.approved_by == APPROVER
    assert g1.review_notes == "Looks right"

    g2 = await machine.require_gate(project.id, "G2")
    assert g2.status == GateStatus.PENDING
    stored = await machine.get_project(project.id)
    assert stored.current_gate_id == "G2"
    assert stored.current_phase == "planning"
    assert "gate_approved" in [n["type"] for n in notifications]


async def test_only_the_approver_can_approve(machine, project):
    await complete_g1(machine, project.id)
    check = await machine.can_approve(project.id, "G1", "mallory@example.com")
    assert not check.ok
    assert check.reason == "Only the project approver can approve gates"


async def test_incomplete_deliverables_block_approval(machine, project):
    check = await machine.can_approve(project.id, "G1", APPROVER)
    assert not check.ok
    assert "Project Intake" in check.reason
    assert "All deliverables must be complete before gate approval." in check.reason


async def test_previous_gate_must_be_approved(machine, project):
    await machine.ensure_exists(project.id, "G2")
    check = await machine.can_approve(project.id, "G2", APPROVER)
    assert check.reason == "Previous gate G1 must be approved first"


async def test_precondition_order_checks_status_before_predecessor(machine, project):
    await complete_g1(machine, project.id)
    await machine.approve(project.id, "G1", APPROVER, "approved")
    check = await machine.can_approve(project.id, "G1", APPROVER)
    assert check.reason == "Gate already approved"


async def test_missing_gate_is_reported(machine, project):
    check = await machine.can_approve(project.id, "G4", APPROVER)
    assert check.reason == "Gate not found"


async def test_proof_gate_needs_passing_latest_artifact(machine, project, approve_through):
    await approve_through(project.id, "G3")
    await machine.tracker.mark_deliverable_complete(project.id, AgentRole.ARCHITECT, "G3")

    check = await machine.can_approve(project.id, "G3", APPROVER)
    assert "spec_validation" in check.reason

    await machine.tracker.record_proof_artifact(project.id, "G3", ProofType.SPEC_VALIDATION, True)
    await machine.tracker.record_proof_artifact(project.id, "G3", ProofType.SPEC_VALIDATION, False)
    check = await machine.can_approve(project.id, "G3", APPROVER)
    assert not check.ok

    await machine.tracker.record_proof_artifact(project.id, "G3", ProofType.SPEC_VALIDATION, True)
    assert (await machine.can_approve(project.id, "G3", APPROVER)).ok


async def test_coverage_below_threshold_blocks_g6(machine, project, approve_through):
    await approve_through(project.id, "G6")
    await machine.tracker.mark_deliverable_complete(project.id, AgentRole.QA_ENGINEER, "G6")
    for proof_type in (ProofType.UNIT_TEST_OUTPUT, ProofType.E2E_TEST_OUTPUT, ProofType.INTEGRATION_TEST_OUTPUT):
        await machine.tracker.record_proof_artifact(project.id, "G6", proof_type, True)

    check = await machine.can_approve(project.id, "G6", APPROVER)
    assert check.reason == "Gate requires a passing coverage report"

    await machine.tracker.record_proof_artifact(
        project.id, "G6", ProofType.COVERAGE_REPORT, True, summary="Coverage: 71.2%"
    )
    check = await machine.can_approve(project.id, "G6", APPROVER)
    assert check.reason == "Coverage 71.2% is below the 80% threshold"

    await machine.tracker.record_proof_artifact(
        project.id, "G6", ProofType.COVERAGE_REPORT, True, summary="Coverage: 83%"
    )
    assert (await machine.can_approve(project.id, "G6", APPROVER)).ok


# ==========================================================================
# Approval tokens
# ==========================================================================

@pytest.mark.parametrize("token", ["approved", "Yes", "approve", "accept", "  APPROVED.  ", "yes, approved"])
async def test_explicit_tokens_accepted(machine, token):
    assert machine.validate_approval_token(token)


@pytest.mark.parametrize("token", ["ok", "sure", "Fine", "alright", "ok sure"])
async def test_ambiguous_tokens_rejected(machine, token):
    with pytest.raises(AmbiguousApproval) as exc_info:
        machine.validate_approval_token(token)
    assert "ambiguous" in str(exc_info.value)


@pytest.mark.parametrize("token", ["", None, "not approved", "no", "looks good", "don't approve"])
async def test_negated_or_unrecognized_tokens_rejected(machine, token):
    with pytest.raises(AmbiguousApproval):
        machine.validate_approval_token(token)


async def test_ambiguous_token_leaves_gate_untouched(machine, project):
    await complete_g1(machine, project.id)
    with pytest.raises(AmbiguousApproval):
        await machine.approve(project.id, "G1", APPROVER, "ok")

    gate = await machine.require_gate(project.id, "G1")
    assert gate.status == GateStatus.IN_REVIEW
    assert await machine.get_gate(project.id, "G2") is None


async def test_ambiguous_token_is_reported_before_unmet_preconditions(machine, project):
    assert not (await machine.can_approve(project.id, "G1", APPROVER)).ok

    with pytest.raises(AmbiguousApproval):
        await machine.approve(project.id, "G1", APPROVER, "ok")

    gate = await machine.require_gate(project.id, "G1")
    assert gate.status == GateStatus.PENDING


# ==========================================================================
# Atomic approval
# ==========================================================================

async def test_crash_during_approval_rolls_back_everything(
    machine, project, session_factory, catalog, settings, monkeypatch
):
    await complete_g1(machine, project.id)

    async def crash(self, project, gate_id):
        raise RuntimeError("simulated crash")

    monkeypatch.setattr(GateStateMachine, "_create_gate", crash)
    with pytest.raises(RuntimeError):
        await machine.approve(project.id, "G1", APPROVER, "approved")

    async with session_factory() as fresh:
        gate = (await fresh.execute(
            select(Gate).where(Gate.project_id == project.id, Gate.gate_id == "G1")
        )).scalar_one()
        assert gate.status == GateStatus.IN_REVIEW
        assert gate.approved_by is None

        stored = await fresh.get(Project, project.id)
        assert stored.current_gate_id == "G1"

        successors = (await fresh.execute(
            select(Gate).where(Gate.project_id == project.id, Gate.gate_id == "G2")
        )).scalars().all()
        assert successors == []


async def test_approving_final_gate_completes_project(machine, project, approve_through, notifications):
    await approve_through(project.id, "G9")
    await machine.tracker.mark_deliverable_complete(project.id, AgentRole.DEVOPS_ENGINEER, "G9")
    for proof_type in (ProofType.DEPLOYMENT_LOG, ProofType.SMOKE_TEST, ProofType.MANUAL_VERIFICATION):
        await machine.tracker.record_proof_artifact(project.id, "G9", proof_type, True)

    outcome = await machine.approve(project.id, "G9", APPROVER, "approved")
    assert outcome.project_complete
    assert outcome.next_gate_id is None

    stored = await machine.get_project(project.id)
    assert stored.status == ProjectStatus.COMPLETE
    assert stored.current_phase == "complete"
    assert stored.current_gate_id == "G9"
    assert stored.completed_at is not None
    assert "project_complete" in [n["type"] for n in notifications]


async def test_gates_are_approved_in_order(machine, project, approve_through):
    await approve_through(project.id, "G5")
    gates = await machine.list_gates(project.id)
    assert [g.gate_id for g in gates] == ["G1", "G2", "G3", "G4", "G5"]
    assert all(g.status == GateStatus.APPROVED for g in gates[:4])


async def test_g4_approval_opens_g5_with_catalog_deliverables(machine, project, catalog, approve_through):
    await approve_through(project.id, "G5")

    g5 = await machine.require_gate(project.id, "G5")
    assert g5.status == GateStatus.PENDING

    deliverables = await machine.tracker.get_deliverables(project.id, "G5")
    expected = catalog.deliverables_for(ProjectCategory.STANDARD, "G5")
    assert sorted((d.name, d.owner) for d in deliverables) == sorted((s.name, s.owner) for s in expected)
    assert all(d.status == DeliverableStatus.NOT_STARTED for d in deliverables)

    stored = await machine.get_project(project.id)
    assert stored.current_gate_id == "G5"


# ==========================================================================
# Rejection and repair
# ==========================================================================

async def test_reject_requires_reason_and_approver(machine, project):
    with pytest.raises(TransitionDenied):
        await machine.reject(project.id, "G1", "mallory@example.com", "no")
    with pytest.raises(TransitionDenied):
        await machine.reject(project.id, "G1", APPROVER, "   ")

    gate = await machine.reject(project.id, "G1", APPROVER, "Scope unclear")
    assert gate.status == GateStatus.REJECTED
    assert gate.rejection_reason == "Scope unclear"
    assert await machine.get_gate(project.id, "G2") is None

    with pytest.raises(TransitionDenied):
        await machine.reject(project.id, "G1", APPROVER, "again")
    check = await machine.can_approve(project.id, "G1", APPROVER)
    assert check.reason == "Gate was rejected"


async def test_reconcile_repairs_pointer_on_approved_gate(machine, project, db_session):
    await complete_g1(machine, project.id)
    gate = await machine.require_gate(project.id, "G1")
    gate.status = GateStatus.APPROVED
    await db_session.commit()

    assert await machine.reconcile(project.id) == "G2"
    assert (await machine.get_project(project.id)).current_gate_id == "G2"
    assert await machine.get_gate(project.id, "G2") is not None
    assert await machine.reconcile(project.id) is None


async def test_notifier_failure_does_not_break_approval(db_session, project, catalog, settings):
    def broken(_):
        raise ConnectionError("listener down")

    machine = GateStateMachine(db_session, catalog, Notifier(broken), settings)
    await complete_g1(machine, project.id)
    outcome = await machine.approve(project.id, "G1", APPROVER, "yes")
    assert outcome.next_gate_id == "G2"
