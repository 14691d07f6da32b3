"""Gate orchestration: role execution, readiness, retries"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from gatekeeper.core.exceptions import TransitionDenied
from gatekeeper.core.gates import catalog as catalog_module
from gatekeeper.core.gates.catalog import GateCatalog
from gatekeeper.core.gates.collaborators import AgentResponse, ValidationReport, Validator
from gatekeeper.core.gates.orchestrator import GateOrchestrator
from gatekeeper.core.models import (
    AgentExecution,
    AgentRole,
    ErrorRecord,
    Escalation,
    ExecutionPurpose,
    ExecutionStatus,
    Gate,
    GateStatus,
    Handoff,
    HandoffStatus,
    Project,
    ProjectCategory,
    ProofArtifact,
    ProofType,
    Task,
    TaskStatus,
)
from gatekeeper.core.schemas import ApprovalRequest, ProjectCreate

APPROVER = "alice@example.com"
FE = AgentRole.FRONTEND_DEVELOPER
BE = AgentRole.BACKEND_DEVELOPER


def broken(*errors: str) -> ValidationReport:
    return ValidationReport(overall_success=False, build_errors=list(errors))


async def gate_status(session_factory, project_id, gate_id):
    async with session_factory() as db:
        gate = (await db.execute(
            select(Gate).where(Gate.project_id == project_id, Gate.gate_id == gate_id)
        )).scalar_one_or_none()
        return gate.status if gate else None


async def record_proof(session_factory, project_id, gate_id, proof_type, passed=True, role=None):
    async with session_factory() as db:
        db.add(ProofArtifact(
            project_id=project_id, gate_id=gate_id, proof_type=proof_type, passed=passed, role=role
        ))
        await db.commit()


async def executions(session_factory, project_id, **filters):
    async with session_factory() as db:
        query = select(AgentExecution).where(AgentExecution.project_id == project_id)
        for name, value in filters.items():
            query = query.where(getattr(AgentExecution, name) == value)
        result = await db.execute(query.order_by(AgentExecution.created_at))
        return list(result.scalars().all())


# ==========================================================================
# Single-role gates
# ==========================================================================

async def test_g1_runs_and_moves_to_review(orchestrator, project, session_factory, documents, notifications):
    result = await orchestrator.execute_gate_agents(project.id, "G1")

    assert result.started
    assert [r.status for r in result.roles] == [ExecutionStatus.COMPLETED]
    assert result.readiness.transitioned
    assert await gate_status(session_factory, project.id, "G1") == GateStatus.IN_REVIEW
    assert documents.generated == [(AgentRole.PRODUCT_MANAGER_ONBOARDING, "G1")]

    types = [n["type"] for n in notifications]
    assert types.index("agent_started") < types.index("agent_completed") < types.index("gate_ready")


async def test_check_and_transition_is_idempotent(orchestrator, project, session_factory, notifications):
    await orchestrator.execute_gate_agents(project.id, "G1")
    ready_count = [n["type"] for n in notifications].count("gate_ready")

    again = await orchestrator.check_and_transition_gate(project.id, "G1")

    assert again.ready
    assert not again.transitioned
    assert again.status == GateStatus.IN_REVIEW
    assert [n["type"] for n in notifications].count("gate_ready") == ready_count


async def test_only_pending_gates_are_executed(orchestrator, project, executor):
    await orchestrator.execute_gate_agents(project.id, "G1")
    calls = len(executor.calls)

    result = await orchestrator.execute_gate_agents(project.id, "G1")

    assert not result.started
    assert len(executor.calls) == calls


async def test_prompt_carries_tasks_and_gate_criteria(orchestrator, project, executor, approve_through):
    await approve_through(project.id, "G3")
    await orchestrator.execute_gate_agents(project.id, "G3")

    prompt = executor.calls_for(AgentRole.ARCHITECT)[0]
    assert "## Your Task" in prompt
    assert "## Assigned Tasks" in prompt
    assert "## Gate G3 Passing Criteria" in prompt


async def test_handoff_phrase_creates_handoff(orchestrator, project, executor, session_factory):
    executor.script(
        AgentRole.PRODUCT_MANAGER_ONBOARDING,
        AgentResponse(content="Intake captured. Handoff to product_manager for the PRD."),
    )
    await orchestrator.execute_gate_agents(project.id, "G1")

    async with session_factory() as db:
        handoffs = (await db.execute(select(Handoff).where(Handoff.project_id == project.id))).scalars().all()
    assert [(h.from_role, h.to_role, h.status) for h in handoffs] == [
        (AgentRole.PRODUCT_MANAGER_ONBOARDING, AgentRole.PRODUCT_MANAGER, HandoffStatus.COMPLETE)
    ]


async def test_proof_gate_waits_for_proofs(orchestrator, project, session_factory, approve_through):
    await approve_through(project.id, "G3")
    result = await orchestrator.execute_gate_agents(project.id, "G3")

    assert not result.readiness.ready
    assert await gate_status(session_factory, project.id, "G3") == GateStatus.PENDING

    await record_proof(session_factory, project.id, "G3", ProofType.SPEC_VALIDATION)
    report = await orchestrator.check_and_transition_gate(project.id, "G3")
    assert report.transitioned


async def test_gate_without_roles_is_a_no_op(session_factory, executor, settings, project):
    rows = tuple(
        replace(d, roles=(), deliverables=()) if d.gate_id == "G2" else d
        for d in catalog_module._STANDARD
    )
    catalog = GateCatalog(
        definitions={ProjectCategory.STANDARD: rows},
        successors={ProjectCategory.STANDARD: {}},
        task_descriptions={},
    )
    orchestrator = GateOrchestrator(session_factory, executor, catalog=catalog, settings=settings)

    result = await orchestrator.execute_gate_agents(project.id, "G2")

    assert not result.started
    assert executor.calls == []
    assert await gate_status(session_factory, project.id, "G2") is None


# ==========================================================================
# Development gate
# ==========================================================================

async def test_g5_is_blocked_until_g4_is_approved(orchestrator, project, executor, session_factory, notifications):
    result = await orchestrator.execute_gate_agents(project.id, "G5")

    assert not result.started
    assert "G4" in result.reason
    assert executor.calls == []
    assert await gate_status(session_factory, project.id, "G5") is None
    assert "gate_blocked" in [n["type"] for n in notifications]


async def test_gate_past_the_approved_frontier_does_not_start(
    orchestrator, project, executor, session_factory, notifications
):
    result = await orchestrator.execute_gate_agents(project.id, "G7")

    assert not result.started
    assert "G6" in result.reason
    assert executor.calls == []
    assert await gate_status(session_factory, project.id, "G7") is None
    async with session_factory() as db:
        stored = await db.get(Project, project.id)
    assert stored.current_gate_id == "G1"
    assert "gate_blocked" in [n["type"] for n in notifications]


async def test_g5_runs_roles_in_parallel_and_records_role_proofs(
    orchestrator, project, executor, validator, writer, session_factory, approve_through
):
    await approve_through(project.id, "G5")

    result = await orchestrator.execute_gate_agents(project.id, "G5")

    assert result.started
    assert {r.role for r in result.roles} == {FE, BE}
    assert all(r.succeeded for r in result.roles)
    assert validator.runs == 2
    assert len(writer.writes) == 2

    # Role proofs pass; the gate still needs a preview startup proof
    assert not result.readiness.ready
    assert any("preview_startup" in reason for reason in result.readiness.reasons)
    assert await gate_status(session_factory, project.id, "G5") == GateStatus.PENDING

    await record_proof(session_factory, project.id, "G5", ProofType.PREVIEW_STARTUP)
    report = await orchestrator.check_and_transition_gate(project.id, "G5")
    assert report.transitioned
    assert await gate_status(session_factory, project.id, "G5") == GateStatus.IN_REVIEW


async def test_one_failed_role_keeps_gate_pending(
    orchestrator, project, executor, session_factory, approve_through, notifications
):
    await approve_through(project.id, "G5")
    await record_proof(session_factory, project.id, "G5", ProofType.PREVIEW_STARTUP)
    executor.script(FE, AgentResponse(success=False, error="context overflow", retryable=False))

    result = await orchestrator.execute_gate_agents(project.id, "G5")

    statuses = {r.role: r.status for r in result.roles}
    assert statuses == {FE: ExecutionStatus.FAILED, BE: ExecutionStatus.COMPLETED}
    assert not result.readiness.ready
    assert any("Frontend Implementation" in reason for reason in result.readiness.reasons)
    assert await gate_status(session_factory, project.id, "G5") == GateStatus.PENDING
    assert "agent_failed" in [n["type"] for n in notifications]
    assert "gate_ready" not in [n["type"] for n in notifications]


async def test_failing_build_is_healed_before_review(
    orchestrator, project, executor, validator, session_factory, approve_through
):
    await approve_through(project.id, "G5")
    await record_proof(session_factory, project.id, "G5", ProofType.PREVIEW_STARTUP)
    validator.script(broken("TS2304: Cannot find name 'x'"), broken("TS2304: Cannot find name 'x'"))

    result = await orchestrator.execute_gate_agents(project.id, "G5")

    assert set(result.readiness.healed_roles) == {FE, BE}
    assert result.readiness.transitioned
    assert await gate_status(session_factory, project.id, "G5") == GateStatus.IN_REVIEW
    healing = await executions(session_factory, project.id, purpose=ExecutionPurpose.SELF_HEALING)
    assert len(healing) == 1
    # The second role had nothing left to fix and was re-validated as the workspace stands
    assert validator.runs == 4


async def test_unhealable_build_escalates_once(
    orchestrator, project, executor, validator, session_factory, approve_through
):
    await approve_through(project.id, "G5")
    await record_proof(session_factory, project.id, "G5", ProofType.PREVIEW_STARTUP)
    validator.script(*[broken("E1", "E2")] * 5)

    result = await orchestrator.execute_gate_agents(project.id, "G5")

    assert FE in result.readiness.failing_roles
    assert await gate_status(session_factory, project.id, "G5") == GateStatus.PENDING

    calls = len(executor.calls)
    again = await orchestrator.check_and_transition_gate(project.id, "G5")
    assert not again.ready
    assert len(executor.calls) == calls

    async with session_factory() as db:
        escalations = (await db.execute(
            select(Escalation).where(Escalation.project_id == project.id)
        )).scalars().all()
    assert [e.from_role for e in escalations] == [FE]


class CrashingValidator(Validator):
    def __init__(self):
        self.runs = 0

    async def run_full_validation(self, project_id: str) -> ValidationReport:
        self.runs += 1
        raise RuntimeError("toolchain unavailable")


async def test_validator_crash_keeps_gate_pending(
    session_factory, executor, extractor, writer, catalog, notifier, settings, project, approve_through
):
    validator = CrashingValidator()
    orchestrator = GateOrchestrator(
        session_factory,
        executor,
        catalog=catalog,
        notifier=notifier,
        code_extractor=extractor,
        file_writer=writer,
        validator=validator,
        settings=settings,
    )
    await approve_through(project.id, "G5")
    await record_proof(session_factory, project.id, "G5", ProofType.PREVIEW_STARTUP)

    result = await orchestrator.execute_gate_agents(project.id, "G5")

    assert result.readiness.healed_roles == []
    assert not result.readiness.ready
    assert await gate_status(session_factory, project.id, "G5") == GateStatus.PENDING

    async with session_factory() as db:
        role_proofs = (await db.execute(
            select(ProofArtifact).where(
                ProofArtifact.project_id == project.id,
                ProofArtifact.gate_id == "G5",
                ProofArtifact.role.is_not(None),
            )
        )).scalars().all()
        errors = (await db.execute(
            select(ErrorRecord).where(ErrorRecord.project_id == project.id)
        )).scalars().all()
        escalations = (await db.execute(
            select(Escalation).where(Escalation.project_id == project.id)
        )).scalars().all()

    assert role_proofs and not any(p.passed for p in role_proofs)
    assert any("toolchain unavailable" in e.message for e in errors)
    assert {e.from_role for e in escalations} == {FE, BE}
    healing = await executions(session_factory, project.id, purpose=ExecutionPurpose.SELF_HEALING)
    assert len(healing) == 2 * settings.SELF_HEALING_MAX_ATTEMPTS
    assert all(h.status == ExecutionStatus.FAILED for h in healing)


async def test_failure_without_error_detail_fails_role_proofs(
    orchestrator, project, validator, session_factory, approve_through
):
    await approve_through(project.id, "G5")
    validator.script(ValidationReport(overall_success=False), ValidationReport(overall_success=False))

    result = await orchestrator.execute_gate_agents(project.id, "G5")

    async with session_factory() as db:
        first = (await db.execute(
            select(ProofArtifact)
            .where(ProofArtifact.project_id == project.id, ProofArtifact.gate_id == "G5", ProofArtifact.role == FE)
            .order_by(ProofArtifact.created_at)
        )).scalars().first()
    assert not first.passed
    assert FE in result.readiness.healed_roles


async def test_ml_g5_runs_five_roles(orchestrator, ml_project, executor, approve_through):
    await approve_through(ml_project.id, "G5")

    result = await orchestrator.execute_gate_agents(ml_project.id, "G5")

    assert len(result.roles) == 5
    assert len({role for role, _ in executor.calls}) == 5


# ==========================================================================
# Retry budget and stuck gates
# ==========================================================================

async def test_failed_role_is_retried_within_budget(orchestrator, project, executor, session_factory):
    failure = AgentResponse(success=False, error="rate limited")
    executor.script(AgentRole.PRODUCT_MANAGER_ONBOARDING, failure, failure, failure)

    result = await orchestrator.execute_gate_agents(project.id, "G1")

    role = result.roles[0]
    assert role.status == ExecutionStatus.FAILED
    assert role.attempts == 2
    assert len(executor.calls) == 2
    assert await orchestrator.retry_count(project.id, AgentRole.PRODUCT_MANAGER_ONBOARDING, "G1") == 2


async def test_failed_role_recovers_on_retry(orchestrator, project, executor, session_factory):
    executor.script(AgentRole.PRODUCT_MANAGER_ONBOARDING, AgentResponse(success=False, error="timeout"))

    result = await orchestrator.execute_gate_agents(project.id, "G1")

    assert result.roles[0].succeeded
    assert result.roles[0].attempts == 2
    assert await gate_status(session_factory, project.id, "G1") == GateStatus.IN_REVIEW


async def test_executor_exception_becomes_failed_attempt(orchestrator, project, executor, session_factory):
    executor.script(AgentRole.PRODUCT_MANAGER_ONBOARDING, ConnectionError("socket closed"))

    await orchestrator.execute_gate_agents(project.id, "G1")

    attempts = await executions(session_factory, project.id, role=AgentRole.PRODUCT_MANAGER_ONBOARDING)
    assert [a.status for a in attempts] == [ExecutionStatus.FAILED, ExecutionStatus.COMPLETED]
    assert attempts[0].error_message == "socket closed"


async def test_retry_count_ignores_old_and_uncounted_attempts(orchestrator, project, session_factory):
    role = AgentRole.PRODUCT_MANAGER_ONBOARDING
    async with session_factory() as db:
        db.add_all([
            AgentExecution(
                project_id=project.id, gate_id="G1", role=role, purpose=ExecutionPurpose.GATE,
                status=ExecutionStatus.FAILED, created_at=datetime.now(timezone.utc) - timedelta(hours=1),
            ),
            AgentExecution(
                project_id=project.id, gate_id="G1", role=role, purpose=ExecutionPurpose.GATE,
                status=ExecutionStatus.FAILED,
            ),
            AgentExecution(
                project_id=project.id, gate_id="G1", role=role, purpose=ExecutionPurpose.GATE,
                status=ExecutionStatus.COMPLETED,
            ),
            AgentExecution(
                project_id=project.id, gate_id="G1", role=role, purpose=ExecutionPurpose.SELF_HEALING,
                status=ExecutionStatus.FAILED,
            ),
        ])
        await db.commit()

    assert await orchestrator.retry_count(project.id, role, "G1") == 1


async def test_detect_stuck_gate(orchestrator, project, executor, session_factory):
    assert await orchestrator.detect_stuck_gate(project.id) is None

    executor.script(
        AgentRole.PRODUCT_MANAGER_ONBOARDING,
        AgentResponse(success=False, error="bad request", retryable=False),
    )
    await orchestrator.execute_gate_agents(project.id, "G1")
    assert await orchestrator.detect_stuck_gate(project.id) == "G1"

    async with session_factory() as db:
        db.add(AgentExecution(
            project_id=project.id, gate_id="G1", role=AgentRole.PRODUCT_MANAGER_ONBOARDING,
            purpose=ExecutionPurpose.TASK, status=ExecutionStatus.RUNNING,
        ))
        await db.commit()
    assert await orchestrator.detect_stuck_gate(project.id) is None


async def test_retry_gate_agents_requires_approver_and_pending_gate(orchestrator, project, executor):
    with pytest.raises(TransitionDenied):
        await orchestrator.retry_gate_agents(project.id, "G1", "mallory@example.com")

    result = await orchestrator.retry_gate_agents(project.id, "G1", APPROVER)
    assert result.started

    with pytest.raises(TransitionDenied):
        await orchestrator.retry_gate_agents(project.id, "G1", APPROVER)


# ==========================================================================
# Tasks, approval follow-up and status
# ==========================================================================

async def test_execute_next_task_runs_in_order(orchestrator, project, executor, session_factory):
    result = await orchestrator.execute_next_task(project.id)

    assert result.succeeded
    assert executor.calls[0][0] == AgentRole.PRODUCT_MANAGER
    task_runs = await executions(session_factory, project.id, purpose=ExecutionPurpose.TASK)
    assert len(task_runs) == 1
    assert task_runs[0].task_id is not None

    async with session_factory() as db:
        task = await db.get(Task, task_runs[0].task_id)
        assert task.status == TaskStatus.COMPLETE


async def test_failed_task_returns_to_not_started(orchestrator, project, executor, session_factory):
    executor.script(AgentRole.PRODUCT_MANAGER, AgentResponse(success=False, error="quota"))

    result = await orchestrator.execute_next_task(project.id)

    assert not result.succeeded
    async with session_factory() as db:
        task = await db.get(Task, (await executions(session_factory, project.id))[0].task_id)
        assert task.status == TaskStatus.NOT_STARTED


async def test_tasks_wait_while_gate_is_in_review(orchestrator, project, executor):
    await orchestrator.execute_gate_agents(project.id, "G1")
    calls = len(executor.calls)

    assert await orchestrator.execute_next_task(project.id) is None
    assert len(executor.calls) == calls


async def test_approval_hands_off_and_starts_next_gate(orchestrator, project, session_factory):
    await orchestrator.execute_gate_agents(project.id, "G1")
    outcome = await orchestrator.approve_gate(
        project.id, ApprovalRequest(gate_id="G1", actor=APPROVER, approval_token="approved")
    )
    assert outcome.next_gate_id == "G2"

    result = await orchestrator.on_gate_approved(project.id, "G1")

    assert result.started
    assert await gate_status(session_factory, project.id, "G2") == GateStatus.IN_REVIEW
    async with session_factory() as db:
        handoffs = (await db.execute(select(Handoff).where(Handoff.project_id == project.id))).scalars().all()
    assert (AgentRole.PRODUCT_MANAGER_ONBOARDING, AgentRole.PRODUCT_MANAGER) in [
        (h.from_role, h.to_role) for h in handoffs
    ]
    assert handoffs[0].deliverables == ["Project Intake"]


async def test_reject_gate_returns_schema(orchestrator, project):
    gate = await orchestrator.reject_gate(project.id, "G1", APPROVER, "Scope is too broad")
    assert gate.status == GateStatus.REJECTED
    assert gate.rejection_reason == "Scope is too broad"


async def test_workflow_status_snapshot(orchestrator, project):
    await orchestrator.execute_next_task(project.id)

    status = await orchestrator.workflow_status(project.id)

    assert status.name == "Storefront"
    assert status.current_gate_id == "G1"
    assert [g.gate_id for g in status.gates] == ["G1"]
    assert status.progress.total == 8
    assert status.progress.complete == 1
    assert status.pending_escalations == []
    assert status.stuck_gate_id is None


async def test_create_project_without_tasks(orchestrator):
    project = await orchestrator.create_project(
        ProjectCreate(name="Docs refresh", approver=APPROVER, category="enhancement", decompose_tasks=False)
    )
    status = await orchestrator.workflow_status(project.id)
    assert status.progress.total == 0
    assert status.category == ProjectCategory.ENHANCEMENT
