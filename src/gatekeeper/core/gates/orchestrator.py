"""
Gate Orchestrator - Runs the roles of a gate and decides readiness.

Flow per gate:
    ensure gate -> run roles (parallel if >1) -> post-process output
    -> check deliverables + proofs -> self-heal failing builds -> IN_REVIEW

Every concurrently running role gets its own database session. No
transaction is held open while an agent is executing.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gatekeeper.core.config import Settings, get_settings
from gatekeeper.core.exceptions import TransitionDenied
from gatekeeper.core.gates.catalog import CODE_ROLES, GateCatalog, GateDefinition
from gatekeeper.core.gates.collaborators import (
    AgentExecutor,
    AgentResponse,
    CodeExtractor,
    DocumentGenerator,
    FileWriter,
    ValidationReport,
    Validator,
)
from gatekeeper.core.gates.decomposer import TaskDecomposer
from gatekeeper.core.gates.escalation import EscalationManager
from gatekeeper.core.gates.events import (
    AgentExecutionCompleted,
    EventSink,
    GateApproved,
    WorkflowEvent,
)
from gatekeeper.core.gates.handoff import HandoffManager
from gatekeeper.core.gates.notifications import NotificationTemplates, Notifier
from gatekeeper.core.gates.self_healing import SelfHealingLoop
from gatekeeper.core.gates.state_machine import ApprovalOutcome, GateStateMachine
from gatekeeper.core.gates.tracker import (
    DeliverableTracker,
    coverage_satisfied,
    proof_requirements_satisfied,
    role_proofs_satisfied,
)
from gatekeeper.core.models import (
    AgentExecution,
    AgentRole,
    DeliverableStatus,
    ErrorCategory,
    ErrorRecord,
    ExecutionPurpose,
    ExecutionStatus,
    GateStatus,
    HandoffStatus,
    Project,
    ProjectStatus,
    ProofType,
    Task,
    TaskStatus,
)
from gatekeeper.core.schemas import (
    ApprovalRequest,
    EscalationRead,
    GateRead,
    ProjectCreate,
    ProjectProgress,
    WorkflowStatus,
)

logger = structlog.get_logger()


# ==========================================================================
# Results
# ==========================================================================

@dataclass
class RoleRunResult:
    """Final outcome of running one role (after any automatic retries)."""
    role: AgentRole
    execution_id: Optional[UUID]
    status: ExecutionStatus
    attempts: int = 1
    error: Optional[str] = None
    retryable: bool = True

    @property
    def succeeded(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED


@dataclass
class ReadinessReport:
    """Whether a gate's work is complete enough for human review."""
    gate_id: str
    ready: bool
    status: Optional[GateStatus] = None
    transitioned: bool = False
    reasons: list[str] = field(default_factory=list)
    failing_proofs: list[str] = field(default_factory=list)
    failing_roles: list[AgentRole] = field(default_factory=list)
    healed_roles: list[AgentRole] = field(default_factory=list)


@dataclass
class GateRunResult:
    """Outcome of executing a gate's roles."""
    gate_id: str
    started: bool
    roles: list[RoleRunResult] = field(default_factory=list)
    readiness: Optional[ReadinessReport] = None
    reason: Optional[str] = None


class GateOrchestrator:
    """
    Drives the roles of each gate and moves ready gates to review.

    Args:
        session_factory: Factory for fresh AsyncSessions
        executor: Agent executor
        catalog: Gate catalog (defaults to the built-in one)
        notifier: Notification sink
        code_extractor / file_writer / validator: Code pipeline; when any
            is missing code roles skip extraction, validation and healing
        document_generator: Optional document persistence
        settings: Engine settings
        event_sink: Receives completion events (the scheduler's publish)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        executor: AgentExecutor,
        catalog: Optional[GateCatalog] = None,
        notifier: Optional[Notifier] = None,
        code_extractor: Optional[CodeExtractor] = None,
        file_writer: Optional[FileWriter] = None,
        validator: Optional[Validator] = None,
        document_generator: Optional[DocumentGenerator] = None,
        settings: Optional[Settings] = None,
        event_sink: Optional[EventSink] = None,
    ):
        self.session_factory = session_factory
        self.executor = executor
        self.catalog = catalog or GateCatalog.default()
        self.notifier = notifier or Notifier()
        self.code_extractor = code_extractor
        self.file_writer = file_writer
        self.validator = validator
        self.document_generator = document_generator
        self.settings = settings or get_settings()
        self.event_sink = event_sink

    # ==========================================================================
    # Wiring helpers
    # ==========================================================================

    def state_machine(self, db: AsyncSession) -> GateStateMachine:
        return GateStateMachine(db, self.catalog, self.notifier, self.settings)

    def _self_healing(self, db: AsyncSession) -> Optional[SelfHealingLoop]:
        if not (self.code_extractor and self.file_writer and self.validator):
            return None
        return SelfHealingLoop(
            db,
            self.executor,
            self.code_extractor,
            self.file_writer,
            self.validator,
            catalog=self.catalog,
            notifier=self.notifier,
            settings=self.settings,
        )

    def _emit(self, event: WorkflowEvent) -> None:
        if self.event_sink is None:
            return
        try:
            self.event_sink(event)
        except Exception as e:
            logger.warning("event_sink_failed", event_type=type(event).__name__, error=str(e))

    # ==========================================================================
    # Project setup
    # ==========================================================================

    async def create_project(self, data: ProjectCreate) -> Project:
        """Create a project, open its first gate and decompose its tasks."""
        async with self.session_factory() as db:
            project = Project(name=data.name, approver=data.approver, category=data.category)
            db.add(project)
            await db.commit()

            await self.state_machine(db).initialize_gates(project.id)
            if data.decompose_tasks:
                decomposer = TaskDecomposer(db, self.catalog)
                await decomposer.create_tasks(project.id, decomposer.decompose(data.category), data.category)

            logger.info("project_created", project_id=str(project.id), category=data.category.value)
            return project

    # ==========================================================================
    # Gate execution
    # ==========================================================================

    async def execute_gate_agents(self, project_id: UUID, gate_id: str) -> GateRunResult:
        """
        Run every role configured for a gate, then check readiness.

        Returns:
            GateRunResult; ``started`` is False when nothing ran
        """
        async with self.session_factory() as db:
            machine = self.state_machine(db)
            project = await machine.get_project(project_id)
            definition = self.catalog.get(project.category, gate_id)

            if not definition.roles:
                return GateRunResult(gate_id, started=False, reason="No roles configured for gate")

            # Explicit prerequisite first, then the catalog predecessor
            required = [definition.prerequisite_gate, self.catalog.previous_gate_id(gate_id)]
            for required_gate_id in dict.fromkeys(g for g in required if g):
                required_gate = await machine.get_gate(project_id, required_gate_id)
                if required_gate is None or required_gate.status != GateStatus.APPROVED:
                    reason = f"{required_gate_id} must be approved before {gate_id} can start"
                    logger.warning(
                        "gate_prerequisite_unmet",
                        project_id=str(project_id),
                        gate_id=gate_id,
                        required_gate_id=required_gate_id,
                    )
                    await self.notifier.send(NotificationTemplates.gate_blocked(project_id, gate_id, reason))
                    return GateRunResult(gate_id, started=False, reason=reason)

            gate = await machine.ensure_exists(project_id, gate_id)
            if gate.status != GateStatus.PENDING:
                return GateRunResult(gate_id, started=False, reason=f"Gate {gate_id} is {gate.status.value}")

            if project.status != ProjectStatus.COMPLETE and project.current_gate_id != gate_id:
                project.current_gate_id = gate_id
                project.current_phase = self.catalog.phase_for_gate(gate_id)
                await db.commit()

        logger.info(
            "gate_agents_starting",
            project_id=str(project_id),
            gate_id=gate_id,
            roles=[r.value for r in definition.roles],
            parallel=definition.is_parallel,
        )

        if definition.is_parallel:
            results = list(await asyncio.gather(
                *(self._run_role(project_id, gate_id, role) for role in definition.roles)
            ))
        else:
            results = [await self._run_role(project_id, gate_id, definition.roles[0])]

        readiness = await self.check_and_transition_gate(project_id, gate_id)
        return GateRunResult(gate_id, started=True, roles=results, readiness=readiness)

    async def _run_role(self, project_id: UUID, gate_id: str, role: AgentRole) -> RoleRunResult:
        """Run a role, re-running it while failures stay within the retry budget."""
        attempt = 0
        while True:
            attempt += 1
            result = await self._execute_role_once(project_id, gate_id, role, attempt)
            result.attempts = attempt
            if result.succeeded or not result.retryable:
                return result

            failures = await self.retry_count(project_id, role, gate_id)
            if failures >= self.settings.AGENT_RETRY_LIMIT:
                logger.warning(
                    "agent_retry_budget_exhausted",
                    project_id=str(project_id),
                    gate_id=gate_id,
                    role=role.value,
                    failures=failures,
                )
                return result

            logger.info("agent_retrying", project_id=str(project_id), gate_id=gate_id, role=role.value, failures=failures)

    async def _execute_role_once(
        self,
        project_id: UUID,
        gate_id: Optional[str],
        role: AgentRole,
        attempt: int,
        task: Optional[Task] = None,
    ) -> RoleRunResult:
        purpose = ExecutionPurpose.TASK if task is not None else ExecutionPurpose.GATE

        async with self.session_factory() as db:
            project = await db.get(Project, project_id)
            tracker = DeliverableTracker(db, self.catalog)
            handoffs = HandoffManager(db, self.settings.HANDOFF_CONTEXT_LIMIT)

            if purpose == ExecutionPurpose.GATE:
                await tracker.mark_role_deliverables_in_progress(project_id, role, gate_id)
                description = self.catalog.task_description(role, gate_id)
            else:
                description = task.description

            context = await handoffs.build_context(project_id, gate_id, role) if gate_id else ""
            prompt = self._build_prompt(project, description, context)

            execution = AgentExecution(
                project_id=project_id,
                gate_id=gate_id,
                task_id=task.id if task is not None else None,
                role=role,
                purpose=purpose,
                status=ExecutionStatus.RUNNING,
                attempt_number=attempt,
                input_prompt=prompt,
                started_at=datetime.now(timezone.utc),
            )
            db.add(execution)
            await db.commit()

            logger.info("agent_started", project_id=str(project_id), gate_id=gate_id, role=role.value, attempt=attempt)
            await self.notifier.send(NotificationTemplates.agent_started(project_id, gate_id, role.value, execution.id))

            try:
                response = await self.executor.execute(role, self._system_context(role, gate_id), prompt)
            except Exception as e:
                logger.error("agent_execution_error", project_id=str(project_id), role=role.value, error=str(e))
                response = AgentResponse(success=False, error=str(e), retryable=True)

            if not response.success:
                error = response.error or "Agent execution failed"
                execution.status = ExecutionStatus.FAILED
                execution.error_message = error
                execution.output = response.content or None
                execution.completed_at = datetime.now(timezone.utc)
                await db.commit()

                await self.notifier.send(
                    NotificationTemplates.agent_failed(project_id, gate_id, role.value, execution.id, error)
                )
                self._emit(AgentExecutionCompleted(
                    project_id=project_id,
                    role=role,
                    execution_id=execution.id,
                    succeeded=False,
                    purpose=purpose,
                    gate_id=gate_id,
                    task_id=execution.task_id,
                ))
                return RoleRunResult(role, execution.id, ExecutionStatus.FAILED, error=error, retryable=response.retryable)

            execution.status = ExecutionStatus.COMPLETED
            execution.output = response.content
            execution.input_tokens = response.input_tokens
            execution.output_tokens = response.output_tokens
            execution.completed_at = datetime.now(timezone.utc)
            await db.commit()

            await self._post_process(db, project, gate_id, role, execution, response.content, purpose)

            if purpose == ExecutionPurpose.GATE:
                await tracker.mark_deliverable_complete(project_id, role, gate_id)

            logger.info("agent_completed", project_id=str(project_id), gate_id=gate_id, role=role.value)
            await self.notifier.send(NotificationTemplates.agent_completed(project_id, gate_id, role.value, execution.id))
            self._emit(AgentExecutionCompleted(
                project_id=project_id,
                role=role,
                execution_id=execution.id,
                succeeded=True,
                purpose=purpose,
                gate_id=gate_id,
                task_id=execution.task_id,
            ))
            return RoleRunResult(role, execution.id, ExecutionStatus.COMPLETED)

    def _system_context(self, role: AgentRole, gate_id: Optional[str]) -> str:
        where = f" at gate {gate_id}" if gate_id else ""
        return f"You are the {role.value} agent{where}. Produce the requested deliverables directly."

    def _build_prompt(self, project: Project, description: str, context: str) -> str:
        parts = [
            f"## Project: {project.name}",
            f"Category: {project.category.value}",
            "",
            "## Your Task",
            description,
        ]
        if context:
            parts += ["", context]
        return "\n".join(parts)

    # ==========================================================================
    # Post-processing
    # ==========================================================================

    async def _post_process(
        self,
        db: AsyncSession,
        project: Project,
        gate_id: Optional[str],
        role: AgentRole,
        execution: AgentExecution,
        output: str,
        purpose: ExecutionPurpose,
    ) -> None:
        """Documents, code files, build proofs and handoffs for a completed attempt."""
        warnings: list[str] = []

        if self.document_generator is not None:
            try:
                documents = await self.document_generator.generate_from_output(
                    str(project.id), role, output, gate_id
                )
                execution.documents_generated = len(documents)
            except Exception as e:
                logger.warning("document_generation_failed", role=role.value, error=str(e))
                warnings.append(f"Document generation failed: {e}")

        if role in CODE_ROLES and self.code_extractor is not None and self.file_writer is not None:
            written: list[str] = []
            try:
                for extracted in self.code_extractor.extract_files(output):
                    await self.file_writer.write_file(str(project.id), extracted.path, extracted.content)
                    written.append(extracted.path)
            except Exception as e:
                logger.warning("code_write_failed", role=role.value, error=str(e))
                warnings.append(f"Writing code files failed: {e}")
            execution.files_written = written

        if purpose == ExecutionPurpose.GATE and gate_id is not None:
            definition = self.catalog.get(project.category, gate_id)
            if role in CODE_ROLES and definition.role_proofs and self.validator is not None:
                if not await self._validate_role_output(db, project.id, gate_id, role, definition):
                    warnings.append("Validation failed")

        successor = HandoffManager.parse_successor(output)
        if successor is not None and successor != role:
            handoffs = HandoffManager(db, self.settings.HANDOFF_CONTEXT_LIMIT)
            await handoffs.create_handoff(
                project.id,
                from_role=role,
                to_role=successor,
                phase=project.current_phase,
                status=HandoffStatus.PARTIAL if warnings else HandoffStatus.COMPLETE,
                notes="Agent handoff",
            )
            await self.notifier.send(NotificationTemplates.handoff_created(project.id, role.value, successor.value))

        execution.warnings = warnings
        await db.commit()

    async def _validate_role_output(
        self,
        db: AsyncSession,
        project_id: UUID,
        gate_id: str,
        role: AgentRole,
        definition: GateDefinition,
    ) -> bool:
        """Run validation and record the role's build/lint proofs. Returns overall success."""
        try:
            report = await self.validator.run_full_validation(str(project_id))
        except Exception as e:
            logger.error("validation_error", project_id=str(project_id), role=role.value, error=str(e))
            report = ValidationReport(
                overall_success=False,
                build_errors=[f"Validation error: {e}"],
                build_passed=False,
                lint_passed=False,
            )
        return await self._record_validation(db, project_id, gate_id, role, definition, report)

    async def _record_validation(
        self,
        db: AsyncSession,
        project_id: UUID,
        gate_id: str,
        role: AgentRole,
        definition: GateDefinition,
        report: ValidationReport,
    ) -> bool:
        """Record proofs from a validation report; failures also become open error records."""
        tracker = DeliverableTracker(db, self.catalog)
        # A failure without any error detail cannot vouch for build or lint
        undetailed_failure = not report.overall_success and not report.all_errors
        outcomes = {
            ProofType.BUILD_OUTPUT: (report.build_ok, report.build_errors),
            ProofType.LINT_OUTPUT: (report.lint_ok, report.lint_errors),
        }
        for proof_type in definition.role_proofs:
            passed, errors = outcomes.get(proof_type, (report.overall_success, report.all_errors))
            passed = passed and not undetailed_failure
            summary = "passed" if passed else f"{len(errors)} error(s): " + "; ".join(errors[:3])
            await tracker.record_proof_artifact(project_id, gate_id, proof_type, passed, summary=summary, role=role)

        if not report.overall_success:
            failures = [
                (category, message)
                for category, errors in (
                    (ErrorCategory.BUILD, report.build_errors),
                    (ErrorCategory.LINT, report.lint_errors),
                    (ErrorCategory.TEST, report.test_errors),
                )
                for message in errors
            ]
            if not failures:
                failures = [(ErrorCategory.BUILD, "Validation failed without error details")]
            db.add_all(
                ErrorRecord(project_id=project_id, gate_id=gate_id, role=role, category=category, message=m)
                for category, m in failures
            )
            await db.commit()
            logger.warning(
                "role_validation_failed",
                project_id=str(project_id),
                gate_id=gate_id,
                role=role.value,
                errors=len(failures),
            )
        return report.overall_success

    # ==========================================================================
    # Readiness
    # ==========================================================================

    async def check_and_transition_gate(self, project_id: UUID, gate_id: str) -> ReadinessReport:
        """
        Move a PENDING gate to IN_REVIEW once its work is complete.

        Re-reads state on every call, so calling it again without changes
        has no further effect. Failing build proofs trigger one round of
        self-healing before the final verdict.
        """
        async with self.session_factory() as db:
            machine = self.state_machine(db)
            project = await machine.get_project(project_id)
            gate = await machine.get_gate(project_id, gate_id)
            if gate is None:
                return ReadinessReport(gate_id, ready=False, reasons=["Gate not found"])
            if gate.status != GateStatus.PENDING:
                return ReadinessReport(gate_id, ready=gate.status == GateStatus.IN_REVIEW, status=gate.status)

            report = await self._evaluate(db, project, gate_id)
            if not report.ready and report.failing_roles:
                healed = await self._heal(db, project, gate_id, report.failing_roles)
                if healed:
                    report = await self._evaluate(db, project, gate_id)
                    report.healed_roles = healed

            if report.ready:
                await machine.transition_to_review(project_id, gate_id)
                report.status = GateStatus.IN_REVIEW
                report.transitioned = True
                logger.info("gate_ready_for_review", project_id=str(project_id), gate_id=gate_id)
                await self.notifier.send(
                    NotificationTemplates.gate_ready(project_id, gate_id, gate.description or "")
                )
            else:
                report.status = GateStatus.PENDING
                logger.info("gate_not_ready", project_id=str(project_id), gate_id=gate_id, reasons=report.reasons)
                if report.failing_proofs:
                    await self.notifier.send(
                        NotificationTemplates.validation_failed(project_id, gate_id, report.reasons)
                    )
            return report

    async def _evaluate(self, db: AsyncSession, project: Project, gate_id: str) -> ReadinessReport:
        definition = self.catalog.get(project.category, gate_id)
        tracker = DeliverableTracker(db, self.catalog)
        report = ReadinessReport(gate_id, ready=False)

        deliverables = await tracker.get_deliverables(project.id, gate_id, roles=definition.roles)
        if deliverables:
            incomplete = [d.name for d in deliverables if d.status != DeliverableStatus.COMPLETE]
            if incomplete:
                report.reasons.append(f"Incomplete deliverables: {', '.join(incomplete)}")
        else:
            completed = await self._roles_with_completed_attempt(db, project.id, gate_id)
            missing = [r.value for r in definition.roles if r not in completed]
            if missing:
                report.reasons.append(f"No completed output from: {', '.join(missing)}")

        if definition.requires_proof:
            artifacts = await tracker.artifacts_for_gate(project.id, gate_id)

            if definition.role_proofs:
                code_roles = [r for r in definition.roles if r in CODE_ROLES]
                role_check = role_proofs_satisfied(artifacts, code_roles, definition.role_proofs)
                if not role_check.ok:
                    report.reasons.append(f"Role proofs missing or failing: {', '.join(role_check.missing_types)}")
                    report.failing_proofs.extend(role_check.failing_types)
                    report.failing_roles = [
                        r for r in code_roles
                        if any(key.startswith(f"{r.value}:") for key in role_check.failing_types)
                    ]

            gate_check = proof_requirements_satisfied(gate_id, artifacts, definition.required_proofs)
            if not gate_check.ok:
                report.reasons.append(f"Gate proofs missing or failing: {', '.join(gate_check.missing_types)}")
                report.failing_proofs.extend(t for t in gate_check.failing_types if t not in report.failing_proofs)

            if definition.requires_coverage:
                covered, coverage = coverage_satisfied(artifacts, self.settings.COVERAGE_THRESHOLD_PERCENT)
                if not covered:
                    detail = f"{coverage:.1f}%" if coverage is not None else "no passing report"
                    report.reasons.append(f"Coverage below threshold ({detail})")

        report.ready = not report.reasons
        return report

    async def _roles_with_completed_attempt(
        self,
        db: AsyncSession,
        project_id: UUID,
        gate_id: str,
    ) -> set[AgentRole]:
        result = await db.execute(
            select(AgentExecution.role).where(
                AgentExecution.project_id == project_id,
                AgentExecution.gate_id == gate_id,
                AgentExecution.purpose == ExecutionPurpose.GATE,
                AgentExecution.status == ExecutionStatus.COMPLETED,
            )
        )
        return set(result.scalars().all())

    async def _heal(
        self,
        db: AsyncSession,
        project: Project,
        gate_id: str,
        roles: list[AgentRole],
    ) -> list[AgentRole]:
        loop = self._self_healing(db)
        if loop is None:
            return []

        definition = self.catalog.get(project.category, gate_id)
        escalations = EscalationManager(db)
        healed: list[AgentRole] = []

        for role in roles:
            if role.value not in self.settings.SELF_HEALING_ROLES:
                continue
            if await escalations.has_pending(project.id, role, gate_id):
                logger.info("self_healing_skipped_pending_escalation", gate_id=gate_id, role=role.value)
                continue

            execution_id = await self._latest_execution_id(db, project.id, gate_id, role, ExecutionStatus.COMPLETED)
            if execution_id is None:
                continue

            result = await loop.heal_execution(project.id, execution_id, actor=project.approver)
            if result is None:
                continue
            if not result.success:
                passed = False
            elif result.report is None:
                # No open errors left for this role; check the workspace as it stands
                passed = await self._validate_role_output(db, project.id, gate_id, role, definition)
            else:
                passed = await self._record_validation(db, project.id, gate_id, role, definition, result.report)
            if passed:
                healed.append(role)

        return healed

    async def _latest_execution_id(
        self,
        db: AsyncSession,
        project_id: UUID,
        gate_id: str,
        role: AgentRole,
        status: Optional[ExecutionStatus] = None,
    ) -> Optional[UUID]:
        query = select(AgentExecution.id).where(
            AgentExecution.project_id == project_id,
            AgentExecution.gate_id == gate_id,
            AgentExecution.role == role,
            AgentExecution.purpose == ExecutionPurpose.GATE,
        )
        if status is not None:
            query = query.where(AgentExecution.status == status)
        result = await db.execute(query.order_by(AgentExecution.created_at.desc()).limit(1))
        return result.scalar_one_or_none()

    # ==========================================================================
    # Retries and recovery
    # ==========================================================================

    async def retry_count(self, project_id: UUID, role: AgentRole, gate_id: str) -> int:
        """
        Counted attempts for a role at a gate.

        Only attempts since the gate was created, and inside the configured
        window, are counted.
        """
        async with self.session_factory() as db:
            machine = self.state_machine(db)
            gate = await machine.get_gate(project_id, gate_id)
            if gate is None:
                return 0

            since = gate.created_at
            if since.tzinfo is None:
                since = since.replace(tzinfo=timezone.utc)
            if self.settings.AGENT_RETRY_WINDOW_MINUTES is not None:
                cutoff = datetime.now(timezone.utc) - timedelta(minutes=self.settings.AGENT_RETRY_WINDOW_MINUTES)
                since = max(since, cutoff)

            statuses = [ExecutionStatus(s) for s in self.settings.AGENT_RETRY_COUNTED_STATUSES]
            result = await db.execute(
                select(func.count(AgentExecution.id)).where(
                    AgentExecution.project_id == project_id,
                    AgentExecution.gate_id == gate_id,
                    AgentExecution.role == role,
                    AgentExecution.purpose == ExecutionPurpose.GATE,
                    AgentExecution.status.in_(statuses),
                    AgentExecution.created_at >= since,
                )
            )
            return result.scalar_one()

    async def retry_gate_agents(self, project_id: UUID, gate_id: str, actor: str) -> GateRunResult:
        """
        Re-run a PENDING gate's roles on behalf of the approver.

        Raises:
            TransitionDenied: Wrong actor or gate not PENDING
            GateNotFound: If the gate does not exist
        """
        async with self.session_factory() as db:
            machine = self.state_machine(db)
            project = await machine.get_project(project_id)
            if actor != project.approver:
                raise TransitionDenied("Only the project approver can retry gate agents", gate_id)
            gate = await machine.require_gate(project_id, gate_id)
            if gate.status != GateStatus.PENDING:
                raise TransitionDenied(
                    f"Gate {gate_id} is {gate.status.value}; only pending gates can be retried", gate_id
                )

        logger.info("gate_retry_requested", project_id=str(project_id), gate_id=gate_id, actor=actor)
        return await self.execute_gate_agents(project_id, gate_id)

    async def detect_stuck_gate(self, project_id: UUID) -> Optional[str]:
        """
        Newest PENDING gate whose roles have a failed latest attempt, as long
        as no attempt is running anywhere in the project.
        """
        async with self.session_factory() as db:
            running = await db.execute(
                select(AgentExecution.id).where(
                    AgentExecution.project_id == project_id,
                    AgentExecution.status == ExecutionStatus.RUNNING,
                ).limit(1)
            )
            if running.first() is not None:
                return None

            machine = self.state_machine(db)
            project = await machine.get_project(project_id)
            gates = [g for g in await machine.list_gates(project_id) if g.status == GateStatus.PENDING]

            for gate in reversed(gates):
                for role in self.catalog.roles_for(project.category, gate.gate_id):
                    result = await db.execute(
                        select(AgentExecution.status)
                        .where(
                            AgentExecution.project_id == project_id,
                            AgentExecution.gate_id == gate.gate_id,
                            AgentExecution.role == role,
                            AgentExecution.purpose == ExecutionPurpose.GATE,
                        )
                        .order_by(AgentExecution.created_at.desc())
                        .limit(1)
                    )
                    if result.scalar_one_or_none() == ExecutionStatus.FAILED:
                        logger.warning("gate_stuck", project_id=str(project_id), gate_id=gate.gate_id, role=role.value)
                        return gate.gate_id
            return None

    # ==========================================================================
    # Human decisions
    # ==========================================================================

    async def approve_gate(self, project_id: UUID, request: ApprovalRequest) -> ApprovalOutcome:
        """Approve a gate and publish GateApproved so its successor starts."""
        async with self.session_factory() as db:
            outcome = await self.state_machine(db).approve(
                project_id,
                request.gate_id,
                request.actor,
                request.approval_token,
                notes=request.notes,
            )
        self._emit(GateApproved(project_id, outcome.gate_id, outcome.next_gate_id))
        return outcome

    async def reject_gate(self, project_id: UUID, gate_id: str, actor: str, reason: str) -> GateRead:
        async with self.session_factory() as db:
            gate = await self.state_machine(db).reject(project_id, gate_id, actor, reason)
            return GateRead.model_validate(gate)

    # ==========================================================================
    # Follow-ups driven by the scheduler
    # ==========================================================================

    async def on_gate_approved(self, project_id: UUID, gate_id: str) -> Optional[GateRunResult]:
        """Hand work from the approved gate's roles to the next gate and run it."""
        async with self.session_factory() as db:
            project = await self.state_machine(db).get_project(project_id)
            next_gate_id = self.catalog.next_gate_id(gate_id)
            if next_gate_id is None or project.status == ProjectStatus.COMPLETE:
                return None

            tracker = DeliverableTracker(db, self.catalog)
            handoffs = HandoffManager(db, self.settings.HANDOFF_CONTEXT_LIMIT)
            next_roles = self.catalog.roles_for(project.category, next_gate_id)
            for from_role in self.catalog.roles_for(project.category, gate_id):
                owned = await tracker.get_deliverables(project_id, gate_id, roles=[from_role])
                for to_role in next_roles:
                    if to_role == from_role:
                        continue
                    await handoffs.create_handoff(
                        project_id,
                        from_role=from_role,
                        to_role=to_role,
                        phase=self.catalog.phase_for_gate(next_gate_id),
                        status=HandoffStatus.COMPLETE,
                        notes=f"{gate_id} approved",
                        deliverables=[d.name for d in owned],
                    )

        return await self.execute_gate_agents(project_id, next_gate_id)

    async def execute_next_task(self, project_id: UUID) -> Optional[RoleRunResult]:
        """
        Run the next executable decomposed task.

        Blocked while the current gate awaits review. A failed task goes
        back to NOT_STARTED.
        """
        async with self.session_factory() as db:
            machine = self.state_machine(db)
            project = await machine.get_project(project_id)
            if project.status == ProjectStatus.COMPLETE:
                return None
            gate = await machine.get_current_gate(project_id)
            if gate is not None and gate.status == GateStatus.IN_REVIEW:
                logger.info("task_execution_blocked", project_id=str(project_id), gate_id=gate.gate_id)
                return None

            task = await TaskDecomposer(db, self.catalog).next_executable_task(project_id)
            if task is None:
                return None
            task.status = TaskStatus.IN_PROGRESS
            await db.commit()
            gate_id = project.current_gate_id

        result = await self._execute_role_once(project_id, gate_id, task.role, attempt=1, task=task)

        async with self.session_factory() as db:
            stored = await db.get(Task, task.id)
            stored.status = TaskStatus.COMPLETE if result.succeeded else TaskStatus.NOT_STARTED
            await db.commit()

        return result

    async def workflow_status(self, project_id: UUID) -> WorkflowStatus:
        """Snapshot of gates, task progress and open escalations."""
        async with self.session_factory() as db:
            machine = self.state_machine(db)
            project = await machine.get_project(project_id)
            gates = await machine.list_gates(project_id)
            progress = await TaskDecomposer(db, self.catalog).project_progress(project_id)
            escalations = await EscalationManager(db).pending_for_project(project_id)

            status = WorkflowStatus(
                project_id=project.id,
                name=project.name,
                category=project.category,
                status=project.status,
                current_gate_id=project.current_gate_id,
                current_phase=project.current_phase,
                gates=[GateRead.model_validate(g) for g in gates],
                progress=ProjectProgress(
                    total=progress.total,
                    complete=progress.complete,
                    in_progress=progress.in_progress,
                    not_started=progress.not_started,
                    percent_complete=progress.percent_complete,
                ),
                pending_escalations=[EscalationRead.model_validate(e) for e in escalations],
            )

        status.stuck_gate_id = await self.detect_stuck_gate(project_id)
        return status
