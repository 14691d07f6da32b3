"""
Gatekeeper - Database Models
============================

SQLAlchemy models for the gate workflow. Every record is scoped to a
project and removed with it.
"""

import enum
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from gatekeeper.core.database import Base


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ==========================================================================
# Enums
# ==========================================================================

class ProjectCategory(str, enum.Enum):
    """Project category, selects the gate catalog rows and task workflow."""
    STANDARD = "standard"
    ML_AUGMENTED = "ml-augmented"
    HYBRID = "hybrid"
    ENHANCEMENT = "enhancement"


class ProjectStatus(str, enum.Enum):
    """Lifecycle of a project."""
    ACTIVE = "active"
    COMPLETE = "complete"


class GateStatus(str, enum.Enum):
    """Gate lifecycle status."""
    PENDING = "pending"        # Work in progress
    IN_REVIEW = "in_review"    # Ready for human approval
    APPROVED = "approved"      # Terminal
    REJECTED = "rejected"      # Terminal
    BLOCKED = "blocked"        # Held by dependencies


class DeliverableStatus(str, enum.Enum):
    """Deliverable progress."""
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


class TaskStatus(str, enum.Enum):
    """Decomposed task progress."""
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


class AgentRole(str, enum.Enum):
    """Agent roles known to the catalog."""
    PRODUCT_MANAGER_ONBOARDING = "product_manager_onboarding"
    PRODUCT_MANAGER = "product_manager"
    ARCHITECT = "architect"
    UX_UI_DESIGNER = "ux_ui_designer"
    FRONTEND_DEVELOPER = "frontend_developer"
    BACKEND_DEVELOPER = "backend_developer"
    DATA_ENGINEER = "data_engineer"
    ML_ENGINEER = "ml_engineer"
    PROMPT_ENGINEER = "prompt_engineer"
    QA_ENGINEER = "qa_engineer"
    MODEL_EVALUATOR = "model_evaluator"
    SECURITY_ENGINEER = "security_engineer"
    DEVOPS_ENGINEER = "devops_engineer"
    AIOPS_ENGINEER = "aiops_engineer"


class ProofType(str, enum.Enum):
    """Kinds of evidence attached to gates."""
    SPEC_VALIDATION = "spec_validation"
    BUILD_OUTPUT = "build_output"
    LINT_OUTPUT = "lint_output"
    PREVIEW_STARTUP = "preview_startup"
    UNIT_TEST_OUTPUT = "unit_test_output"
    E2E_TEST_OUTPUT = "e2e_test_output"
    INTEGRATION_TEST_OUTPUT = "integration_test_output"
    COVERAGE_REPORT = "coverage_report"
    SECURITY_SCAN = "security_scan"
    DEPLOYMENT_LOG = "deployment_log"
    SMOKE_TEST = "smoke_test"
    MANUAL_VERIFICATION = "manual_verification"


class ExecutionStatus(str, enum.Enum):
    """Agent attempt status."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutionPurpose(str, enum.Enum):
    """Why an agent attempt was started."""
    GATE = "gate"                  # Role run for a gate
    TASK = "task"                  # Decomposed task run
    SELF_HEALING = "self_healing"  # Error correction iteration


class HandoffStatus(str, enum.Enum):
    """Completeness of a handoff between roles."""
    PARTIAL = "partial"
    COMPLETE = "complete"


class EscalationStatus(str, enum.Enum):
    """Human escalation lifecycle."""
    PENDING = "pending"
    RESOLVED = "resolved"


class ErrorCategory(str, enum.Enum):
    """Source of a recorded validation error."""
    BUILD = "build"
    LINT = "lint"
    TEST = "test"


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        onupdate=utc_now,
        nullable=False,
    )


# ==========================================================================
# Models
# ==========================================================================

class Project(Base, TimestampMixin):
    """
    A project moving through the gate sequence.

    ``current_gate_id`` always names an existing gate once gates are
    initialized. Completion is recorded in ``status`` and ``current_phase``.
    """

    __tablename__ = "projects"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    category: Mapped[ProjectCategory] = mapped_column(
        Enum(ProjectCategory),
        default=ProjectCategory.STANDARD,
        nullable=False,
    )
    approver: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )  # Identity allowed to approve or reject gates
    current_gate_id: Mapped[Optional[str]] = mapped_column(
        String(10),
        nullable=True,
    )
    current_phase: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
    )
    status: Mapped[ProjectStatus] = mapped_column(
        Enum(ProjectStatus),
        default=ProjectStatus.ACTIVE,
        nullable=False,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Relationships
    gates: Mapped[list["Gate"]] = relationship(
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
    )
    tasks: Mapped[list["Task"]] = relationship(
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Project {self.name} [{self.current_gate_id}]>"


class Gate(Base, TimestampMixin):
    """A checkpoint in the gate sequence, at most one per gate id per project."""

    __tablename__ = "gates"
    __table_args__ = (
        UniqueConstraint("project_id", "gate_id", name="uq_gates_project_gate"),
    )

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    project_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    gate_id: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
    )  # G1..G9
    status: Mapped[GateStatus] = mapped_column(
        Enum(GateStatus),
        default=GateStatus.PENDING,
        nullable=False,
    )
    requires_proof: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    passing_criteria: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    # Review outcome
    approved_by: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    approved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    review_notes: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    rejected_by: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    rejection_reason: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    # Relationships
    project: Mapped["Project"] = relationship(
        back_populates="gates",
    )

    def __repr__(self) -> str:
        return f"<Gate {self.gate_id} [{self.status.value}]>"


class Deliverable(Base, TimestampMixin):
    """Named piece of work owned by a role, tagged with the gate it belongs to."""

    __tablename__ = "deliverables"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    project_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    gate_id: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    owner: Mapped[AgentRole] = mapped_column(
        Enum(AgentRole),
        nullable=False,
    )
    path: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
    )
    status: Mapped[DeliverableStatus] = mapped_column(
        Enum(DeliverableStatus),
        default=DeliverableStatus.NOT_STARTED,
        nullable=False,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Deliverable {self.gate_id}:{self.name} [{self.status.value}]>"


class ProofArtifact(Base, TimestampMixin):
    """
    Evidence attached to a gate. Append only.

    Only the most recent artifact per type (or per role and type) is
    considered when checking gate requirements.
    """

    __tablename__ = "proof_artifacts"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    project_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    gate_id: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        index=True,
    )
    proof_type: Mapped[ProofType] = mapped_column(
        Enum(ProofType),
        nullable=False,
    )
    passed: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
    )
    summary: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    role: Mapped[Optional[AgentRole]] = mapped_column(
        Enum(AgentRole),
        nullable=True,
    )  # Producing role
    file_path: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
    )

    def __repr__(self) -> str:
        verdict = "pass" if self.passed else "fail"
        return f"<ProofArtifact {self.gate_id}:{self.proof_type.value} {verdict}>"


class Task(Base, TimestampMixin):
    """Decomposed unit of role work, executable once its parent is complete."""

    __tablename__ = "tasks"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    project_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )  # Creation order
    role: Mapped[AgentRole] = mapped_column(
        Enum(AgentRole),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    priority: Mapped[str] = mapped_column(
        String(20),
        default="medium",
        nullable=False,
    )
    phase: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
    )
    status: Mapped[TaskStatus] = mapped_column(
        Enum(TaskStatus),
        default=TaskStatus.NOT_STARTED,
        nullable=False,
    )
    parent_task_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid,
        ForeignKey("tasks.id", ondelete="SET NULL"),
        nullable=True,
    )
    depends_on: Mapped[list] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )  # Role values this task waits for

    # Relationships
    project: Mapped["Project"] = relationship(
        back_populates="tasks",
    )

    def __repr__(self) -> str:
        return f"<Task #{self.sequence} {self.role.value} [{self.status.value}]>"


class AgentExecution(Base, TimestampMixin):
    """One attempt by a role to produce output."""

    __tablename__ = "agent_executions"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    project_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    gate_id: Mapped[Optional[str]] = mapped_column(
        String(10),
        nullable=True,
        index=True,
    )
    task_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid,
        ForeignKey("tasks.id", ondelete="SET NULL"),
        nullable=True,
    )
    role: Mapped[AgentRole] = mapped_column(
        Enum(AgentRole),
        nullable=False,
    )
    purpose: Mapped[ExecutionPurpose] = mapped_column(
        Enum(ExecutionPurpose),
        default=ExecutionPurpose.GATE,
        nullable=False,
    )
    status: Mapped[ExecutionStatus] = mapped_column(
        Enum(ExecutionStatus),
        default=ExecutionStatus.RUNNING,
        nullable=False,
    )
    attempt_number: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
    )

    # Exchange
    input_prompt: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    output: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    input_tokens: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    output_tokens: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    # Post-processing results
    documents_generated: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    files_written: Mapped[list] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )
    warnings: Mapped[list] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )

    # Timing
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<AgentExecution {self.role.value}@{self.gate_id} [{self.status.value}]>"


class Handoff(Base, TimestampMixin):
    """Record of work passed from one role to another."""

    __tablename__ = "handoffs"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    project_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    from_role: Mapped[AgentRole] = mapped_column(
        Enum(AgentRole),
        nullable=False,
    )
    to_role: Mapped[AgentRole] = mapped_column(
        Enum(AgentRole),
        nullable=False,
    )
    phase: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
    )
    status: Mapped[HandoffStatus] = mapped_column(
        Enum(HandoffStatus),
        default=HandoffStatus.COMPLETE,
        nullable=False,
    )
    notes: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    deliverables: Mapped[list] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Handoff {self.from_role.value}->{self.to_role.value} [{self.status.value}]>"


class Escalation(Base, TimestampMixin):
    """Human-attention record created when automatic repair is exhausted."""

    __tablename__ = "escalations"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    project_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    gate_id: Mapped[Optional[str]] = mapped_column(
        String(10),
        nullable=True,
    )
    from_role: Mapped[AgentRole] = mapped_column(
        Enum(AgentRole),
        nullable=False,
    )
    level: Mapped[str] = mapped_column(
        String(10),
        default="L1",
        nullable=False,
    )
    escalation_type: Mapped[str] = mapped_column(
        String(50),
        default="technical",
        nullable=False,
    )
    severity: Mapped[str] = mapped_column(
        String(20),
        default="high",
        nullable=False,
    )
    summary: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    context: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )  # {execution_id, attempts, errors}
    status: Mapped[EscalationStatus] = mapped_column(
        Enum(EscalationStatus),
        default=EscalationStatus.PENDING,
        nullable=False,
    )
    resolved_by: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    resolution: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Escalation {self.from_role.value} {self.severity} [{self.status.value}]>"


class ErrorRecord(Base, TimestampMixin):
    """Validation error reported for generated code, resolved by self-healing."""

    __tablename__ = "error_records"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )
    project_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    gate_id: Mapped[Optional[str]] = mapped_column(
        String(10),
        nullable=True,
    )
    role: Mapped[Optional[AgentRole]] = mapped_column(
        Enum(AgentRole),
        nullable=True,
    )
    category: Mapped[ErrorCategory] = mapped_column(
        Enum(ErrorCategory),
        nullable=False,
    )
    message: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    resolution: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def __repr__(self) -> str:
        state = "resolved" if self.is_resolved else "open"
        return f"<ErrorRecord {self.category.value} [{state}]>"
