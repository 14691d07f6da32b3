"""
Gatekeeper - Pydantic Schemas
=============================

Input and read schemas for the engine's public surface.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from gatekeeper.core.models import (
    AgentRole,
    DeliverableStatus,
    EscalationStatus,
    GateStatus,
    ProjectCategory,
    ProjectStatus,
    ProofType,
    TaskStatus,
)


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class TimestampSchema(BaseSchema):
    """Schema with timestamp fields."""

    created_at: datetime
    updated_at: datetime


# ==========================================================================
# Input Schemas
# ==========================================================================

class ProjectCreate(BaseSchema):
    """Schema for starting a new gated project."""

    name: str = Field(min_length=1, max_length=255)
    approver: str = Field(min_length=1, max_length=255)
    category: ProjectCategory = ProjectCategory.STANDARD
    decompose_tasks: bool = True

    @field_validator("approver")
    @classmethod
    def approver_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Approver identity is required")
        return v


class ApprovalRequest(BaseSchema):
    """Schema for approving a gate."""

    gate_id: str = Field(pattern=r"^G\d+$")
    actor: str = Field(min_length=1)
    approval_token: str
    notes: Optional[str] = None


# ==========================================================================
# Read Schemas
# ==========================================================================

class GateRead(TimestampSchema):
    """Gate as seen by a reviewer."""

    gate_id: str
    status: GateStatus
    requires_proof: bool
    description: Optional[str] = None
    passing_criteria: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    review_notes: Optional[str] = None
    rejection_reason: Optional[str] = None


class DeliverableRead(BaseSchema):
    """Deliverable summary."""

    id: UUID
    gate_id: str
    name: str
    owner: AgentRole
    path: Optional[str] = None
    status: DeliverableStatus


class ProofArtifactRead(BaseSchema):
    """Proof artifact summary."""

    id: UUID
    gate_id: str
    proof_type: ProofType
    passed: bool
    summary: Optional[str] = None
    role: Optional[AgentRole] = None
    created_at: datetime


class TaskRead(BaseSchema):
    """Decomposed task summary."""

    id: UUID
    sequence: int
    role: AgentRole
    description: str
    priority: str
    phase: Optional[str] = None
    status: TaskStatus
    parent_task_id: Optional[UUID] = None


class EscalationRead(TimestampSchema):
    """Escalation awaiting or past human attention."""

    id: UUID
    gate_id: Optional[str] = None
    from_role: AgentRole
    level: str
    severity: str
    summary: str
    status: EscalationStatus


class ProjectProgress(BaseSchema):
    """Task completion counts."""

    total: int
    complete: int
    in_progress: int
    not_started: int
    percent_complete: float


class WorkflowStatus(BaseSchema):
    """Snapshot of a project's position in the gate sequence."""

    project_id: UUID
    name: str
    category: ProjectCategory
    status: ProjectStatus
    current_gate_id: Optional[str] = None
    current_phase: Optional[str] = None
    gates: list[GateRead] = Field(default_factory=list)
    progress: ProjectProgress
    pending_escalations: list[EscalationRead] = Field(default_factory=list)
    stuck_gate_id: Optional[str] = None
