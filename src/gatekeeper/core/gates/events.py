"""
Workflow events exchanged between the orchestrator and the scheduler.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional, Union
from uuid import UUID

from gatekeeper.core.models import AgentRole, ExecutionPurpose


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AgentExecutionCompleted:
    """A role attempt finished, successfully or not."""
    project_id: UUID
    role: AgentRole
    execution_id: UUID
    succeeded: bool
    purpose: ExecutionPurpose = ExecutionPurpose.GATE
    gate_id: Optional[str] = None
    task_id: Optional[UUID] = None
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class GateApproved:
    """A human approved a gate; its successor should start."""
    project_id: UUID
    gate_id: str
    next_gate_id: Optional[str] = None
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class RetryRequested:
    """Re-run the roles of a PENDING gate."""
    project_id: UUID
    gate_id: str
    actor: str
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class StuckGateScan:
    """Look for a gate whose last role attempt failed and nothing is running."""
    project_id: UUID
    occurred_at: datetime = field(default_factory=_now)


WorkflowEvent = Union[AgentExecutionCompleted, GateApproved, RetryRequested, StuckGateScan]
EventSink = Callable[[WorkflowEvent], None]
