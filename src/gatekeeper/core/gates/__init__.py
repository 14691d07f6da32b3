"""
Gatekeeper Gate Engine
======================

Moves a project through a fixed sequence of human-approved gates. Agent
roles run at each gate; their deliverables and proof artifacts decide when
a gate is ready for review.

Components:
- GateCatalog: Static gate definitions per project category
- GateStateMachine: Gate lifecycle and atomic approval
- DeliverableTracker: Deliverable and proof artifact bookkeeping
- TaskDecomposer: Category workflow to ordered role tasks
- GateOrchestrator: Runs gate roles and checks readiness
- SelfHealingLoop: Feeds build errors back to the producing role
- EscalationManager: Human attention when healing runs out
- HandoffManager: Work passed between roles
- WorkflowScheduler: Event queue driving follow-up work
"""

from gatekeeper.core.gates.catalog import GateCatalog, GateDefinition
from gatekeeper.core.gates.decomposer import TaskDecomposer
from gatekeeper.core.gates.escalation import EscalationManager
from gatekeeper.core.gates.handoff import HandoffManager
from gatekeeper.core.gates.notifications import Notification, Notifier
from gatekeeper.core.gates.orchestrator import GateOrchestrator
from gatekeeper.core.gates.scheduler import WorkflowScheduler
from gatekeeper.core.gates.self_healing import SelfHealingLoop
from gatekeeper.core.gates.state_machine import GateStateMachine
from gatekeeper.core.gates.tracker import DeliverableTracker

__all__ = [
    "GateCatalog",
    "GateDefinition",
    "GateStateMachine",
    "DeliverableTracker",
    "TaskDecomposer",
    "GateOrchestrator",
    "SelfHealingLoop",
    "EscalationManager",
    "HandoffManager",
    "Notification",
    "Notifier",
    "WorkflowScheduler",
]
