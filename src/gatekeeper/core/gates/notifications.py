"""
Gate Notifications - Fire-and-forget event delivery.

Templates for the events the engine emits and a Notifier that hands them
to an optional async callback. Delivery failures are logged, never raised.
"""

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

NotificationCallback = Callable[[dict], Union[Awaitable[None], None]]


class NotificationType(str, Enum):
    """Types of gate workflow notifications."""
    GATE_READY = "gate_ready"
    GATE_APPROVED = "gate_approved"
    GATE_REJECTED = "gate_rejected"
    GATE_BLOCKED = "gate_blocked"
    AGENT_STARTED = "agent_started"
    AGENT_COMPLETED = "agent_completed"
    AGENT_FAILED = "agent_failed"
    VALIDATION_FAILED = "validation_failed"
    SELF_HEALING_ATTEMPT = "self_healing_attempt"
    ESCALATION_CREATED = "escalation_created"
    HANDOFF_CREATED = "handoff_created"
    PROJECT_COMPLETE = "project_complete"


class NotificationPriority(str, Enum):
    """Notification priority levels."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


@dataclass
class Notification:
    """Notification payload."""
    type: NotificationType
    project_id: str
    title: str
    body: str
    priority: NotificationPriority = NotificationPriority.NORMAL
    data: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "project_id": self.project_id,
            "title": self.title,
            "body": self.body,
            "priority": self.priority.value,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


class NotificationTemplates:
    """Notification template definitions."""

    @staticmethod
    def gate_ready(project_id, gate_id: str, description: str = "") -> Notification:
        return Notification(
            type=NotificationType.GATE_READY,
            project_id=str(project_id),
            title=f"{gate_id} ready for review",
            body=description or f"All work for {gate_id} is complete. Review and approve to continue.",
            priority=NotificationPriority.HIGH,
            data={"gate_id": gate_id},
        )

    @staticmethod
    def gate_approved(project_id, gate_id: str, approved_by: str, next_gate_id: Optional[str]) -> Notification:
        body = f"{gate_id} approved by {approved_by}"
        if next_gate_id:
            body += f", {next_gate_id} started"
        return Notification(
            type=NotificationType.GATE_APPROVED,
            project_id=str(project_id),
            title=f"{gate_id} approved",
            body=body,
            data={"gate_id": gate_id, "approved_by": approved_by, "next_gate_id": next_gate_id},
        )

    @staticmethod
    def gate_rejected(project_id, gate_id: str, rejected_by: str, reason: str) -> Notification:
        return Notification(
            type=NotificationType.GATE_REJECTED,
            project_id=str(project_id),
            title=f"{gate_id} rejected",
            body=f"Rejected by {rejected_by}: {reason}",
            priority=NotificationPriority.HIGH,
            data={"gate_id": gate_id, "rejected_by": rejected_by, "reason": reason},
        )

    @staticmethod
    def gate_blocked(project_id, gate_id: str, reason: str) -> Notification:
        return Notification(
            type=NotificationType.GATE_BLOCKED,
            project_id=str(project_id),
            title=f"{gate_id} cannot start",
            body=reason,
            data={"gate_id": gate_id, "reason": reason},
        )

    @staticmethod
    def agent_started(project_id, gate_id: Optional[str], role: str, execution_id) -> Notification:
        return Notification(
            type=NotificationType.AGENT_STARTED,
            project_id=str(project_id),
            title=f"{role} started",
            body=f"{role} is working on {gate_id or 'task'}",
            priority=NotificationPriority.LOW,
            data={"gate_id": gate_id, "role": role, "execution_id": str(execution_id)},
        )

    @staticmethod
    def agent_completed(project_id, gate_id: Optional[str], role: str, execution_id) -> Notification:
        return Notification(
            type=NotificationType.AGENT_COMPLETED,
            project_id=str(project_id),
            title=f"{role} completed",
            body=f"{role} finished work for {gate_id or 'task'}",
            data={"gate_id": gate_id, "role": role, "execution_id": str(execution_id)},
        )

    @staticmethod
    def agent_failed(project_id, gate_id: Optional[str], role: str, execution_id, error: str) -> Notification:
        return Notification(
            type=NotificationType.AGENT_FAILED,
            project_id=str(project_id),
            title=f"{role} failed",
            body=error,
            priority=NotificationPriority.HIGH,
            data={"gate_id": gate_id, "role": role, "execution_id": str(execution_id), "error": error},
        )

    @staticmethod
    def validation_failed(project_id, gate_id: str, reasons: list[str]) -> Notification:
        return Notification(
            type=NotificationType.VALIDATION_FAILED,
            project_id=str(project_id),
            title=f"{gate_id} validation failed",
            body="; ".join(reasons),
            priority=NotificationPriority.HIGH,
            data={"gate_id": gate_id, "reasons": reasons},
        )

    @staticmethod
    def self_healing_attempt(project_id, role: str, attempt: int, max_attempts: int, error_count: int) -> Notification:
        return Notification(
            type=NotificationType.SELF_HEALING_ATTEMPT,
            project_id=str(project_id),
            title=f"Fixing {role} errors ({attempt}/{max_attempts})",
            body=f"{error_count} error(s) remaining",
            priority=NotificationPriority.LOW,
            data={"role": role, "attempt": attempt, "max_attempts": max_attempts, "error_count": error_count},
        )

    @staticmethod
    def escalation_created(project_id, escalation_id, role: str, summary: str) -> Notification:
        return Notification(
            type=NotificationType.ESCALATION_CREATED,
            project_id=str(project_id),
            title="Human intervention required",
            body=summary,
            priority=NotificationPriority.URGENT,
            data={"escalation_id": str(escalation_id), "role": role},
        )

    @staticmethod
    def handoff_created(project_id, from_role: str, to_role: str) -> Notification:
        return Notification(
            type=NotificationType.HANDOFF_CREATED,
            project_id=str(project_id),
            title=f"Handoff {from_role} -> {to_role}",
            body=f"{from_role} handed work to {to_role}",
            priority=NotificationPriority.LOW,
            data={"from_role": from_role, "to_role": to_role},
        )

    @staticmethod
    def project_complete(project_id, approved_by: str) -> Notification:
        return Notification(
            type=NotificationType.PROJECT_COMPLETE,
            project_id=str(project_id),
            title="Project complete",
            body=f"Final gate approved by {approved_by}",
            priority=NotificationPriority.HIGH,
            data={"approved_by": approved_by},
        )


class Notifier:
    """
    Delivers notifications to an optional callback.

    The callback may be sync or async. Errors raised by it are logged
    and swallowed so a broken listener never affects gate state.
    """

    def __init__(self, callback: Optional[NotificationCallback] = None):
        self.callback = callback

    async def send(self, notification: Notification) -> bool:
        """
        Deliver a notification.

        Returns:
            True if a callback accepted it
        """
        if self.callback is None:
            logger.debug(f"Notification (no listener): {notification.type.value} {notification.title}")
            return False
        try:
            result = self.callback(notification.to_dict())
            if inspect.isawaitable(result):
                await result
            return True
        except Exception as e:
            logger.warning(f"Notification delivery failed for {notification.type.value}: {e}")
            return False
