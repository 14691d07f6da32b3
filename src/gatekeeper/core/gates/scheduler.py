"""
Workflow Scheduler - Event queue that drives follow-up work.

The orchestrator publishes an event whenever something finishes; the
scheduler reacts by starting the next piece of work:

    AgentExecutionCompleted (task)  -> execute_next_task
    GateApproved                    -> on_gate_approved
    RetryRequested                  -> retry_gate_agents
    StuckGateScan                   -> detect_stuck_gate -> RetryRequested

``drain()`` processes queued events until the queue is empty, which keeps
tests deterministic. ``run()`` is the long-running form.
"""

import asyncio
from typing import Optional

import structlog

from gatekeeper.core.config import Settings, get_settings
from gatekeeper.core.gates.events import (
    AgentExecutionCompleted,
    GateApproved,
    RetryRequested,
    StuckGateScan,
    WorkflowEvent,
)
from gatekeeper.core.gates.orchestrator import GateOrchestrator
from gatekeeper.core.models import ExecutionPurpose

logger = structlog.get_logger()


class WorkflowScheduler:
    """
    Single-consumer event loop around a GateOrchestrator.

    Registers itself as the orchestrator's event sink on construction.
    """

    def __init__(self, orchestrator: GateOrchestrator, settings: Optional[Settings] = None):
        self.orchestrator = orchestrator
        self.settings = settings or get_settings()
        self.queue: asyncio.Queue[WorkflowEvent] = asyncio.Queue()
        self.handled = 0
        orchestrator.event_sink = self.publish

    def publish(self, event: WorkflowEvent) -> None:
        self.queue.put_nowait(event)

    async def drain(self, max_events: Optional[int] = None) -> int:
        """
        Handle queued events, including ones published while draining.

        Args:
            max_events: Upper bound on events handled (defaults to settings)

        Returns:
            Number of events handled
        """
        limit = max_events or self.settings.SCHEDULER_MAX_EVENTS
        count = 0
        while count < limit:
            try:
                event = self.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self._dispatch(event)
            count += 1

        if count >= limit and not self.queue.empty():
            logger.warning("scheduler_drain_limit_reached", limit=limit, remaining=self.queue.qsize())
        return count

    async def run(self, stop: asyncio.Event) -> None:
        """Handle events until ``stop`` is set."""
        logger.info("scheduler_started")
        while not stop.is_set():
            try:
                event = await asyncio.wait_for(self.queue.get(), timeout=0.1)
            except asyncio.TimeoutError:
                continue
            await self._dispatch(event)
        logger.info("scheduler_stopped", handled=self.handled)

    async def _dispatch(self, event: WorkflowEvent) -> None:
        try:
            await self._handle(event)
        except Exception as e:
            logger.error(
                "scheduler_handler_failed",
                event_type=type(event).__name__,
                project_id=str(event.project_id),
                error=str(e),
            )
        finally:
            self.handled += 1
            self.queue.task_done()

    async def _handle(self, event: WorkflowEvent) -> None:
        if isinstance(event, AgentExecutionCompleted):
            # Gate readiness is checked by execute_gate_agents once every role has settled
            if event.purpose == ExecutionPurpose.TASK and event.succeeded:
                await self.orchestrator.execute_next_task(event.project_id)

        elif isinstance(event, GateApproved):
            await self.orchestrator.on_gate_approved(event.project_id, event.gate_id)

        elif isinstance(event, RetryRequested):
            await self.orchestrator.retry_gate_agents(event.project_id, event.gate_id, event.actor)

        elif isinstance(event, StuckGateScan):
            gate_id = await self.orchestrator.detect_stuck_gate(event.project_id)
            if gate_id is None:
                return
            async with self.orchestrator.session_factory() as db:
                project = await self.orchestrator.state_machine(db).get_project(event.project_id)
                approver = project.approver
            logger.info("stuck_gate_retry_scheduled", project_id=str(event.project_id), gate_id=gate_id)
            self.publish(RetryRequested(event.project_id, gate_id, approver))

        else:
            logger.warning("scheduler_unknown_event", event_type=type(event).__name__)
