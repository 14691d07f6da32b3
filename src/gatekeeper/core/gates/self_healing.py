"""
Self-Healing Retry Loop - Automatic repair of generated code.

Feeds validation errors back to the producing role, writes the corrected
files and re-validates, up to a fixed attempt budget:

1. Build a correction prompt from the errors still open
2. Run the role
3. Extract and write files
4. Re-run build, lint and tests
5. Stop on success, otherwise try again with the new error list

When the budget runs out the failure is escalated to a human.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.core.config import Settings, get_settings
from gatekeeper.core.gates.catalog import GateCatalog
from gatekeeper.core.gates.collaborators import (
    AgentExecutor,
    CodeExtractor,
    FileWriter,
    ValidationReport,
    Validator,
)
from gatekeeper.core.gates.escalation import EscalationManager
from gatekeeper.core.gates.handoff import HandoffManager
from gatekeeper.core.gates.notifications import NotificationTemplates, Notifier
from gatekeeper.core.models import (
    AgentExecution,
    AgentRole,
    ErrorRecord,
    ExecutionPurpose,
    ExecutionStatus,
    HandoffStatus,
    Project,
)

logger = logging.getLogger(__name__)

PROMPT_ERROR_PREVIEW = 5
PROMPT_OUTPUT_PREVIEW = 500


@dataclass
class RetryResult:
    """Outcome of a self-healing run."""
    success: bool
    attempt_number: int
    fixed_errors: list[str] = field(default_factory=list)
    remaining_errors: list[str] = field(default_factory=list)
    new_output: Optional[str] = None
    report: Optional[ValidationReport] = None


class SelfHealingLoop:
    """
    Bounded error-correction loop for code-producing roles.

    Every iteration is recorded as an AgentExecution with purpose
    SELF_HEALING so it never counts against the gate retry budget.
    """

    def __init__(
        self,
        db: AsyncSession,
        executor: AgentExecutor,
        code_extractor: CodeExtractor,
        file_writer: FileWriter,
        validator: Validator,
        catalog: Optional[GateCatalog] = None,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.executor = executor
        self.code_extractor = code_extractor
        self.file_writer = file_writer
        self.validator = validator
        self.catalog = catalog or GateCatalog.default()
        self.notifier = notifier or Notifier()
        self.settings = settings or get_settings()
        self.escalations = EscalationManager(db)
        self.handoffs = HandoffManager(db, self.settings.HANDOFF_CONTEXT_LIMIT)

    # ==========================================================================
    # Loop
    # ==========================================================================

    async def retry_with_errors(
        self,
        project_id: UUID,
        role: AgentRole,
        unresolved_errors: list[str],
        max_attempts: Optional[int] = None,
        gate_id: Optional[str] = None,
        original_output: str = "",
    ) -> RetryResult:
        """
        Ask the role to fix errors until validation passes or the budget ends.

        Args:
            project_id: Project whose workspace is being repaired
            role: Role that produced the broken code
            unresolved_errors: Errors to fix
            max_attempts: Attempt budget (defaults to settings)
            gate_id: Gate the repair belongs to
            original_output: Output that introduced the errors

        Returns:
            RetryResult; success with attempt 0 when there was nothing to fix
        """
        if max_attempts is None:
            max_attempts = self.settings.SELF_HEALING_MAX_ATTEMPTS
        if not unresolved_errors:
            return RetryResult(success=True, attempt_number=0)

        original_errors = list(unresolved_errors)
        remaining = list(unresolved_errors)
        fixed: list[str] = []
        last_report: Optional[ValidationReport] = None

        for attempt in range(1, max_attempts + 1):
            logger.info(f"Self-healing attempt {attempt}/{max_attempts} for {role.value}")
            await self.notifier.send(
                NotificationTemplates.self_healing_attempt(
                    project_id, role.value, attempt, max_attempts, len(remaining)
                )
            )

            prompt = self._build_prompt(remaining, attempt, max_attempts, original_output)
            execution = await self._start_attempt(project_id, role, gate_id, attempt, prompt)

            try:
                response = await self.executor.execute(role, self._system_context(role), prompt)
                if not response.success:
                    await self._finish_attempt(execution, ExecutionStatus.FAILED, error=response.error)
                    continue

                files = self.code_extractor.extract_files(response.content)
                if not files:
                    logger.info(f"No code files extracted in self-healing attempt {attempt}")
                    await self._finish_attempt(
                        execution, ExecutionStatus.FAILED, output=response.content, error="No files extracted"
                    )
                    continue

                written = []
                for extracted in files:
                    await self.file_writer.write_file(str(project_id), extracted.path, extracted.content)
                    written.append(extracted.path)

                report = await self.validator.run_full_validation(str(project_id))
                last_report = report
                new_errors = [*report.build_errors, *report.lint_errors, *report.test_errors]

                newly_fixed = [e for e in remaining if e not in new_errors and e not in fixed]
                fixed.extend(newly_fixed)
                if len(new_errors) >= len(remaining):
                    logger.info(f"No progress in self-healing attempt {attempt}: {len(new_errors)} error(s)")
                remaining = new_errors

                await self._finish_attempt(
                    execution,
                    ExecutionStatus.COMPLETED if report.overall_success else ExecutionStatus.FAILED,
                    output=response.content,
                    files=written,
                )

                if report.overall_success:
                    await self._resolve_errors(project_id, attempt)
                    logger.info(f"Self-healing succeeded for {role.value} after {attempt} attempt(s)")
                    return RetryResult(
                        success=True,
                        attempt_number=attempt,
                        fixed_errors=original_errors,
                        remaining_errors=[],
                        new_output=response.content,
                        report=report,
                    )
            except Exception as e:
                logger.error(f"Self-healing attempt {attempt} for {role.value} failed: {e}")
                await self._finish_attempt(execution, ExecutionStatus.FAILED, error=str(e))

        logger.warning(
            f"Self-healing exhausted {max_attempts} attempt(s) for {role.value}; "
            f"{len(remaining)} error(s) remain"
        )
        return RetryResult(
            success=False,
            attempt_number=max_attempts,
            fixed_errors=fixed,
            remaining_errors=remaining,
            report=last_report,
        )

    async def auto_retry_on_build_failure(
        self,
        project_id: UUID,
        execution_id: UUID,
        actor: Optional[str] = None,
    ) -> bool:
        """
        Heal a failed build for an allow-listed role.

        On success hands work to the role's successors; on failure opens
        a high-severity escalation.

        Returns:
            True if a healing attempt left the workspace validating
        """
        result = await self.heal_execution(project_id, execution_id, actor=actor)
        return result is not None and result.success and result.report is not None

    async def heal_execution(
        self,
        project_id: UUID,
        execution_id: UUID,
        actor: Optional[str] = None,
    ) -> Optional[RetryResult]:
        """
        Run the loop against the open errors left by an execution.

        Returns:
            RetryResult, or None when the execution is unknown or its role
            is not allowed to self-heal. ``report`` is None when no
            validation ran because there was nothing to fix.
        """
        execution = await self.db.get(AgentExecution, execution_id)
        if execution is None:
            logger.warning(f"Agent execution {execution_id} not found for auto-retry")
            return None
        if execution.role.value not in self.settings.SELF_HEALING_ROLES:
            return None

        project = await self.db.get(Project, project_id)
        category = project.category if project else None
        role = execution.role
        gate_id = execution.gate_id

        errors = await self._unresolved_errors(project_id)
        logger.info(f"Auto-retry triggered for {role.value} with {len(errors)} open error(s) (actor={actor})")

        result = await self.retry_with_errors(
            project_id,
            role,
            errors,
            gate_id=gate_id,
            original_output=execution.output or "",
        )

        if result.report is None and result.success:
            logger.info(f"No open errors for {role.value}; nothing to heal")
            return result

        if result.success:
            for next_role in self.catalog.next_roles(category, role):
                await self.handoffs.create_handoff(
                    project_id,
                    from_role=role,
                    to_role=next_role,
                    phase=self.catalog.phase_for_gate(gate_id) if gate_id else None,
                    status=HandoffStatus.COMPLETE,
                    notes=(
                        f"Code generated and validated. "
                        f"{len(result.fixed_errors)} error(s) fixed automatically."
                    ),
                )
                await self.notifier.send(
                    NotificationTemplates.handoff_created(project_id, role.value, next_role.value)
                )
            return result

        preview = ", ".join(result.remaining_errors[: self.settings.ESCALATION_ERROR_PREVIEW])
        summary = f"Build errors after {result.attempt_number} attempts: {preview}"
        escalation = await self.escalations.create_escalation(
            project_id,
            from_role=role,
            summary=summary,
            gate_id=gate_id,
            severity="high",
            escalation_type="technical",
            level="L1",
            context={
                "execution_id": str(execution_id),
                "attempts": result.attempt_number,
                "remaining_errors": result.remaining_errors,
            },
        )
        await self.notifier.send(
            NotificationTemplates.escalation_created(project_id, escalation.id, role.value, summary)
        )
        return result

    # ==========================================================================
    # Helpers
    # ==========================================================================

    def _system_context(self, role: AgentRole) -> str:
        return (
            f"You are the {role.value} agent. Fix the reported errors and output "
            "complete corrected files using fenced code blocks with file paths."
        )

    def _build_prompt(
        self,
        errors: list[str],
        attempt: int,
        max_attempts: int,
        original_output: str,
    ) -> str:
        lines = [f"# Self-Healing Task (Attempt {attempt}/{max_attempts})", ""]
        if original_output:
            lines += ["## Original Output", original_output[:PROMPT_OUTPUT_PREVIEW], ""]
        lines.append(f"## Errors Found ({len(errors)} total)")
        lines += [f"{i}. {e}" for i, e in enumerate(errors[:PROMPT_ERROR_PREVIEW], start=1)]
        if len(errors) > PROMPT_ERROR_PREVIEW:
            lines.append(f"... and {len(errors) - PROMPT_ERROR_PREVIEW} more")
        lines += ["", "Regenerate every file that needs changes. Complete, working code only."]
        return "\n".join(lines)

    async def _unresolved_errors(self, project_id: UUID) -> list[str]:
        result = await self.db.execute(
            select(ErrorRecord.message)
            .where(
                ErrorRecord.project_id == project_id,
                ErrorRecord.resolved_at.is_(None),
            )
            .order_by(ErrorRecord.created_at.desc())
            .limit(self.settings.SELF_HEALING_ERROR_LIMIT)
        )
        return list(result.scalars().all())

    async def _resolve_errors(self, project_id: UUID, attempt: int) -> None:
        await self.db.execute(
            update(ErrorRecord)
            .where(
                ErrorRecord.project_id == project_id,
                ErrorRecord.resolved_at.is_(None),
            )
            .values(
                resolved_at=datetime.now(timezone.utc),
                resolution=f"Self-healed after {attempt} attempt(s)",
            )
        )
        await self.db.commit()

    async def _start_attempt(
        self,
        project_id: UUID,
        role: AgentRole,
        gate_id: Optional[str],
        attempt: int,
        prompt: str,
    ) -> AgentExecution:
        execution = AgentExecution(
            project_id=project_id,
            gate_id=gate_id,
            role=role,
            purpose=ExecutionPurpose.SELF_HEALING,
            status=ExecutionStatus.RUNNING,
            attempt_number=attempt,
            input_prompt=prompt,
            started_at=datetime.now(timezone.utc),
        )
        self.db.add(execution)
        await self.db.commit()
        return execution

    async def _finish_attempt(
        self,
        execution: AgentExecution,
        status: ExecutionStatus,
        output: Optional[str] = None,
        error: Optional[str] = None,
        files: Optional[list[str]] = None,
    ) -> None:
        execution.status = status
        execution.output = output
        execution.error_message = error
        execution.files_written = files or []
        execution.completed_at = datetime.now(timezone.utc)
        await self.db.commit()
