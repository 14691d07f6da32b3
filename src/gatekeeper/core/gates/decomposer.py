"""
Task Decomposer - Category workflow to ordered role tasks.

Turns a project category into a list of role tasks with dependencies,
persists them with a parent reference, and answers "what can run next?".
"""

import logging
from dataclasses import dataclass, field
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gatekeeper.core.gates.catalog import GateCatalog
from gatekeeper.core.models import AgentRole, ProjectCategory, Task, TaskStatus

logger = logging.getLogger(__name__)

R = AgentRole


@dataclass(frozen=True)
class Workflow:
    """Which optional roles a category brings in."""
    includes_design: bool
    includes_frontend: bool
    includes_backend: bool
    includes_ml: bool


WORKFLOWS: dict[ProjectCategory, Workflow] = {
    ProjectCategory.STANDARD: Workflow(True, True, True, False),
    ProjectCategory.ML_AUGMENTED: Workflow(False, False, True, True),
    ProjectCategory.HYBRID: Workflow(True, True, True, True),
    ProjectCategory.ENHANCEMENT: Workflow(False, False, False, False),
}


@dataclass
class PlannedTask:
    """A task before it is persisted."""
    role: AgentRole
    description: str
    priority: str = "critical"
    dependencies: list[AgentRole] = field(default_factory=list)


@dataclass
class Decomposition:
    """Ordered tasks plus the role groups that may run in parallel."""
    tasks: list[PlannedTask]
    parallel_groups: list[list[AgentRole]] = field(default_factory=list)

    @property
    def roles(self) -> list[AgentRole]:
        return [t.role for t in self.tasks]


@dataclass
class ProjectProgress:
    """Task completion summary."""
    total: int
    complete: int
    in_progress: int
    not_started: int

    @property
    def percent_complete(self) -> float:
        if self.total == 0:
            return 0.0
        return round(self.complete / self.total * 100, 1)


def workflow_for(category: Optional[ProjectCategory | str]) -> Workflow:
    try:
        return WORKFLOWS[ProjectCategory(category)]
    except (ValueError, KeyError):
        return WORKFLOWS[ProjectCategory.STANDARD]


def decompose(category: Optional[ProjectCategory | str]) -> Decomposition:
    """
    Build the task list for a category. Pure and deterministic.

    Args:
        category: Project category; unknown values use the standard workflow

    Returns:
        Decomposition with tasks in execution order
    """
    workflow = workflow_for(category)
    tasks: list[PlannedTask] = [
        PlannedTask(R.PRODUCT_MANAGER, "Create PRD from intake and requirements"),
        PlannedTask(R.ARCHITECT, "Create API specification, data schema and validation rules", dependencies=[R.PRODUCT_MANAGER]),
    ]

    if workflow.includes_design:
        tasks.append(PlannedTask(R.UX_UI_DESIGNER, "Create design options with design system", dependencies=[R.ARCHITECT]))

    development: list[AgentRole] = []
    if workflow.includes_frontend:
        frontend_dependency = R.UX_UI_DESIGNER if workflow.includes_design else R.ARCHITECT
        tasks.append(PlannedTask(R.FRONTEND_DEVELOPER, "Implement UI components from design system and specs", dependencies=[frontend_dependency]))
        development.append(R.FRONTEND_DEVELOPER)

    if workflow.includes_backend:
        tasks.append(PlannedTask(R.BACKEND_DEVELOPER, "Implement API endpoints and business logic from the API spec", dependencies=[R.ARCHITECT]))
        development.append(R.BACKEND_DEVELOPER)

    if workflow.includes_ml:
        tasks.append(PlannedTask(R.DATA_ENGINEER, "Build ETL pipelines and data quality checks", dependencies=[R.ARCHITECT]))
        tasks.append(PlannedTask(R.ML_ENGINEER, "Train and optimize ML models", dependencies=[R.DATA_ENGINEER]))
        tasks.append(PlannedTask(R.PROMPT_ENGINEER, "Design and test LLM prompts", dependencies=[R.ARCHITECT]))
        development.extend([R.DATA_ENGINEER, R.ML_ENGINEER, R.PROMPT_ENGINEER])

    parallel_groups = [list(development)] if len(development) > 1 else []

    tasks.append(PlannedTask(R.QA_ENGINEER, "Create E2E tests and generate coverage report", dependencies=list(development)))

    if workflow.includes_ml:
        tasks.append(PlannedTask(R.MODEL_EVALUATOR, "Evaluate model performance and recommend optimal model", dependencies=[R.ML_ENGINEER, R.PROMPT_ENGINEER]))

    tasks.append(PlannedTask(R.SECURITY_ENGINEER, "Perform OWASP security audit and fix vulnerabilities", dependencies=[R.QA_ENGINEER]))

    deployment_role = R.AIOPS_ENGINEER if workflow.includes_ml else R.DEVOPS_ENGINEER
    tasks.append(PlannedTask(deployment_role, "Deploy to staging and production with monitoring", dependencies=[R.SECURITY_ENGINEER]))

    return Decomposition(tasks=tasks, parallel_groups=parallel_groups)


class TaskDecomposer:
    """Persists decomposed tasks and picks the next executable one."""

    def __init__(self, db: AsyncSession, catalog: Optional[GateCatalog] = None):
        self.db = db
        self.catalog = catalog or GateCatalog.default()

    def decompose(self, category: Optional[ProjectCategory | str]) -> Decomposition:
        return decompose(category)

    async def create_tasks(
        self,
        project_id: UUID,
        decomposition: Decomposition,
        category: Optional[ProjectCategory | str] = None,
    ) -> list[Task]:
        """
        Persist tasks in order.

        Each task's parent is the already-created task of its first
        dependency role that exists in the decomposition.
        """
        existing = await self.db.execute(
            select(Task.sequence).where(Task.project_id == project_id).order_by(Task.sequence.desc()).limit(1)
        )
        start = (existing.scalar_one_or_none() or 0) + 1

        created: dict[AgentRole, Task] = {}
        tasks: list[Task] = []
        for offset, planned in enumerate(decomposition.tasks):
            parent = next((created[d] for d in planned.dependencies if d in created), None)
            gate_id = self.catalog.gate_for_role(category, planned.role)
            task = Task(
                project_id=project_id,
                sequence=start + offset,
                role=planned.role,
                description=planned.description,
                priority=planned.priority,
                phase=self.catalog.phase_for_gate(gate_id) if gate_id else None,
                status=TaskStatus.NOT_STARTED,
                depends_on=[d.value for d in planned.dependencies],
            )
            if parent is not None:
                task.parent_task_id = parent.id
            self.db.add(task)
            # Flush assigns the id later tasks use as their parent
            await self.db.flush()
            created[planned.role] = task
            tasks.append(task)

        await self.db.commit()
        logger.info(f"Created {len(tasks)} tasks for project {project_id}")
        return tasks

    async def list_tasks(self, project_id: UUID) -> list[Task]:
        result = await self.db.execute(
            select(Task).where(Task.project_id == project_id).order_by(Task.sequence)
        )
        return list(result.scalars().all())

    async def next_executable_task(self, project_id: UUID) -> Optional[Task]:
        """
        First NOT_STARTED task, in creation order, whose parent is complete
        or which has no parent.
        """
        tasks = await self.list_tasks(project_id)
        status_by_id = {t.id: t.status for t in tasks}
        for task in tasks:
            if task.status != TaskStatus.NOT_STARTED:
                continue
            if task.parent_task_id is None:
                return task
            if status_by_id.get(task.parent_task_id) == TaskStatus.COMPLETE:
                return task
        return None

    async def project_progress(self, project_id: UUID) -> ProjectProgress:
        tasks = await self.list_tasks(project_id)
        return ProjectProgress(
            total=len(tasks),
            complete=sum(1 for t in tasks if t.status == TaskStatus.COMPLETE),
            in_progress=sum(1 for t in tasks if t.status == TaskStatus.IN_PROGRESS),
            not_started=sum(1 for t in tasks if t.status == TaskStatus.NOT_STARTED),
        )
