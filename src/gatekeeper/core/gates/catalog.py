"""
Gate Catalog - Static gate definitions per project category.

Maps each gate to the roles that execute at it, the deliverables they
produce and the evidence required before a human may approve it. The
catalog is built once and injected; it never changes at runtime.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Optional

from gatekeeper.core.models import AgentRole, ProjectCategory, ProofType

R = AgentRole
P = ProofType


@dataclass(frozen=True)
class DeliverableSpec:
    """Deliverable template created alongside a gate."""
    name: str
    owner: AgentRole
    path: Optional[str] = None


@dataclass(frozen=True)
class GateDefinition:
    """Everything the engine knows about a gate for one category."""
    gate_id: str
    roles: tuple[AgentRole, ...]
    deliverables: tuple[DeliverableSpec, ...]
    requires_proof: bool
    description: str
    passing_criteria: str
    required_proofs: tuple[ProofType, ...] = ()   # Any role may supply these
    role_proofs: tuple[ProofType, ...] = ()       # Each code role must supply these
    requires_coverage: bool = False
    prerequisite_gate: Optional[str] = None       # Must be APPROVED before roles run
    fallback_document: Optional[str] = None       # Secondary completeness signal

    @property
    def is_parallel(self) -> bool:
        return len(self.roles) > 1


# ==========================================================================
# Gate sequence
# ==========================================================================

GATE_SEQUENCE: tuple[str, ...] = ("G1", "G2", "G3", "G4", "G5", "G6", "G7", "G8", "G9")

COMPLETE_PHASE = "complete"

GATE_PHASES: Mapping[str, str] = MappingProxyType({
    "G1": "intake",
    "G2": "planning",
    "G3": "architecture",
    "G4": "design",
    "G5": "development",
    "G6": "testing",
    "G7": "security_review",
    "G8": "staging",
    "G9": "production",
})

# Roles whose output is source code. Only these owe build/lint proofs.
CODE_ROLES: frozenset[AgentRole] = frozenset({
    R.FRONTEND_DEVELOPER,
    R.BACKEND_DEVELOPER,
    R.DATA_ENGINEER,
    R.ML_ENGINEER,
    R.PROMPT_ENGINEER,
})


# ==========================================================================
# Standard projects
# ==========================================================================

_G1 = GateDefinition(
    gate_id="G1",
    roles=(R.PRODUCT_MANAGER_ONBOARDING,),
    deliverables=(
        DeliverableSpec("Project Intake", R.PRODUCT_MANAGER_ONBOARDING, "docs/INTAKE.md"),
    ),
    requires_proof=False,
    description="Project scope approval - intake questionnaire complete",
    passing_criteria="User has approved project scope, vision, goals, and constraints",
    fallback_document="intake",
)

_STANDARD = (
    _G1,
    GateDefinition(
        gate_id="G2",
        roles=(R.PRODUCT_MANAGER,),
        deliverables=(
            DeliverableSpec("Product Requirements Document", R.PRODUCT_MANAGER, "docs/PRD.md"),
            DeliverableSpec("User Stories", R.PRODUCT_MANAGER, "docs/USER_STORIES.md"),
        ),
        requires_proof=False,
        description="PRD creation in progress",
        passing_criteria="Product Manager has created complete PRD with user stories",
        fallback_document="requirements",
    ),
    GateDefinition(
        gate_id="G3",
        roles=(R.ARCHITECT,),
        deliverables=(
            DeliverableSpec("OpenAPI Specification", R.ARCHITECT, "specs/openapi.yaml"),
            DeliverableSpec("Database Schema", R.ARCHITECT, "specs/schema.sql"),
            DeliverableSpec("Architecture Document", R.ARCHITECT, "docs/ARCHITECTURE.md"),
            DeliverableSpec("Tech Stack Document", R.ARCHITECT, "docs/TECH_STACK.md"),
        ),
        requires_proof=True,
        required_proofs=(P.SPEC_VALIDATION,),
        description="Architecture and specifications in progress",
        passing_criteria="Architect has created API spec, schema and architecture documents",
        fallback_document="architecture",
    ),
    GateDefinition(
        gate_id="G4",
        roles=(R.UX_UI_DESIGNER,),
        deliverables=(
            DeliverableSpec("Design System", R.UX_UI_DESIGNER, "design/system/"),
            DeliverableSpec("UI Mockups", R.UX_UI_DESIGNER, "design/mockups/"),
            DeliverableSpec("Component Library", R.UX_UI_DESIGNER, "design/components/"),
        ),
        requires_proof=False,
        description="Design in progress",
        passing_criteria="UX/UI Designer has created design options, user has selected one",
        fallback_document="design",
    ),
    GateDefinition(
        gate_id="G5",
        roles=(R.FRONTEND_DEVELOPER, R.BACKEND_DEVELOPER),
        deliverables=(
            DeliverableSpec("Frontend Implementation", R.FRONTEND_DEVELOPER, "src/frontend/"),
            DeliverableSpec("Backend Implementation", R.BACKEND_DEVELOPER, "src/backend/"),
            DeliverableSpec("API Implementation", R.BACKEND_DEVELOPER, "src/api/"),
        ),
        requires_proof=True,
        required_proofs=(P.BUILD_OUTPUT, P.LINT_OUTPUT, P.PREVIEW_STARTUP),
        role_proofs=(P.BUILD_OUTPUT, P.LINT_OUTPUT),
        description="Development in progress",
        passing_criteria="Developers have implemented features, all builds passing",
        prerequisite_gate="G4",
        fallback_document="code",
    ),
    GateDefinition(
        gate_id="G6",
        roles=(R.QA_ENGINEER,),
        deliverables=(
            DeliverableSpec("Test Plan", R.QA_ENGINEER, "tests/TEST_PLAN.md"),
            DeliverableSpec("Test Results", R.QA_ENGINEER, "tests/results/"),
            DeliverableSpec("Coverage Report", R.QA_ENGINEER, "tests/coverage/"),
        ),
        requires_proof=True,
        required_proofs=(P.UNIT_TEST_OUTPUT, P.E2E_TEST_OUTPUT, P.INTEGRATION_TEST_OUTPUT),
        requires_coverage=True,
        description="Testing in progress",
        passing_criteria="QA Engineer has created and executed test plan, >80% coverage",
        fallback_document="test_plan",
    ),
    GateDefinition(
        gate_id="G7",
        roles=(R.SECURITY_ENGINEER,),
        deliverables=(
            DeliverableSpec("Security Audit Report", R.SECURITY_ENGINEER, "docs/SECURITY_AUDIT.md"),
            DeliverableSpec("Vulnerability Scan", R.SECURITY_ENGINEER, "security/scan-results/"),
        ),
        requires_proof=True,
        required_proofs=(P.SECURITY_SCAN,),
        description="Security audit in progress",
        passing_criteria="Security Engineer has completed OWASP audit, no critical issues",
        fallback_document="security_audit",
    ),
    GateDefinition(
        gate_id="G8",
        roles=(R.DEVOPS_ENGINEER,),
        deliverables=(
            DeliverableSpec("Staging Deployment", R.DEVOPS_ENGINEER, "deploy/staging/"),
            DeliverableSpec("CI/CD Pipeline", R.DEVOPS_ENGINEER, ".github/workflows/"),
            DeliverableSpec("Infrastructure Config", R.DEVOPS_ENGINEER, "infrastructure/"),
        ),
        requires_proof=True,
        required_proofs=(P.DEPLOYMENT_LOG, P.SMOKE_TEST),
        description="Staging deployment in progress",
        passing_criteria="DevOps has deployed to staging, smoke tests passing",
        fallback_document="deployment_guide",
    ),
    GateDefinition(
        gate_id="G9",
        roles=(R.DEVOPS_ENGINEER,),
        deliverables=(
            DeliverableSpec("Production Deployment", R.DEVOPS_ENGINEER, "deploy/production/"),
            DeliverableSpec("Monitoring Setup", R.DEVOPS_ENGINEER, "monitoring/"),
            DeliverableSpec("Runbook", R.DEVOPS_ENGINEER, "docs/RUNBOOK.md"),
        ),
        requires_proof=True,
        required_proofs=(P.DEPLOYMENT_LOG, P.SMOKE_TEST, P.MANUAL_VERIFICATION),
        description="Production deployment in progress",
        passing_criteria="DevOps has deployed to production, health checks passing",
        fallback_document="deployment_guide",
    ),
)


# ==========================================================================
# ML-augmented projects
# ==========================================================================

_ML_AUGMENTED = (
    _G1,
    GateDefinition(
        gate_id="G2",
        roles=(R.PRODUCT_MANAGER,),
        deliverables=(
            DeliverableSpec("Product Requirements Document", R.PRODUCT_MANAGER, "docs/PRD.md"),
            DeliverableSpec("User Stories", R.PRODUCT_MANAGER, "docs/USER_STORIES.md"),
            DeliverableSpec("ML Requirements", R.PRODUCT_MANAGER, "docs/ML_REQUIREMENTS.md"),
        ),
        requires_proof=False,
        description="PRD creation in progress",
        passing_criteria="Product Manager has created PRD with user stories and ML requirements",
        fallback_document="requirements",
    ),
    GateDefinition(
        gate_id="G3",
        roles=(R.ARCHITECT,),
        deliverables=(
            DeliverableSpec("OpenAPI Specification", R.ARCHITECT, "specs/openapi.yaml"),
            DeliverableSpec("Database Schema", R.ARCHITECT, "specs/schema.sql"),
            DeliverableSpec("Architecture Document", R.ARCHITECT, "docs/ARCHITECTURE.md"),
            DeliverableSpec("ML Architecture", R.ARCHITECT, "docs/ML_ARCHITECTURE.md"),
        ),
        requires_proof=True,
        required_proofs=(P.SPEC_VALIDATION,),
        description="Architecture and specifications in progress",
        passing_criteria="Architect has created specs including ML architecture",
        fallback_document="architecture",
    ),
    GateDefinition(
        gate_id="G4",
        roles=(R.UX_UI_DESIGNER,),
        deliverables=(
            DeliverableSpec("Design System", R.UX_UI_DESIGNER, "design/system/"),
            DeliverableSpec("UI Mockups", R.UX_UI_DESIGNER, "design/mockups/"),
            DeliverableSpec("ML Dashboard Design", R.UX_UI_DESIGNER, "design/ml-dashboard/"),
        ),
        requires_proof=False,
        description="Design in progress",
        passing_criteria="UX/UI Designer has created designs including ML interfaces",
        fallback_document="design",
    ),
    GateDefinition(
        gate_id="G5",
        roles=(
            R.FRONTEND_DEVELOPER,
            R.BACKEND_DEVELOPER,
            R.DATA_ENGINEER,
            R.ML_ENGINEER,
            R.PROMPT_ENGINEER,
        ),
        deliverables=(
            DeliverableSpec("Frontend Implementation", R.FRONTEND_DEVELOPER, "src/frontend/"),
            DeliverableSpec("Backend Implementation", R.BACKEND_DEVELOPER, "src/backend/"),
            DeliverableSpec("Data Pipelines", R.DATA_ENGINEER, "data/pipelines/"),
            DeliverableSpec("ML Models", R.ML_ENGINEER, "models/"),
            DeliverableSpec("Training Pipeline", R.ML_ENGINEER, "ml/training/"),
            DeliverableSpec("Prompt Library", R.PROMPT_ENGINEER, "prompts/"),
        ),
        requires_proof=True,
        required_proofs=(P.BUILD_OUTPUT, P.LINT_OUTPUT, P.PREVIEW_STARTUP),
        role_proofs=(P.BUILD_OUTPUT, P.LINT_OUTPUT),
        description="Development in progress (parallel: Frontend, Backend, Data, ML, Prompts)",
        passing_criteria="All development teams have completed implementation",
        prerequisite_gate="G4",
        fallback_document="code",
    ),
    GateDefinition(
        gate_id="G6",
        roles=(R.QA_ENGINEER, R.MODEL_EVALUATOR),
        deliverables=(
            DeliverableSpec("Test Plan", R.QA_ENGINEER, "tests/TEST_PLAN.md"),
            DeliverableSpec("Test Results", R.QA_ENGINEER, "tests/results/"),
            DeliverableSpec("Model Evaluation Report", R.MODEL_EVALUATOR, "ml/evaluation/"),
            DeliverableSpec("Performance Benchmarks", R.MODEL_EVALUATOR, "ml/benchmarks/"),
        ),
        requires_proof=True,
        required_proofs=(P.UNIT_TEST_OUTPUT, P.E2E_TEST_OUTPUT, P.INTEGRATION_TEST_OUTPUT),
        requires_coverage=True,
        description="Testing and model evaluation in progress",
        passing_criteria="QA and Model Evaluator have completed testing and evaluation",
        fallback_document="test_plan",
    ),
    GateDefinition(
        gate_id="G7",
        roles=(R.SECURITY_ENGINEER,),
        deliverables=(
            DeliverableSpec("Security Audit Report", R.SECURITY_ENGINEER, "docs/SECURITY_AUDIT.md"),
            DeliverableSpec("ML Security Review", R.SECURITY_ENGINEER, "docs/ML_SECURITY.md"),
            DeliverableSpec("Data Privacy Assessment", R.SECURITY_ENGINEER, "docs/PRIVACY.md"),
        ),
        requires_proof=True,
        required_proofs=(P.SECURITY_SCAN,),
        description="Security audit in progress",
        passing_criteria="Security Engineer has completed audit including ML-specific concerns",
        fallback_document="security_audit",
    ),
    GateDefinition(
        gate_id="G8",
        roles=(R.AIOPS_ENGINEER,),
        deliverables=(
            DeliverableSpec("Staging Deployment", R.AIOPS_ENGINEER, "deploy/staging/"),
            DeliverableSpec("MLOps Pipeline", R.AIOPS_ENGINEER, "mlops/"),
            DeliverableSpec("Model Registry", R.AIOPS_ENGINEER, "models/registry/"),
        ),
        requires_proof=True,
        required_proofs=(P.DEPLOYMENT_LOG, P.SMOKE_TEST),
        description="Staging deployment with MLOps in progress",
        passing_criteria="AIOps has deployed models to staging with monitoring",
        fallback_document="deployment_guide",
    ),
    GateDefinition(
        gate_id="G9",
        roles=(R.AIOPS_ENGINEER,),
        deliverables=(
            DeliverableSpec("Production Deployment", R.AIOPS_ENGINEER, "deploy/production/"),
            DeliverableSpec("Model Monitoring", R.AIOPS_ENGINEER, "monitoring/ml/"),
            DeliverableSpec("Runbook", R.AIOPS_ENGINEER, "docs/RUNBOOK.md"),
        ),
        requires_proof=True,
        required_proofs=(P.DEPLOYMENT_LOG, P.SMOKE_TEST, P.MANUAL_VERIFICATION),
        description="Production deployment with full MLOps pipeline in progress",
        passing_criteria="AIOps has deployed models to production with drift monitoring",
        fallback_document="deployment_guide",
    ),
)


# ==========================================================================
# Role task descriptions and handoff successors
# ==========================================================================

_TASK_DESCRIPTIONS: dict[tuple[AgentRole, str], str] = {
    (R.PRODUCT_MANAGER_ONBOARDING, "G1"): "Conduct project intake interview and gather requirements",
    (R.PRODUCT_MANAGER, "G2"): "Create comprehensive Product Requirements Document with user stories",
    (R.ARCHITECT, "G3"): "Design system architecture and produce API and schema specifications",
    (R.UX_UI_DESIGNER, "G4"): "Create viewable design options and a design system document",
    (R.FRONTEND_DEVELOPER, "G5"): "Implement frontend from specs and design system",
    (R.BACKEND_DEVELOPER, "G5"): "Implement backend API from the API and schema specifications",
    (R.DATA_ENGINEER, "G5"): "Build data pipelines and feature store for ML workflow",
    (R.ML_ENGINEER, "G5"): "Train and optimize ML models according to specifications",
    (R.PROMPT_ENGINEER, "G5"): "Design and test prompts for LLM integrations",
    (R.QA_ENGINEER, "G6"): "Create test plan and execute tests with >80% coverage",
    (R.MODEL_EVALUATOR, "G6"): "Evaluate model performance and recommend best model",
    (R.SECURITY_ENGINEER, "G7"): "Perform OWASP security audit and vulnerability scan",
    (R.DEVOPS_ENGINEER, "G8"): "Deploy to staging environment with CI/CD pipeline",
    (R.DEVOPS_ENGINEER, "G9"): "Deploy to production with monitoring and alerting",
    (R.AIOPS_ENGINEER, "G8"): "Deploy ML models to staging with MLOps monitoring",
    (R.AIOPS_ENGINEER, "G9"): "Deploy ML models to production with full MLOps pipeline",
}

_STANDARD_SUCCESSORS: dict[AgentRole, tuple[AgentRole, ...]] = {
    R.PRODUCT_MANAGER_ONBOARDING: (R.PRODUCT_MANAGER,),
    R.PRODUCT_MANAGER: (R.ARCHITECT,),
    R.ARCHITECT: (R.UX_UI_DESIGNER,),
    R.UX_UI_DESIGNER: (R.FRONTEND_DEVELOPER, R.BACKEND_DEVELOPER),
    R.FRONTEND_DEVELOPER: (R.QA_ENGINEER,),
    R.BACKEND_DEVELOPER: (R.QA_ENGINEER,),
    R.QA_ENGINEER: (R.SECURITY_ENGINEER,),
    R.SECURITY_ENGINEER: (R.DEVOPS_ENGINEER,),
    R.DEVOPS_ENGINEER: (),
}

_ML_SUCCESSORS: dict[AgentRole, tuple[AgentRole, ...]] = {
    R.PRODUCT_MANAGER_ONBOARDING: (R.PRODUCT_MANAGER,),
    R.PRODUCT_MANAGER: (R.ARCHITECT,),
    R.ARCHITECT: (R.UX_UI_DESIGNER,),
    R.UX_UI_DESIGNER: (
        R.FRONTEND_DEVELOPER,
        R.BACKEND_DEVELOPER,
        R.DATA_ENGINEER,
        R.ML_ENGINEER,
        R.PROMPT_ENGINEER,
    ),
    R.FRONTEND_DEVELOPER: (R.QA_ENGINEER, R.MODEL_EVALUATOR),
    R.BACKEND_DEVELOPER: (R.QA_ENGINEER, R.MODEL_EVALUATOR),
    R.DATA_ENGINEER: (R.QA_ENGINEER, R.MODEL_EVALUATOR),
    R.ML_ENGINEER: (R.QA_ENGINEER, R.MODEL_EVALUATOR),
    R.PROMPT_ENGINEER: (R.QA_ENGINEER, R.MODEL_EVALUATOR),
    R.QA_ENGINEER: (R.SECURITY_ENGINEER,),
    R.MODEL_EVALUATOR: (R.SECURITY_ENGINEER,),
    R.SECURITY_ENGINEER: (R.AIOPS_ENGINEER,),
    R.AIOPS_ENGINEER: (),
}

# Categories that share rows with another category
_CATEGORY_ALIASES: dict[ProjectCategory, ProjectCategory] = {
    ProjectCategory.HYBRID: ProjectCategory.ML_AUGMENTED,
    ProjectCategory.ENHANCEMENT: ProjectCategory.STANDARD,
}


class GateCatalog:
    """
    Immutable lookup keyed by (category, gate id).

    Unknown categories and missing rows fall back to the standard rows.
    """

    def __init__(
        self,
        definitions: Mapping[ProjectCategory, tuple[GateDefinition, ...]],
        successors: Mapping[ProjectCategory, Mapping[AgentRole, tuple[AgentRole, ...]]],
        task_descriptions: Mapping[tuple[AgentRole, str], str],
        sequence: tuple[str, ...] = GATE_SEQUENCE,
    ):
        self._sequence = tuple(sequence)
        self._rows = MappingProxyType({
            category: MappingProxyType({d.gate_id: d for d in rows})
            for category, rows in definitions.items()
        })
        self._successors = MappingProxyType({
            category: MappingProxyType(dict(mapping))
            for category, mapping in successors.items()
        })
        self._task_descriptions = MappingProxyType(dict(task_descriptions))

    @classmethod
    def default(cls) -> "GateCatalog":
        """Catalog with the built-in standard and ML-augmented rows."""
        return cls(
            definitions={
                ProjectCategory.STANDARD: _STANDARD,
                ProjectCategory.ML_AUGMENTED: _ML_AUGMENTED,
            },
            successors={
                ProjectCategory.STANDARD: _STANDARD_SUCCESSORS,
                ProjectCategory.ML_AUGMENTED: _ML_SUCCESSORS,
            },
            task_descriptions=_TASK_DESCRIPTIONS,
        )

    # ==========================================================================
    # Sequence
    # ==========================================================================

    @property
    def sequence(self) -> tuple[str, ...]:
        return self._sequence

    @property
    def first_gate_id(self) -> str:
        return self._sequence[0]

    @property
    def final_gate_id(self) -> str:
        return self._sequence[-1]

    def index(self, gate_id: str) -> int:
        """Position of a gate in the sequence. Raises KeyError for unknown ids."""
        try:
            return self._sequence.index(gate_id)
        except ValueError:
            raise KeyError(gate_id) from None

    def is_known(self, gate_id: str) -> bool:
        return gate_id in self._sequence

    def next_gate_id(self, gate_id: str) -> Optional[str]:
        """Successor gate, or None after the final gate."""
        position = self.index(gate_id)
        if position + 1 >= len(self._sequence):
            return None
        return self._sequence[position + 1]

    def previous_gate_id(self, gate_id: str) -> Optional[str]:
        position = self.index(gate_id)
        if position == 0:
            return None
        return self._sequence[position - 1]

    def phase_for_gate(self, gate_id: Optional[str]) -> str:
        if gate_id is None:
            return COMPLETE_PHASE
        return GATE_PHASES.get(gate_id, gate_id.lower())

    # ==========================================================================
    # Lookups
    # ==========================================================================

    def _resolve(self, category: Optional[ProjectCategory | str]) -> ProjectCategory:
        try:
            resolved = ProjectCategory(category) if category is not None else ProjectCategory.STANDARD
        except ValueError:
            return ProjectCategory.STANDARD
        resolved = _CATEGORY_ALIASES.get(resolved, resolved)
        return resolved if resolved in self._rows else ProjectCategory.STANDARD

    def get(self, category: Optional[ProjectCategory | str], gate_id: str) -> GateDefinition:
        """
        Gate definition for a category.

        Raises:
            KeyError: If the gate id is not part of the sequence
        """
        rows = self._rows[self._resolve(category)]
        definition = rows.get(gate_id) or self._rows[ProjectCategory.STANDARD].get(gate_id)
        if definition is None:
            raise KeyError(gate_id)
        return definition

    def roles_for(self, category, gate_id: str) -> tuple[AgentRole, ...]:
        return self.get(category, gate_id).roles

    def deliverables_for(self, category, gate_id: str) -> tuple[DeliverableSpec, ...]:
        return self.get(category, gate_id).deliverables

    def required_proofs(self, category, gate_id: str) -> tuple[ProofType, ...]:
        return self.get(category, gate_id).required_proofs

    def is_parallel(self, category, gate_id: str) -> bool:
        return self.get(category, gate_id).is_parallel

    def gate_for_role(self, category, role: AgentRole) -> Optional[str]:
        """First gate in the sequence at which the role executes."""
        for gate_id in self._sequence:
            if role in self.get(category, gate_id).roles:
                return gate_id
        return None

    def task_description(self, role: AgentRole, gate_id: str) -> str:
        return self._task_descriptions.get(
            (role, gate_id),
            f"Complete {role.value} tasks for {gate_id}",
        )

    def next_roles(self, category, role: AgentRole) -> tuple[AgentRole, ...]:
        """Roles that receive a handoff once ``role`` completes."""
        mapping = self._successors.get(self._resolve(category), {})
        if role in mapping:
            return mapping[role]
        return self._successors[ProjectCategory.STANDARD].get(role, ())
