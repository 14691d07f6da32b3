"""
Gatekeeper - Test Fixtures
==========================

Shared pytest fixtures for all tests.
"""

from collections.abc import AsyncGenerator
from typing import Any, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from gatekeeper.core.config import Settings
from gatekeeper.core.database import close_db, create_engine, create_session_factory, init_db
from gatekeeper.core.gates.catalog import GateCatalog
from gatekeeper.core.gates.collaborators import (
    AgentExecutor,
    AgentResponse,
    CodeExtractor,
    DocumentGenerator,
    ExtractedFile,
    FileWriter,
    GeneratedDocument,
    ValidationReport,
    Validator,
)
from gatekeeper.core.gates.notifications import Notifier
from gatekeeper.core.gates.orchestrator import GateOrchestrator
from gatekeeper.core.gates.state_machine import GateStateMachine
from gatekeeper.core.logging import configure_logging
from gatekeeper.core.models import AgentRole, GateStatus, Project, ProjectCategory, ProofType
from gatekeeper.core.schemas import ProjectCreate

APPROVER = "alice@example.com"


# ==========================================================================
# Fake Collaborators
# ==========================================================================

class FakeExecutor(AgentExecutor):
    """Returns scripted responses per role, then a default success."""

    def __init__(self):
        self.scripts: dict[AgentRole, list[Any]] = {}
        self.calls: list[tuple[AgentRole, str]] = []

    def script(self, role: AgentRole, *responses: Any) -> None:
        self.scripts.setdefault(role, []).extend(responses)

    def calls_for(self, role: AgentRole) -> list[str]:
        return [prompt for r, prompt in self.calls if r == role]

    async def execute(self, role: AgentRole, system_context: str, prompt: str) -> AgentResponse:
        self.calls.append((role, prompt))
        queued = self.scripts.get(role)
        if queued:
            response = queued.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return AgentResponse(content=f"{role.value} output\n```python\nprint('ok')\n```")


class FakeExtractor(CodeExtractor):
    """One file per output containing a fenced block."""

    def extract_files(self, output: str) -> list[ExtractedFile]:
        if "```" not in output:
            return []
        return [ExtractedFile(path="src/main.py", content=output, language="python")]


class FakeWriter(FileWriter):
    def __init__(self):
        self.writes: list[tuple[str, str]] = []

    async def write_file(self, project_id: str, path: str, content: str) -> None:
        self.writes.append((project_id, path))


class FakeValidator(Validator):
    """Pops scripted reports; passes once the script runs out."""

    def __init__(self):
        self.reports: list[ValidationReport] = []
        self.runs = 0

    def script(self, *reports: ValidationReport) -> None:
        self.reports.extend(reports)

    async def run_full_validation(self, project_id: str) -> ValidationReport:
        self.runs += 1
        if self.reports:
            return self.reports.pop(0)
        return ValidationReport(overall_success=True)


class FakeDocumentGenerator(DocumentGenerator):
    def __init__(self):
        self.generated: list[tuple[AgentRole, Optional[str]]] = []

    async def generate_from_output(self, project_id, role, output, gate_id=None) -> list[GeneratedDocument]:
        self.generated.append((role, gate_id))
        return [GeneratedDocument(title=f"{role.value} notes", document_type="notes")]


# ==========================================================================
# Settings and Logging
# ==========================================================================

@pytest.fixture(scope="session", autouse=True)
def _logging() -> None:
    configure_logging(Settings(ENVIRONMENT="test", LOG_LEVEL="DEBUG"))


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        ENVIRONMENT="test",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path}/gatekeeper-test.db",
    )


# ==========================================================================
# Database Fixtures
# ==========================================================================

@pytest_asyncio.fixture
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite per test so concurrent sessions see each other's commits."""
    test_engine = create_engine(settings.DATABASE_URL)
    await init_db(test_engine)
    yield test_engine
    await close_db(test_engine)


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ==========================================================================
# Engine Fixtures
# ==========================================================================

@pytest.fixture
def catalog() -> GateCatalog:
    return GateCatalog.default()


@pytest.fixture
def notifications() -> list[dict]:
    return []


@pytest.fixture
def notifier(notifications: list[dict]) -> Notifier:
    return Notifier(notifications.append)


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def writer() -> FakeWriter:
    return FakeWriter()


@pytest.fixture
def validator() -> FakeValidator:
    return FakeValidator()


@pytest.fixture
def documents() -> FakeDocumentGenerator:
    return FakeDocumentGenerator()


@pytest.fixture
def orchestrator(
    session_factory,
    executor,
    catalog,
    notifier,
    extractor,
    writer,
    validator,
    documents,
    settings,
) -> GateOrchestrator:
    return GateOrchestrator(
        session_factory,
        executor,
        catalog=catalog,
        notifier=notifier,
        code_extractor=extractor,
        file_writer=writer,
        validator=validator,
        document_generator=documents,
        settings=settings,
    )


@pytest.fixture
def machine(db_session, catalog, notifier, settings) -> GateStateMachine:
    return GateStateMachine(db_session, catalog, notifier, settings)


# ==========================================================================
# Project Fixtures
# ==========================================================================

@pytest_asyncio.fixture
async def project(orchestrator: GateOrchestrator) -> Project:
    """Standard project at G1 with decomposed tasks."""
    return await orchestrator.create_project(
        ProjectCreate(name="Storefront", approver=APPROVER, category=ProjectCategory.STANDARD)
    )


@pytest_asyncio.fixture
async def ml_project(orchestrator: GateOrchestrator) -> Project:
    return await orchestrator.create_project(
        ProjectCreate(name="Forecaster", approver=APPROVER, category=ProjectCategory.ML_AUGMENTED)
    )


@pytest.fixture
def approve_through(session_factory, catalog, settings):
    """
    Approve every gate before ``target`` by completing its deliverables
    and recording passing proofs, leaving ``target`` PENDING.
    """

    async def _approve_through(project_id, target: str) -> None:
        async with session_factory() as db:
            machine = GateStateMachine(db, catalog, Notifier(), settings)
            project = await machine.get_project(project_id)
            for gate_id in catalog.sequence[: catalog.index(target)]:
                gate = await machine.get_gate(project_id, gate_id)
                if gate.status == GateStatus.APPROVED:
                    continue
                definition = catalog.get(project.category, gate_id)
                for role in definition.roles:
                    await machine.tracker.mark_deliverable_complete(project_id, role, gate_id)
                for proof_type in definition.required_proofs:
                    await machine.tracker.record_proof_artifact(
                        project_id, gate_id, proof_type, True, summary="passed", role=definition.roles[0]
                    )
                if definition.requires_coverage:
                    await machine.tracker.record_proof_artifact(
                        project_id, gate_id, ProofType.COVERAGE_REPORT, True, summary="Coverage: 91%"
                    )
                await machine.transition_to_review(project_id, gate_id)
                await machine.approve(project_id, gate_id, APPROVER, "approved")

    return _approve_through
