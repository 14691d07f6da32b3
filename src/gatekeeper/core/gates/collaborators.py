"""
External collaborators consumed by the gate engine.

The engine never talks to a model, a filesystem or a build tool directly.
Callers supply implementations of these interfaces; tests supply fakes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from gatekeeper.core.models import AgentRole


@dataclass
class AgentResponse:
    """Result of a single agent invocation."""
    content: str = ""
    success: bool = True
    error: Optional[str] = None
    retryable: bool = True
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class ExtractedFile:
    """A file parsed out of agent output."""
    path: str
    content: str
    language: Optional[str] = None


@dataclass
class ValidationReport:
    """Build, lint and test outcome for a project workspace."""
    overall_success: bool
    build_errors: list[str] = field(default_factory=list)
    lint_errors: list[str] = field(default_factory=list)
    test_errors: list[str] = field(default_factory=list)
    build_passed: Optional[bool] = None
    lint_passed: Optional[bool] = None

    @property
    def all_errors(self) -> list[str]:
        return [*self.build_errors, *self.lint_errors, *self.test_errors]

    @property
    def build_ok(self) -> bool:
        if self.build_passed is not None:
            return self.build_passed
        return not self.build_errors

    @property
    def lint_ok(self) -> bool:
        if self.lint_passed is not None:
            return self.lint_passed
        return not self.lint_errors


@dataclass
class GeneratedDocument:
    """Document persisted from agent output."""
    title: str
    document_type: str
    path: Optional[str] = None


class AgentExecutor(ABC):
    """Runs one role against a prompt."""

    @abstractmethod
    async def execute(self, role: AgentRole, system_context: str, prompt: str) -> AgentResponse:
        """Run the role and return its response. May raise on transport errors."""


class CodeExtractor(ABC):
    """Parses source files out of agent output."""

    @abstractmethod
    def extract_files(self, output: str) -> list[ExtractedFile]:
        ...


class FileWriter(ABC):
    """Writes extracted files into the project workspace."""

    @abstractmethod
    async def write_file(self, project_id: str, path: str, content: str) -> None:
        ...


class Validator(ABC):
    """Runs the project's build, lint and test checks."""

    @abstractmethod
    async def run_full_validation(self, project_id: str) -> ValidationReport:
        ...


class DocumentGenerator(ABC):
    """Turns agent output into stored documents."""

    @abstractmethod
    async def generate_from_output(
        self,
        project_id: str,
        role: AgentRole,
        output: str,
        gate_id: Optional[str] = None,
    ) -> list[GeneratedDocument]:
        ...
