"""Exception hierarchy for Gatekeeper.

All exceptions inherit from GatekeeperError so callers can catch broadly
or narrowly as needed.
"""


class GatekeeperError(Exception):
    """Base exception for all Gatekeeper errors."""


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------

class ProjectNotFound(GatekeeperError):
    """Referenced project does not exist."""

    def __init__(self, project_id: object):
        self.project_id = project_id
        super().__init__(f"Project not found: {project_id}")


class GateNotFound(GatekeeperError):
    """Referenced gate does not exist for the project."""

    def __init__(self, project_id: object, gate_id: str):
        self.project_id = project_id
        self.gate_id = gate_id
        super().__init__(f"Gate {gate_id} not found for project {project_id}")


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

class TransitionDenied(GatekeeperError):
    """A gate transition precondition failed."""

    def __init__(self, reason: str, gate_id: str | None = None):
        self.reason = reason
        self.gate_id = gate_id
        super().__init__(reason)


class AmbiguousApproval(TransitionDenied):
    """The approval token is not an explicit approval."""

    def __init__(self, token: str, reason: str | None = None):
        self.token = token
        super().__init__(
            reason
            or f'"{token}" is ambiguous. Please provide explicit approval using '
            '"approved", "yes", "approve", or "accept".'
        )
