"""Error kinds and result codes shared by the dispatch and scaling engines.

Dispatch-path operations report failures as an ``ErrorCode`` inside a result
model. The exception classes are raised by lookups and by the autoscaler, and
are translated to codes at the engine boundary.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Broad category of a failure."""

    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    CONFLICT = "conflict"
    EXHAUSTED = "exhausted"
    CAPACITY_EXCEEDED = "capacity_exceeded"


class ErrorCode(str, Enum):
    """Result code returned by dispatch-path operations."""

    AGENT_NOT_FOUND = "agent_not_found"
    AGENT_NOT_IDLE = "agent_not_idle"
    HAS_RUNNING_DISPATCH = "has_running_dispatch"
    NO_TASKS_AVAILABLE = "no_tasks_available"
    CONFLICT = "conflict"
    UNKNOWN_ROLE = "unknown_role"
    CAPACITY_EXCEEDED = "capacity_exceeded"

    @property
    def kind(self) -> ErrorKind:
        return _CODE_KINDS[self]


_CODE_KINDS = {
    ErrorCode.AGENT_NOT_FOUND: ErrorKind.NOT_FOUND,
    ErrorCode.UNKNOWN_ROLE: ErrorKind.NOT_FOUND,
    ErrorCode.AGENT_NOT_IDLE: ErrorKind.INVALID_STATE,
    ErrorCode.HAS_RUNNING_DISPATCH: ErrorKind.CONFLICT,
    ErrorCode.CONFLICT: ErrorKind.CONFLICT,
    ErrorCode.NO_TASKS_AVAILABLE: ErrorKind.EXHAUSTED,
    ErrorCode.CAPACITY_EXCEEDED: ErrorKind.CAPACITY_EXCEEDED,
}


class ConvoyError(Exception):
    """Base class for Convoy errors."""

    code: ErrorCode | None = None


class NotFoundError(ConvoyError):
    """Raised when a record is not found."""

    pass


class AgentNotFoundError(NotFoundError):
    """Raised when no agent matches a name."""

    code = ErrorCode.AGENT_NOT_FOUND

    def __init__(self, agent_name: str):
        super().__init__(f"Agent '{agent_name}' not found")
        self.agent_name = agent_name


class UnknownRoleError(NotFoundError):
    """Raised when a role has no spawn template."""

    code = ErrorCode.UNKNOWN_ROLE

    def __init__(self, role: str):
        super().__init__(f"Unknown role: {role}")
        self.role = role


class InvalidStateError(ConvoyError):
    """Raised when a record is in the wrong state for an operation."""

    code = ErrorCode.AGENT_NOT_IDLE


class ConflictError(ConvoyError):
    """Raised when a concurrent writer or a running dispatch blocks an operation."""

    code = ErrorCode.CONFLICT


class CapacityExceededError(ConvoyError):
    """Raised when a role is already at its spawn cap."""

    code = ErrorCode.CAPACITY_EXCEEDED


class LeaseHeldError(ConvoyError):
    """Raised when another instance holds a run lease."""

    def __init__(self, name: str, holder: str | None, expires_at: int):
        super().__init__(f"Run lease '{name}' is held by {holder or 'another instance'}")
        self.name = name
        self.holder = holder
        self.expires_at = expires_at
