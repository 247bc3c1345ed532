"""Typed failures raised by the engine."""

from enum import Enum


class ReasonCode(str, Enum):
    """Machine-readable reasons attached to precondition failures."""

    NOT_FOUND = "NOT_FOUND"
    WRONG_PHASE = "WRONG_PHASE"
    NO_IDEAS = "NO_IDEAS"
    INSUFFICIENT_PARTICIPANTS = "INSUFFICIENT_PARTICIPANTS"
    NOT_A_PARTICIPANT = "NOT_A_PARTICIPANT"
    CELL_NOT_VOTING = "CELL_NOT_VOTING"
    INVALID_BALLOT = "INVALID_BALLOT"
    ALREADY_VOTED_THIS_TIER = "ALREADY_VOTED_THIS_TIER"
    NO_IDEAS_IN_TIER = "NO_IDEAS_IN_TIER"
    SUBMISSIONS_CLOSED = "SUBMISSIONS_CLOSED"


class TierflowError(Exception):
    """Base class for engine errors."""


class PreconditionError(TierflowError, ValueError):
    """An operation was asked for in a state that does not allow it.

    The deliberation is left unchanged when this is raised.
    """

    def __init__(self, reason: ReasonCode, message: str):
        super().__init__(message)
        self.reason = reason
        self.message = message

    def to_dict(self) -> dict[str, str]:
        """Convert to the shape an API layer returns."""
        return {"reason": self.reason.value, "message": self.message}


class IllegalTransitionError(TierflowError):
    """A status change outside the entity's transition table."""

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(f"Illegal {entity} transition {current} -> {target}")
        self.entity = entity
        self.current = current
        self.target = target
