"""Closed status types for deliberations, ideas, cells and participations.

Each enum carries the table of legal edges for its entity. Engine code asks
``require_transition`` before issuing an update so an illegal edge fails loudly
instead of silently corrupting state.
"""

from enum import Enum

from .errors import IllegalTransitionError


class DeliberationPhase(str, Enum):
    """Lifecycle of a deliberation."""

    SUBMISSION = "SUBMISSION"
    VOTING = "VOTING"
    ACCUMULATING = "ACCUMULATING"  # Champion stands, challengers accepted
    COMPLETED = "COMPLETED"


class IdeaStatus(str, Enum):
    """Lifecycle of an idea across tiers and challenge rounds."""

    SUBMITTED = "SUBMITTED"
    PENDING = "PENDING"  # Challenger submitted while accumulating
    IN_VOTING = "IN_VOTING"
    ADVANCING = "ADVANCING"
    ELIMINATED = "ELIMINATED"
    POOLED = "POOLED"  # Two-strike re-entry, not wired into advancement
    DEFENDING = "DEFENDING"  # Champion waiting to re-enter a challenge round
    WINNER = "WINNER"
    BENCHED = "BENCHED"
    RETIRED = "RETIRED"


class CellStatus(str, Enum):
    """Lifecycle of a cell."""

    DELIBERATING = "DELIBERATING"
    VOTING = "VOTING"
    COMPLETED = "COMPLETED"


class ParticipationStatus(str, Enum):
    """Seat status inside a cell."""

    ACTIVE = "ACTIVE"
    VOTED = "VOTED"


class AllocationMode(str, Enum):
    """How members reach cells."""

    BATCH = "batch"  # Pre-seated when the tier starts
    FCFS = "fcfs"  # Idea-only cells, members enter on demand


class MemberRole(str, Enum):
    """Role of a user inside a deliberation."""

    CREATOR = "CREATOR"
    PARTICIPANT = "PARTICIPANT"
    OBSERVER = "OBSERVER"


OPEN_CELL_STATUSES = (CellStatus.DELIBERATING, CellStatus.VOTING)
SEATED_ROLES = (MemberRole.CREATOR, MemberRole.PARTICIPANT)


PHASE_TRANSITIONS: dict[DeliberationPhase, frozenset[DeliberationPhase]] = {
    DeliberationPhase.SUBMISSION: frozenset({
        DeliberationPhase.VOTING,
        DeliberationPhase.COMPLETED,
        DeliberationPhase.ACCUMULATING,
    }),
    DeliberationPhase.VOTING: frozenset({
        DeliberationPhase.COMPLETED,
        DeliberationPhase.ACCUMULATING,
    }),
    DeliberationPhase.ACCUMULATING: frozenset({
        DeliberationPhase.VOTING,
        DeliberationPhase.COMPLETED,
    }),
    DeliberationPhase.COMPLETED: frozenset(),
}

IDEA_TRANSITIONS: dict[IdeaStatus, frozenset[IdeaStatus]] = {
    IdeaStatus.SUBMITTED: frozenset({IdeaStatus.IN_VOTING, IdeaStatus.WINNER, IdeaStatus.ADVANCING}),
    IdeaStatus.PENDING: frozenset({IdeaStatus.IN_VOTING, IdeaStatus.BENCHED, IdeaStatus.RETIRED}),
    IdeaStatus.BENCHED: frozenset({IdeaStatus.IN_VOTING, IdeaStatus.BENCHED, IdeaStatus.RETIRED}),
    IdeaStatus.IN_VOTING: frozenset({
        IdeaStatus.ADVANCING,
        IdeaStatus.ELIMINATED,
        IdeaStatus.WINNER,
    }),
    IdeaStatus.ADVANCING: frozenset({
        IdeaStatus.IN_VOTING,
        IdeaStatus.ELIMINATED,
        IdeaStatus.WINNER,
    }),
    # Revival by final-showdown backfill, re-entry as a benched challenger
    IdeaStatus.ELIMINATED: frozenset({IdeaStatus.ADVANCING, IdeaStatus.BENCHED}),
    IdeaStatus.POOLED: frozenset({IdeaStatus.IN_VOTING, IdeaStatus.ELIMINATED}),
    IdeaStatus.WINNER: frozenset({IdeaStatus.DEFENDING}),
    IdeaStatus.DEFENDING: frozenset({IdeaStatus.ADVANCING, IdeaStatus.IN_VOTING, IdeaStatus.WINNER}),
    IdeaStatus.RETIRED: frozenset(),
}

CELL_TRANSITIONS: dict[CellStatus, frozenset[CellStatus]] = {
    CellStatus.DELIBERATING: frozenset({CellStatus.VOTING, CellStatus.COMPLETED}),
    CellStatus.VOTING: frozenset({CellStatus.COMPLETED}),
    CellStatus.COMPLETED: frozenset(),
}

_TABLES = {
    DeliberationPhase: PHASE_TRANSITIONS,
    IdeaStatus: IDEA_TRANSITIONS,
    CellStatus: CELL_TRANSITIONS,
}


def can_transition(current: Enum, target: Enum) -> bool:
    """Return True if ``current -> target`` is a legal edge for its entity."""
    table = _TABLES.get(type(current))
    if table is None or type(target) is not type(current):
        return False
    return target in table[current]


def require_transition(current: Enum | str, target: Enum) -> None:
    """Raise IllegalTransitionError unless ``current -> target`` is legal.

    ``current`` may be the raw string stored in the database.
    """
    enum_cls = type(target)
    if not isinstance(current, enum_cls):
        current = enum_cls(current)
    if not can_transition(current, target):
        raise IllegalTransitionError(enum_cls.__name__, current.value, target.value)


def require_transitions(sources: tuple[Enum, ...] | list[Enum], target: Enum) -> None:
    """Check every ``source -> target`` edge of a bulk conditional update."""
    for source in sources:
        require_transition(source, target)
