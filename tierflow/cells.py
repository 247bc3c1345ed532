"""Cell construction shared by tier-1 start, next tiers and challenge rounds.

Covers planning idea groups against member-driven cell counts, seating
members away from their own ideas, applying discussion/voting timers, and
the small queries the coordinators share.
"""

import logging
import math
import random
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .claims import claim_rows
from .config import MAX_SHOWDOWN_IDEAS, MIN_CELL_SIZE
from .database import utc_now
from .errors import PreconditionError, ReasonCode
from .logging_config import set_deliberation_id
from .models import Cell, CellIdea, CellParticipation, Deliberation, DeliberationMember, Idea
from .sizing import calculate_cell_sizes, calculate_idea_sizes
from .states import SEATED_ROLES, CellStatus, IdeaStatus, require_transitions

logger = logging.getLogger(__name__)


@dataclass
class CellPlan:
    """One cell to create: its ideas, how many members it seats, its batch."""

    idea_ids: list[int]
    member_count: int
    batch: int | None = None


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def load_deliberation(db: Session, deliberation_id: int) -> Deliberation:
    """Fetch a deliberation or raise NOT_FOUND; binds its id to log records."""
    deliberation = db.get(Deliberation, deliberation_id)
    if deliberation is None:
        raise PreconditionError(ReasonCode.NOT_FOUND, f"Deliberation {deliberation_id} not found")
    set_deliberation_id(deliberation_id)
    return deliberation


def seated_member_ids(db: Session, deliberation_id: int) -> list[int]:
    """User ids of members who take seats in cells (creator and participants)."""
    rows = (
        db.query(DeliberationMember.user_id)
        .filter(
            DeliberationMember.deliberation_id == deliberation_id,
            DeliberationMember.role.in_([role.value for role in SEATED_ROLES]),
        )
        .order_by(DeliberationMember.id)
        .all()
    )
    return [row.user_id for row in rows]


def in_current_round(deliberation_id: int):
    """Filter clause limiting cells to the deliberation's current challenge round."""
    current = select(Deliberation.challenge_round).where(Deliberation.id == deliberation_id).scalar_subquery()
    return Cell.challenge_round == current


def cells_at_tier(db: Session, deliberation_id: int, tier: int) -> list[Cell]:
    return (
        db.query(Cell)
        .filter(Cell.deliberation_id == deliberation_id, Cell.tier == tier, in_current_round(deliberation_id))
        .order_by(Cell.id)
        .all()
    )


def count_open_cells(db: Session, deliberation_id: int, max_tier: int | None = None) -> int:
    """Open cells in the deliberation, optionally only up to ``max_tier``."""
    query = db.query(func.count(Cell.id)).filter(
        Cell.deliberation_id == deliberation_id,
        Cell.status != CellStatus.COMPLETED.value,
    )
    if max_tier is not None:
        query = query.filter(Cell.tier <= max_tier)
    return query.scalar() or 0


def ideas_with_status(
    db: Session,
    deliberation_id: int,
    status: IdeaStatus,
    tier: int | None = None,
) -> list[Idea]:
    """Ideas in ``status`` (optionally at ``tier``), oldest first."""
    query = db.query(Idea).filter(Idea.deliberation_id == deliberation_id, Idea.status == status.value)
    if tier is not None:
        query = query.filter(Idea.tier == tier)
    return query.order_by(Idea.created_at, Idea.id).all()


def sibling_cells(db: Session, cell: Cell) -> list[Cell]:
    """Other cells at the same tier voting on exactly the same idea set."""
    idea_ids = cell.idea_ids
    return [
        other
        for other in cells_at_tier(db, cell.deliberation_id, cell.tier)
        if other.id != cell.id and other.idea_ids == idea_ids
    ]


def unassigned_ideas_at_tier(db: Session, deliberation_id: int, tier: int) -> list[Idea]:
    """IN_VOTING ideas at ``tier`` that no cell of that tier contests yet."""
    assigned = (
        select(CellIdea.idea_id)
        .join(Cell, Cell.id == CellIdea.cell_id)
        .where(Cell.deliberation_id == deliberation_id, Cell.tier == tier, in_current_round(deliberation_id))
    )
    return (
        db.query(Idea)
        .filter(
            Idea.deliberation_id == deliberation_id,
            Idea.status == IdeaStatus.IN_VOTING.value,
            Idea.tier == tier,
            Idea.id.not_in(assigned),
        )
        .order_by(Idea.created_at, Idea.id)
        .all()
    )


# ---------------------------------------------------------------------------
# Planning and seating
# ---------------------------------------------------------------------------

def slice_by_sizes(items: Sequence[int], sizes: Iterable[int]) -> list[list[int]]:
    groups, start = [], 0
    for size in sizes:
        groups.append(list(items[start:start + size]))
        start += size
    return groups


def plan_cells(
    idea_ids: Sequence[int],
    member_count: int,
    cell_size: int,
    shared_showdown: bool = False,
) -> list[CellPlan]:
    """
    Plan batch-mode cells.

    The member count fixes how many cells exist. Ideas are split into at most
    ``ceil(ideas / cell_size)`` groups; when there are fewer groups than
    cells, cells take groups round-robin and cells sharing a group get that
    group's index as their batch number. With ``shared_showdown`` every cell
    votes on the whole idea set.
    """
    member_sizes = calculate_cell_sizes(member_count, cell_size)
    cell_count = len(member_sizes)

    if shared_showdown:
        batch = 0 if cell_count > 1 else None
        return [CellPlan(list(idea_ids), size, batch) for size in member_sizes]

    group_count = max(1, min(cell_count, math.ceil(len(idea_ids) / cell_size)))
    groups = slice_by_sizes(idea_ids, calculate_idea_sizes(len(idea_ids), group_count))
    if group_count == cell_count:
        return [CellPlan(groups[i], size) for i, size in enumerate(member_sizes)]

    cells_per_group = Counter(i % group_count for i in range(cell_count))
    plans = []
    for i, size in enumerate(member_sizes):
        group = i % group_count
        batch = group if cells_per_group[group] > 1 else None
        plans.append(CellPlan(groups[group], size, batch))
    return plans


def seat_members(
    member_ids: Sequence[int],
    plans: Sequence[CellPlan],
    author_of: dict[int, int | None],
) -> list[list[int]]:
    """
    Seat members into planned cells, keeping authors away from their own ideas.

    Each member goes to a conflict-free cell with spare capacity, preferring
    cells below 3 members, then the least full. If no conflict-free cell has
    room the same priority runs without the conflict rule. Members with the
    most conflicting cells are seated first so unconstrained members fill in
    around them.

    Returns:
        One list of user ids per plan, in plan order
    """
    author_cells: dict[int, set[int]] = {}
    for index, plan in enumerate(plans):
        for idea_id in plan.idea_ids:
            author = author_of.get(idea_id)
            if author is not None:
                author_cells.setdefault(author, set()).add(index)

    seats: list[list[int]] = [[] for _ in plans]

    def fill_priority(index: int) -> tuple[int, int, int]:
        seated = len(seats[index])
        return (0 if seated < MIN_CELL_SIZE else 1, seated, index)

    ordered = sorted(member_ids, key=lambda m: -len(author_cells.get(m, ())))
    for member in ordered:
        with_room = [i for i, plan in enumerate(plans) if len(seats[i]) < plan.member_count]
        if not with_room:
            with_room = list(range(len(plans)))
        conflicts = author_cells.get(member, set())
        conflict_free = [i for i in with_room if i not in conflicts]
        if not conflict_free:
            logger.debug("No conflict-free seat for user %s", member)
        seats[min(conflict_free or with_room, key=fill_priority)].append(member)
    return seats


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

def open_voting(cell: Cell, deliberation: Deliberation, now: datetime) -> None:
    """Put a cell into VOTING with a deadline unless the timeout is 0."""
    cell.status = CellStatus.VOTING.value
    cell.voting_started_at = now
    timeout_ms = deliberation.voting_timeout_ms or 0
    cell.voting_deadline = now + timedelta(milliseconds=timeout_ms) if timeout_ms > 0 else None


def apply_cell_timing(cell: Cell, deliberation: Deliberation, now: datetime) -> None:
    if deliberation.has_discussion:
        cell.status = CellStatus.DELIBERATING.value
        if deliberation.discussion_duration_ms > 0:
            cell.discussion_ends_at = now + timedelta(milliseconds=deliberation.discussion_duration_ms)
    else:
        open_voting(cell, deliberation, now)


def create_cell(
    db: Session,
    deliberation: Deliberation,
    tier: int,
    idea_ids: Iterable[int],
    member_ids: Iterable[int] = (),
    batch: int | None = None,
    now: datetime | None = None,
) -> Cell:
    """Add one cell with its fixed idea set and any pre-seated members."""
    now = now or utc_now()
    cell = Cell(
        deliberation_id=deliberation.id,
        tier=tier,
        batch=batch,
        challenge_round=deliberation.challenge_round or 0,
        created_at=now,
    )
    apply_cell_timing(cell, deliberation, now)
    cell.cell_ideas = [CellIdea(idea_id=idea_id) for idea_id in idea_ids]
    cell.participants = [CellParticipation(user_id=user_id, joined_at=now) for user_id in member_ids]
    db.add(cell)
    db.flush()
    return cell


def next_batch_number(db: Session, deliberation_id: int, tier: int) -> int:
    return (
        db.query(func.count(Cell.id))
        .filter(Cell.deliberation_id == deliberation_id, Cell.tier == tier, in_current_round(deliberation_id))
        .scalar()
        or 0
    )


def is_shared_showdown(deliberation: Deliberation, tier: int, idea_count: int) -> bool:
    """Every cell of the tier votes on the same ideas and one batch tally decides.

    Fast-cell deliberations always work this way. Other tiers above 1 do
    once at most MAX_SHOWDOWN_IDEAS ideas are left; splitting such a small
    field would keep sending several ideas forward.
    """
    if deliberation.single_cell:
        return True
    return tier > 1 and idea_count <= MAX_SHOWDOWN_IDEAS


def create_idea_only_cells(
    db: Session,
    deliberation: Deliberation,
    tier: int,
    idea_ids: Sequence[int],
    full_groups_only: bool = False,
    now: datetime | None = None,
) -> list[Cell]:
    """
    Create FCFS cells with ideas and no members, one batch per idea group.

    With ``full_groups_only`` only groups of exactly ``cell_size`` ideas are
    created and the leftover ideas are not used. A shared showdown (see
    ``is_shared_showdown``) gets one cell holding every idea; members who
    find it full enter copies of it.
    """
    size = deliberation.cell_size
    if not full_groups_only and is_shared_showdown(deliberation, tier, len(idea_ids)):
        groups = [list(idea_ids)]
    elif full_groups_only:
        groups = [list(idea_ids[i:i + size]) for i in range(0, (len(idea_ids) // size) * size, size)]
    else:
        group_count = max(1, math.ceil(len(idea_ids) / size)) if idea_ids else 0
        groups = slice_by_sizes(idea_ids, calculate_idea_sizes(len(idea_ids), group_count))

    first_batch = next_batch_number(db, deliberation.id, tier)
    return [
        create_cell(db, deliberation, tier, group, batch=first_batch + i, now=now)
        for i, group in enumerate(groups)
    ]


def build_tier_cells(
    db: Session,
    deliberation: Deliberation,
    tier: int,
    idea_ids: Sequence[int],
    rng: random.Random | None = None,
    now: datetime | None = None,
    full_groups_only: bool | None = None,
) -> list[Cell]:
    """
    Create the cells for a tier.

    Batch mode seats every member up front; a shared showdown gives every
    cell the whole idea set. FCFS deliberations get idea-only cells
    (continuous flow keeps only full groups).

    Raises:
        PreconditionError: INSUFFICIENT_PARTICIPANTS in batch mode without members
    """
    rng = rng or random.Random()
    ideas = list(idea_ids)
    rng.shuffle(ideas)

    if deliberation.is_fcfs:
        if full_groups_only is None:
            full_groups_only = bool(deliberation.continuous_flow)
        return create_idea_only_cells(
            db, deliberation, tier, ideas, full_groups_only=full_groups_only, now=now
        )

    members = seated_member_ids(db, deliberation.id)
    if not members:
        raise PreconditionError(
            ReasonCode.INSUFFICIENT_PARTICIPANTS,
            f"Deliberation {deliberation.id} has no members to seat",
        )
    rng.shuffle(members)

    showdown = is_shared_showdown(deliberation, tier, len(ideas))
    plans = plan_cells(ideas, len(members), deliberation.cell_size, shared_showdown=showdown)
    author_of = dict(db.query(Idea.id, Idea.author_id).filter(Idea.id.in_(ideas)).all())
    seats = seat_members(members, plans, author_of)

    cells = [
        create_cell(db, deliberation, tier, plan.idea_ids, seats[i], plan.batch, now)
        for i, plan in enumerate(plans)
    ]
    logger.info(
        "Created %d cells at tier %d for %d ideas and %d members",
        len(cells), tier, len(ideas), len(members),
    )
    return cells


def move_into_voting(
    db: Session,
    idea_ids: Iterable[int],
    tier: int,
    sources: Sequence[IdeaStatus],
) -> int:
    """Conditionally move ideas from ``sources`` to IN_VOTING at ``tier``."""
    idea_ids = list(idea_ids)
    if not idea_ids:
        return 0
    require_transitions(sources, IdeaStatus.IN_VOTING)
    return claim_rows(
        db,
        Idea,
        Idea.id.in_(idea_ids),
        Idea.status.in_([s.value for s in sources]),
        values={Idea.status: IdeaStatus.IN_VOTING.value, Idea.tier: tier},
    )
