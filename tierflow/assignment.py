"""Starting the voting phase, FCFS cell entry, and idea submission."""

import logging
import random
from collections import defaultdict

from sqlalchemy import func
from sqlalchemy.orm import Session

from .cells import (
    build_tier_cells,
    create_cell,
    create_idea_only_cells,
    ideas_with_status,
    load_deliberation,
    move_into_voting,
    seated_member_ids,
    unassigned_ideas_at_tier,
)
from .champion import declare_champion
from .claims import claim
from .continuous_flow import try_form_tier_one_cell
from .database import utc_now
from .errors import PreconditionError, ReasonCode
from .models import Cell, CellParticipation, Deliberation, DeliberationMember, Idea
from .notifications import EffectDispatcher, get_effects
from .states import (
    SEATED_ROLES,
    CellStatus,
    DeliberationPhase,
    IdeaStatus,
    MemberRole,
    ParticipationStatus,
    require_transition,
)
from .telemetry import trace_span

logger = logging.getLogger(__name__)


async def start_voting_phase(
    db: Session,
    deliberation_id: int,
    effects: EffectDispatcher | None = None,
    rng: random.Random | None = None,
) -> list[Cell]:
    """
    Move a deliberation from SUBMISSION to VOTING and build tier 1.

    A single submitted idea is declared champion straight away. Otherwise the
    phase change is claimed before any cell exists. Batch mode seats every
    member; FCFS creates idea-only cells; continuous flow only turns full
    idea groups into cells and leaves the rest waiting.

    Args:
        db: Database session
        deliberation_id: Deliberation to start
        effects: Side-effect dispatcher
        rng: Random source for shuffling ideas and members

    Returns:
        Tier-1 cells created (empty when a lone idea won outright)

    Raises:
        PreconditionError: NOT_FOUND, WRONG_PHASE, NO_IDEAS or
            INSUFFICIENT_PARTICIPANTS; the deliberation is left unchanged
    """
    effects = effects or get_effects()

    with trace_span("tierflow.start_voting_phase", {"deliberation.id": deliberation_id}):
        deliberation = load_deliberation(db, deliberation_id)
        if deliberation.phase != DeliberationPhase.SUBMISSION:
            raise PreconditionError(
                ReasonCode.WRONG_PHASE,
                f"Voting starts from SUBMISSION, deliberation is {deliberation.phase}",
            )

        ideas = ideas_with_status(db, deliberation_id, IdeaStatus.SUBMITTED)
        if not ideas:
            raise PreconditionError(ReasonCode.NO_IDEAS, "No ideas were submitted")

        if len(ideas) == 1:
            logger.info("Single idea %s wins deliberation %s without voting", ideas[0].id, deliberation_id)
            await declare_champion(db, deliberation_id, ideas[0].id, tier=0, effects=effects)
            return []

        if not deliberation.is_fcfs and not seated_member_ids(db, deliberation_id):
            raise PreconditionError(
                ReasonCode.INSUFFICIENT_PARTICIPANTS,
                f"Deliberation {deliberation_id} has no members to seat",
            )

        now = utc_now()
        require_transition(deliberation.phase, DeliberationPhase.VOTING)
        started = claim(
            db,
            Deliberation,
            Deliberation.id == deliberation_id,
            Deliberation.phase == DeliberationPhase.SUBMISSION.value,
            values={
                Deliberation.phase: DeliberationPhase.VOTING.value,
                Deliberation.current_tier: 1,
                Deliberation.current_tier_started_at: now,
            },
        )
        if not started:
            db.rollback()
            logger.info("Voting for deliberation %s already started", deliberation_id)
            return []

        try:
            cells = build_tier_cells(db, deliberation, 1, [idea.id for idea in ideas], rng=rng, now=now)
            placed = [ci.idea_id for cell in cells for ci in cell.cell_ideas]
            move_into_voting(db, set(placed), 1, (IdeaStatus.SUBMITTED,))
            db.commit()
        except Exception:
            db.rollback()
            raise

        logger.info(
            "Voting started for deliberation %s: %d ideas in %d cells (%d waiting)",
            deliberation_id, len(ideas), len(cells), len(ideas) - len(set(placed)),
        )

    effects.notify_members(
        deliberation_id,
        "voting_started",
        {"deliberation_id": deliberation_id, "question": deliberation.question, "cells": len(cells)},
    )
    for cell in cells:
        for participation in cell.participants:
            effects.notify_user(participation.user_id, "cell_assigned", {"cell_id": cell.id, "tier": 1})
    return cells


def _open_cell_load(db: Session, deliberation: Deliberation, tiers: list[int] | None) -> list[tuple[Cell, int]]:
    """Open cells with their participant counts, least full first."""
    query = (
        db.query(Cell, func.count(CellParticipation.id))
        .outerjoin(CellParticipation, CellParticipation.cell_id == Cell.id)
        .filter(
            Cell.deliberation_id == deliberation.id,
            Cell.challenge_round == deliberation.challenge_round,
            Cell.status != CellStatus.COMPLETED.value,
        )
    )
    if tiers is not None:
        query = query.filter(Cell.tier.in_(sorted(tiers)))
    rows = query.group_by(Cell.id).all()
    return sorted(rows, key=lambda row: (row[1], row[0].id))


def _try_join(db: Session, cell: Cell, user_id: int, capacity: int) -> bool:
    """Seat ``user_id`` in ``cell`` unless a concurrent join filled it first."""
    participation = CellParticipation(cell_id=cell.id, user_id=user_id, joined_at=utc_now())
    db.add(participation)
    db.flush()
    seated = db.query(func.count(CellParticipation.id)).filter(CellParticipation.cell_id == cell.id).scalar()
    if seated > capacity:
        db.delete(participation)
        db.flush()
        return False
    return True


def _batch_to_copy(db: Session, deliberation: Deliberation, tiers: set[int]) -> Cell | None:
    """The cell of the least-populated unresolved batch, used as a template."""
    by_batch: dict[tuple[int, frozenset[int]], list[Cell]] = defaultdict(list)
    query = db.query(Cell).filter(
        Cell.deliberation_id == deliberation.id,
        Cell.tier.in_(sorted(tiers)),
        Cell.challenge_round == deliberation.challenge_round,
    )
    for cell in query.order_by(Cell.id).all():
        by_batch[(cell.tier, cell.idea_ids)].append(cell)

    candidates = []
    for (tier, idea_ids), cells in by_batch.items():
        voting = (
            db.query(func.count(Idea.id))
            .filter(Idea.id.in_(sorted(idea_ids)), Idea.status == IdeaStatus.IN_VOTING.value)
            .scalar()
        )
        if voting:
            candidates.append((len(cells), cells[0].id, cells[0]))
    if not candidates:
        return None
    return min(candidates, key=lambda c: (c[0], c[1]))[2]


async def enter_cell(
    db: Session,
    deliberation_id: int,
    user_id: int,
    effects: EffectDispatcher | None = None,
) -> Cell:
    """
    Seat a member in a cell of the current tier.

    Returns the member's open cell if they already have one. Under FCFS the
    member joins the open cell with the fewest participants; if every open
    cell is full, ideas not yet placed get new cells, or the least-populated
    unresolved batch gets one more cell with the same ideas. In batch mode a
    late joiner goes to the least-populated open cell, avoiding cells that
    contain one of their own ideas when another cell is open.

    Raises:
        PreconditionError: NOT_FOUND, WRONG_PHASE, NOT_A_PARTICIPANT,
            ALREADY_VOTED_THIS_TIER or NO_IDEAS_IN_TIER
    """
    effects = effects or get_effects()

    with trace_span("tierflow.enter_cell", {"deliberation.id": deliberation_id, "user.id": user_id}):
        deliberation = load_deliberation(db, deliberation_id)
        if deliberation.phase != DeliberationPhase.VOTING:
            raise PreconditionError(ReasonCode.WRONG_PHASE, f"Deliberation is {deliberation.phase}")

        member = (
            db.query(DeliberationMember)
            .filter(DeliberationMember.deliberation_id == deliberation_id, DeliberationMember.user_id == user_id)
            .first()
        )
        if member is None or member.role not in [role.value for role in SEATED_ROLES]:
            raise PreconditionError(ReasonCode.NOT_A_PARTICIPANT, f"User {user_id} cannot vote here")

        mine = (
            db.query(CellParticipation, Cell)
            .join(Cell, Cell.id == CellParticipation.cell_id)
            .filter(
                Cell.deliberation_id == deliberation_id,
                Cell.challenge_round == deliberation.challenge_round,
                CellParticipation.user_id == user_id,
            )
            .all()
        )
        voted_tiers = {cell.tier for p, cell in mine if p.status == ParticipationStatus.VOTED}
        for participation, cell in mine:
            if cell.is_open and participation.status == ParticipationStatus.ACTIVE:
                return cell

        tier = deliberation.current_tier
        if deliberation.continuous_flow:
            round_tiers = {c.tier for c in deliberation.cells if c.challenge_round == deliberation.challenge_round}
            tiers = sorted(round_tiers - voted_tiers)
        else:
            if tier in voted_tiers:
                raise PreconditionError(
                    ReasonCode.ALREADY_VOTED_THIS_TIER, f"User {user_id} already voted at tier {tier}"
                )
            tiers = [tier]

        if deliberation.is_fcfs:
            cell = _enter_fcfs_cell(db, deliberation, user_id, tier, tiers, voted_tiers)
        else:
            cell = _join_smallest_cell(db, deliberation, user_id, tier)

        logger.info("User %s entered cell %s (tier %d)", user_id, cell.id, cell.tier)

    effects.notify_user(user_id, "cell_assigned", {"cell_id": cell.id, "tier": cell.tier})
    return cell


def _enter_fcfs_cell(
    db: Session,
    deliberation: Deliberation,
    user_id: int,
    tier: int,
    tiers: list[int],
    voted_tiers: set[int],
) -> Cell:
    capacity = deliberation.cell_size
    for cell, seated in _open_cell_load(db, deliberation, tiers):
        if seated >= capacity:
            continue
        if _try_join(db, cell, user_id, capacity):
            db.commit()
            return cell

    cell = _new_cell_for_entry(db, deliberation, tier, set(tiers))
    if cell is None:
        db.rollback()
        if voted_tiers and not tiers:
            raise PreconditionError(
                ReasonCode.ALREADY_VOTED_THIS_TIER, f"User {user_id} already voted everywhere open"
            )
        raise PreconditionError(ReasonCode.NO_IDEAS_IN_TIER, f"No ideas are waiting at tier {tier}")
    db.add(CellParticipation(cell_id=cell.id, user_id=user_id, joined_at=utc_now()))
    db.commit()
    return cell


def _join_smallest_cell(db: Session, deliberation: Deliberation, user_id: int, tier: int) -> Cell:
    """Late joiner in batch mode: no capacity limit, own ideas avoided if possible."""
    open_cells = _open_cell_load(db, deliberation, [tier])
    if not open_cells:
        raise PreconditionError(ReasonCode.NO_IDEAS_IN_TIER, f"No open cells at tier {tier}")

    own_ideas = {
        row.id
        for row in db.query(Idea.id).filter(Idea.deliberation_id == deliberation.id, Idea.author_id == user_id)
    }
    conflict_free = [cell for cell, _ in open_cells if not cell.idea_ids & own_ideas]
    cell = conflict_free[0] if conflict_free else open_cells[0][0]

    db.add(CellParticipation(cell_id=cell.id, user_id=user_id, joined_at=utc_now()))
    db.commit()
    return cell


def _new_cell_for_entry(db: Session, deliberation: Deliberation, tier: int, tiers: set[int]) -> Cell | None:
    if not deliberation.continuous_flow and tier in tiers:
        waiting = unassigned_ideas_at_tier(db, deliberation.id, tier)
        if waiting:
            cells = create_idea_only_cells(db, deliberation, tier, [idea.id for idea in waiting])
            return cells[0]

    template = _batch_to_copy(db, deliberation, tiers) if tiers else None
    if template is None:
        return None
    return create_cell(db, deliberation, template.tier, sorted(template.idea_ids), batch=template.batch)


async def submit_idea(
    db: Session,
    deliberation_id: int,
    text: str,
    author_id: int | None = None,
    effects: EffectDispatcher | None = None,
) -> Idea:
    """
    Add an idea to a deliberation.

    During SUBMISSION the idea waits for voting; while ACCUMULATING it is a
    PENDING challenger; a voting continuous-flow deliberation accepts it
    until submissions close and forms a tier-1 cell once enough are waiting.
    Authors are added as participants.

    Raises:
        PreconditionError: NOT_FOUND, WRONG_PHASE or SUBMISSIONS_CLOSED
    """
    effects = effects or get_effects()
    text = (text or "").strip()
    if not text:
        raise ValueError("Idea text must not be empty")

    deliberation = load_deliberation(db, deliberation_id)
    phase = deliberation.phase
    if phase == DeliberationPhase.SUBMISSION:
        status = IdeaStatus.SUBMITTED
    elif phase == DeliberationPhase.ACCUMULATING:
        status = IdeaStatus.PENDING
    elif phase == DeliberationPhase.VOTING and deliberation.continuous_flow:
        if deliberation.submissions_closed:
            raise PreconditionError(ReasonCode.SUBMISSIONS_CLOSED, "Submissions are closed")
        status = IdeaStatus.SUBMITTED
    else:
        raise PreconditionError(ReasonCode.WRONG_PHASE, f"Ideas are not accepted while {phase}")

    idea = Idea(deliberation_id=deliberation_id, author_id=author_id, text=text, status=status.value)
    db.add(idea)
    if author_id is not None:
        is_member = (
            db.query(DeliberationMember.id)
            .filter(DeliberationMember.deliberation_id == deliberation_id, DeliberationMember.user_id == author_id)
            .first()
        )
        if is_member is None:
            db.add(DeliberationMember(
                deliberation_id=deliberation_id, user_id=author_id, role=MemberRole.PARTICIPANT.value
            ))
    db.commit()
    db.refresh(idea)
    logger.info("Idea %s submitted to deliberation %s as %s", idea.id, deliberation_id, status.value)

    effects.fire_event(
        "idea_submitted",
        {"deliberation_id": deliberation_id, "idea_id": idea.id, "text": idea.text, "author_id": author_id},
    )

    if phase == DeliberationPhase.VOTING:
        await try_form_tier_one_cell(db, deliberation_id, effects=effects)
    return idea
