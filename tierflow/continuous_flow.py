"""Continuous flow: next-tier cells form as soon as enough winners exist.

Instead of waiting for a whole tier, every completed cell pushes its winners
into the ADVANCING pool of its tier. As soon as ``cell_size`` of them are
waiting, the oldest are claimed into one idea-only cell one tier up. Leftover
pools are flushed once submissions close and nothing below can add to them.
"""

import logging
import random
from typing import TYPE_CHECKING

from sqlalchemy import func
from sqlalchemy.orm import Session

from .cells import (
    cells_at_tier,
    count_open_cells,
    create_cell,
    create_idea_only_cells,
    ideas_with_status,
    load_deliberation,
    move_into_voting,
    next_batch_number,
)
from .champion import declare_champion, readmit_defender
from .claims import claim, claim_rows
from .database import utc_now
from .errors import PreconditionError, ReasonCode
from .models import Cell, Deliberation, Idea
from .notifications import EffectDispatcher, get_effects
from .states import DeliberationPhase, IdeaStatus, require_transition
from .telemetry import trace_span
from .work_queue import AdvanceQueue, get_advance_queue

if TYPE_CHECKING:
    from .cell_results import CellOutcome

logger = logging.getLogger(__name__)


def has_pending_work(db: Session, deliberation: Deliberation, exclude_idea_id: int | None = None) -> bool:
    """True while anything could still produce another contender."""
    if count_open_cells(db, deliberation.id):
        return True
    other_advancing = (
        db.query(func.count(Idea.id))
        .filter(
            Idea.deliberation_id == deliberation.id,
            Idea.status == IdeaStatus.ADVANCING.value,
            Idea.id != exclude_idea_id,
        )
        .scalar()
    )
    if other_advancing:
        return True
    return bool(ideas_with_status(db, deliberation.id, IdeaStatus.SUBMITTED))


def tier_settled(db: Session, deliberation: Deliberation, tier: int) -> bool:
    """True once no more ideas can arrive at ``tier``'s ADVANCING pool."""
    if not deliberation.submissions_closed:
        return False
    if ideas_with_status(db, deliberation.id, IdeaStatus.SUBMITTED):
        return False
    if count_open_cells(db, deliberation.id, max_tier=tier):
        return False
    lower_advancing = (
        db.query(func.count(Idea.id))
        .filter(
            Idea.deliberation_id == deliberation.id,
            Idea.status == IdeaStatus.ADVANCING.value,
            Idea.tier < tier,
        )
        .scalar()
    )
    return not lower_advancing


async def handle_cell_complete(
    db: Session,
    deliberation_id: int,
    tier: int,
    outcome: "CellOutcome",
    effects: EffectDispatcher | None = None,
    queue: AdvanceQueue | None = None,
    rng: random.Random | None = None,
) -> None:
    """
    React to one completed cell of a continuous-flow deliberation.

    A tallied batch that is the only batch of its tier, with nothing else
    pending, is a final showdown and its winner becomes champion. A lone
    winner at tier 2 or above with nothing else pending is champion too.
    Otherwise next-tier formation is attempted.
    """
    effects = effects or get_effects()
    deliberation = load_deliberation(db, deliberation_id)
    if deliberation.phase != DeliberationPhase.VOTING:
        return

    if outcome.deferred:
        if not outcome.batch_cell_ids:
            return
        winner_id = outcome.winner_ids[0]
        batch_ids = set(outcome.batch_cell_ids)
        only_batch = all(c.id in batch_ids for c in cells_at_tier(db, deliberation_id, tier))
        if tier >= 2 and only_batch and not has_pending_work(db, deliberation, winner_id):
            logger.info("Final showdown at tier %d won by idea %s", tier, winner_id)
            await declare_champion(db, deliberation_id, winner_id, tier=tier, effects=effects)
            return
    elif (
        len(outcome.winner_ids) == 1
        and tier >= 2
        and not has_pending_work(db, deliberation, outcome.winner_ids[0])
    ):
        await declare_champion(db, deliberation_id, outcome.winner_ids[0], tier=tier, effects=effects)
        return

    await try_advance_tier(db, deliberation_id, tier, effects=effects, queue=queue, rng=rng)


async def try_advance_tier(
    db: Session,
    deliberation_id: int,
    tier: int,
    effects: EffectDispatcher | None = None,
    queue: AdvanceQueue | None = None,
    rng: random.Random | None = None,
) -> Cell | None:
    """
    Form one tier ``tier + 1`` cell from the oldest ADVANCING ideas at ``tier``.

    Needs ``cell_size`` waiting ideas. Once the tier is settled a smaller
    pool of 2 or more forms a final cell, and a single idea either becomes
    champion (nothing pending anywhere) or moves up a tier on a bye. The
    ideas are claimed with one conditional update; if fewer rows match than
    were selected, another caller took some and the whole attempt rolls
    back. A follow-up attempt is queued when another full group remains.

    Returns:
        The created cell, or None
    """
    effects = effects or get_effects()

    with trace_span("tierflow.try_advance_tier", {"deliberation.id": deliberation_id, "tier": tier}):
        deliberation = load_deliberation(db, deliberation_id)
        if deliberation.phase != DeliberationPhase.VOTING or not deliberation.continuous_flow:
            return None

        size = deliberation.cell_size
        settled = tier_settled(db, deliberation, tier)
        advancing = ideas_with_status(db, deliberation_id, IdeaStatus.ADVANCING, tier=tier)

        defender = readmit_defender(db, deliberation, tier, len(advancing) if settled else size)
        if defender is not None:
            db.commit()
            advancing.append(defender)

        if len(advancing) < size:
            if not advancing or not settled:
                return None
            if len(advancing) == 1:
                await _settle_lone_idea(db, deliberation, tier, advancing[0], effects, queue)
                return None
        take = advancing[:size]
        idea_ids = [idea.id for idea in take]

        require_transition(IdeaStatus.ADVANCING, IdeaStatus.IN_VOTING)
        claimed = claim_rows(
            db,
            Idea,
            Idea.id.in_(idea_ids),
            Idea.status == IdeaStatus.ADVANCING.value,
            Idea.tier == tier,
            values={Idea.status: IdeaStatus.IN_VOTING.value, Idea.tier: tier + 1},
        )
        if claimed != len(idea_ids):
            db.rollback()
            logger.warning(
                "Partial claim at tier %d (%d of %d ideas), reverted", tier, claimed, len(idea_ids)
            )
            return None

        now = utc_now()
        next_tier = tier + 1
        cell = create_cell(
            db, deliberation, next_tier, idea_ids,
            batch=next_batch_number(db, deliberation_id, next_tier), now=now,
        )
        claim(
            db,
            Deliberation,
            Deliberation.id == deliberation_id,
            Deliberation.current_tier < next_tier,
            values={Deliberation.current_tier: next_tier, Deliberation.current_tier_started_at: now},
        )
        db.commit()
        logger.info("Formed tier %d cell %s from %d ideas", next_tier, cell.id, len(idea_ids))

    effects.fire_event(
        "tier_complete",
        {
            "deliberation_id": deliberation_id,
            "completed_tier": tier,
            "next_tier": next_tier,
            "cell_id": cell.id,
            "idea_ids": idea_ids,
        },
    )

    if len(advancing) - len(take) >= size:
        (queue if queue is not None else get_advance_queue()).enqueue(deliberation_id, tier)
    return cell


async def _settle_lone_idea(
    db: Session,
    deliberation: Deliberation,
    tier: int,
    idea: Idea,
    effects: EffectDispatcher,
    queue: AdvanceQueue | None,
) -> None:
    if not has_pending_work(db, deliberation, idea.id):
        await declare_champion(db, deliberation.id, idea.id, tier=tier, effects=effects)
        return

    moved = claim(
        db,
        Idea,
        Idea.id == idea.id,
        Idea.status == IdeaStatus.ADVANCING.value,
        Idea.tier == tier,
        values={Idea.tier: tier + 1},
    )
    if not moved:
        db.rollback()
        return
    db.commit()
    logger.info("Idea %s moves to tier %d on a bye", idea.id, tier + 1)
    (queue if queue is not None else get_advance_queue()).enqueue(deliberation.id, tier + 1)


async def try_form_tier_one_cell(
    db: Session,
    deliberation_id: int,
    effects: EffectDispatcher | None = None,
) -> list[Cell]:
    """Form tier-1 cells from the oldest full groups of unassigned ideas."""
    deliberation = load_deliberation(db, deliberation_id)
    if (
        deliberation.phase != DeliberationPhase.VOTING
        or not deliberation.continuous_flow
        or deliberation.submissions_closed
    ):
        return []

    waiting = ideas_with_status(db, deliberation_id, IdeaStatus.SUBMITTED)
    if len(waiting) < deliberation.cell_size:
        return []

    cells = create_idea_only_cells(
        db, deliberation, 1, [idea.id for idea in waiting], full_groups_only=True
    )
    placed = [ci.idea_id for cell in cells for ci in cell.cell_ideas]
    moved = move_into_voting(db, placed, 1, (IdeaStatus.SUBMITTED,))
    if moved != len(placed):
        db.rollback()
        logger.warning("Tier 1 formation raced (%d of %d ideas), reverted", moved, len(placed))
        return []
    db.commit()
    logger.info("Formed %d tier 1 cells from waiting submissions", len(cells))
    return cells


async def close_submissions(
    db: Session,
    deliberation_id: int,
    effects: EffectDispatcher | None = None,
    queue: AdvanceQueue | None = None,
    rng: random.Random | None = None,
) -> list[Cell]:
    """
    Stop accepting ideas in a continuous-flow deliberation.

    Leftover submissions form a last tier-1 cell; a single leftover advances
    on a bye. Then formation is retried at every tier so partial pools can
    flush.

    Raises:
        PreconditionError: WRONG_PHASE unless continuous flow is voting
    """
    effects = effects or get_effects()
    deliberation = load_deliberation(db, deliberation_id)
    if not deliberation.continuous_flow or deliberation.phase != DeliberationPhase.VOTING:
        raise PreconditionError(
            ReasonCode.WRONG_PHASE,
            "Submissions can only be closed on a continuous-flow deliberation that is voting",
        )

    closed = claim(
        db,
        Deliberation,
        Deliberation.id == deliberation_id,
        Deliberation.submissions_closed.is_(False),
        values={Deliberation.submissions_closed: True},
    )
    if not closed:
        db.rollback()
        return []

    leftovers = [idea.id for idea in ideas_with_status(db, deliberation_id, IdeaStatus.SUBMITTED)]
    cells: list[Cell] = []
    if len(leftovers) >= 2:
        cells = create_idea_only_cells(db, deliberation, 1, leftovers)
        move_into_voting(db, leftovers, 1, (IdeaStatus.SUBMITTED,))
    elif leftovers:
        require_transition(IdeaStatus.SUBMITTED, IdeaStatus.ADVANCING)
        claim(
            db,
            Idea,
            Idea.id == leftovers[0],
            Idea.status == IdeaStatus.SUBMITTED.value,
            values={Idea.status: IdeaStatus.ADVANCING.value, Idea.tier: 1},
        )
    db.commit()
    logger.info("Submissions closed with %d leftover ideas", len(leftovers))

    effects.notify_members(
        deliberation_id, "submissions_closed", {"deliberation_id": deliberation_id, "leftovers": len(leftovers)}
    )

    for tier in range(1, deliberation.current_tier + 1):
        await try_advance_tier(db, deliberation_id, tier, effects=effects, queue=queue, rng=rng)
    return cells
