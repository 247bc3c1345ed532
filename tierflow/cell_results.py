"""Finalizing a single cell: claim, tally, and hand off."""

import logging
import random
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import func
from sqlalchemy.orm import Session

from .cells import load_deliberation, sibling_cells
from .champion import declare_champion
from .claims import claim, claim_rows
from .continuous_flow import handle_cell_complete
from .database import utc_now
from .errors import PreconditionError, ReasonCode
from .models import Cell, Idea, Vote
from .notifications import EffectDispatcher, get_effects
from .predictions import resolve_cell_predictions, resolve_safely
from .states import CellStatus, IdeaStatus, require_transition
from .tally import resolve_winners, sum_xp
from .telemetry import get_tracer, is_telemetry_enabled
from .tiers import check_tier_completion, eliminate, tally_batch
from .work_queue import AdvanceQueue

logger = logging.getLogger(__name__)


@dataclass
class CellOutcome:
    """How one cell was resolved.

    ``deferred`` cells belong to a batch; their winners come from the
    cross-cell tally, filled in (with ``batch_cell_ids``) only by the call
    that completed the batch.
    """

    cell_id: int
    tier: int
    winner_ids: list[int] = field(default_factory=list)
    loser_ids: list[int] = field(default_factory=list)
    deferred: bool = False
    extended: bool = False
    batch_cell_ids: list[int] = field(default_factory=list)


async def process_cell_results(
    db: Session,
    cell_id: int,
    is_timeout: bool = False,
    force: bool = False,
    effects: EffectDispatcher | None = None,
    queue: AdvanceQueue | None = None,
    rng: random.Random | None = None,
) -> CellOutcome | None:
    """
    Complete a cell and resolve its ideas, exactly once.

    Safe to call from a final vote, a timeout sweep and a facilitator at the
    same time: completion is claimed with ``status != COMPLETED`` and only
    the winner of that claim tallies, notifies and hands off.

    Args:
        db: Database session
        cell_id: Cell to complete
        is_timeout: Triggered by the voting deadline
        force: Facilitator override; skips the zero-vote extension
        effects: Side-effect dispatcher
        queue: Advance queue for continuous-flow follow-ups
        rng: Random source for tie draws

    Returns:
        CellOutcome, or None if another caller already completed the cell
    """
    effects = effects or get_effects()
    rng = rng or random.Random()
    tracer = get_tracer()

    with tracer.start_as_current_span("tierflow.process_cell_results") as span:
        cell = db.get(Cell, cell_id)
        if cell is None:
            raise PreconditionError(ReasonCode.NOT_FOUND, f"Cell {cell_id} not found")
        deliberation = load_deliberation(db, cell.deliberation_id)
        tier = cell.tier
        now = utc_now()

        if is_telemetry_enabled():
            span.set_attribute("cell.id", cell_id)
            span.set_attribute("cell.tier", tier)
            span.set_attribute("cell.is_timeout", is_timeout)

        vote_count = db.query(func.count(Vote.id)).filter(Vote.cell_id == cell_id).scalar() or 0

        # Zero-vote timeout: extend once, complete as a full tie the second time
        if is_timeout and not force and vote_count == 0 and not cell.completed_by_timeout:
            timeout_ms = deliberation.voting_timeout_ms or 0
            extended = claim(
                db,
                Cell,
                Cell.id == cell_id,
                Cell.status != CellStatus.COMPLETED.value,
                Cell.completed_by_timeout.is_(False),
                values={
                    Cell.completed_by_timeout: True,
                    Cell.voting_deadline: now + timedelta(milliseconds=timeout_ms) if timeout_ms > 0 else None,
                },
            )
            db.commit()
            if not extended:
                return None
            logger.info("Cell %s timed out with no votes, deadline extended once", cell_id)
            return CellOutcome(cell_id=cell_id, tier=tier, extended=True)

        if cell.status == CellStatus.COMPLETED:
            logger.debug("Cell %s already completed", cell_id)
            return None

        require_transition(cell.status, CellStatus.COMPLETED)
        values = {Cell.status: CellStatus.COMPLETED.value, Cell.completed_at: now}
        if is_timeout:
            values[Cell.completed_by_timeout] = True
        claimed = claim(db, Cell, Cell.id == cell_id, Cell.status != CellStatus.COMPLETED.value, values=values)
        if not claimed:
            db.rollback()
            logger.debug("Cell %s already completed elsewhere", cell_id)
            return None

        outcome = CellOutcome(cell_id=cell_id, tier=tier)
        idea_ids = sorted(cell.idea_ids)

        if sibling_cells(db, cell):
            outcome.deferred = True
            batch = tally_batch(db, cell, rng)
            if batch is not None:
                outcome.winner_ids = [batch.winner_id]
                outcome.loser_ids = batch.loser_ids
                outcome.batch_cell_ids = batch.cell_ids
        else:
            votes = db.query(Vote.idea_id, Vote.xp_points, Vote.user_id).filter(Vote.cell_id == cell_id).all()
            xp_by_idea = sum_xp(idea_ids, ((vote.idea_id, vote.xp_points) for vote in votes))
            voters = len({vote.user_id for vote in votes})
            result = resolve_winners(idea_ids, xp_by_idea, voters)

            winners, losers = result.winner_ids, result.loser_ids
            if deliberation.single_cell and len(winners) > 1:
                lucky = rng.choice(winners)
                losers = losers + [i for i in winners if i != lucky]
                winners = [lucky]

            if not deliberation.single_cell:
                _advance(db, winners)
            eliminate(db, losers)
            outcome.winner_ids, outcome.loser_ids = winners, losers
        db.commit()

        logger.info(
            "Cell %s completed (tier %d): winners=%s losers=%s%s",
            cell_id, tier, outcome.winner_ids, outcome.loser_ids,
            " [batch deferred]" if outcome.deferred and not outcome.batch_cell_ids else "",
        )

    # Side effects after the authoritative commit
    resolved_cells = outcome.batch_cell_ids or ([] if outcome.deferred else [cell_id])
    if resolved_cells:
        resolve_safely(resolve_cell_predictions, db, resolved_cells, outcome.winner_ids)
    effects.notify_members(
        deliberation.id,
        "cell_completed",
        {
            "deliberation_id": deliberation.id,
            "cell_id": cell_id,
            "tier": tier,
            "winner_ids": outcome.winner_ids,
            "by_timeout": is_timeout,
        },
    )

    # Hand off to exactly one coordinator
    if deliberation.single_cell:
        if outcome.winner_ids:
            await declare_champion(db, deliberation.id, outcome.winner_ids[0], tier=tier, effects=effects)
    elif deliberation.continuous_flow:
        await handle_cell_complete(db, deliberation.id, tier, outcome, effects=effects, queue=queue, rng=rng)
    else:
        await check_tier_completion(db, deliberation.id, tier, effects=effects, rng=rng)
    return outcome


def _advance(db: Session, idea_ids: list[int]) -> None:
    if not idea_ids:
        return
    require_transition(IdeaStatus.IN_VOTING, IdeaStatus.ADVANCING)
    claim_rows(
        db,
        Idea,
        Idea.id.in_(idea_ids),
        Idea.status == IdeaStatus.IN_VOTING.value,
        values={Idea.status: IdeaStatus.ADVANCING.value},
    )
