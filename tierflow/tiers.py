"""Tier completion for synchronized (batch and FCFS) deliberations."""

import logging
import random
from collections.abc import Iterable
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from .cells import (
    build_tier_cells,
    cells_at_tier,
    ideas_with_status,
    load_deliberation,
    move_into_voting,
    sibling_cells,
    unassigned_ideas_at_tier,
)
from .champion import declare_champion, readmit_defender
from .claims import claim, claim_rows
from .config import FINAL_SHOWDOWN_SIZE, MAX_SHOWDOWN_IDEAS
from .database import utc_now
from .errors import PreconditionError
from .models import Cell, Comment, Deliberation, Idea, Vote
from .notifications import EffectDispatcher, get_effects
from .predictions import resolve_cell_predictions, resolve_safely
from .states import DeliberationPhase, IdeaStatus, require_transition
from .tally import pick_batch_winner, sum_xp
from .telemetry import get_tracer, is_telemetry_enabled

logger = logging.getLogger(__name__)


@dataclass
class BatchOutcome:
    """Result of a cross-cell tally over one batch."""

    cell_ids: list[int]
    winner_id: int
    loser_ids: list[int]
    xp_by_idea: dict[int, int] = field(default_factory=dict)


@dataclass
class TierOutcome:
    """What a completed tier turned into."""

    tier: int
    next_tier: int | None
    champion_id: int | None = None
    advancing_ids: list[int] = field(default_factory=list)
    backfilled_ids: list[int] = field(default_factory=list)
    cells_created: int = 0


def vote_xp(db: Session, cell_ids: Iterable[int], idea_ids: Iterable[int]) -> dict[int, int]:
    """XP per idea summed over ``cell_ids``."""
    rows = db.query(Vote.idea_id, Vote.xp_points).filter(Vote.cell_id.in_(list(cell_ids))).all()
    return sum_xp(idea_ids, rows)


def tally_batch(db: Session, cell: Cell, rng: random.Random | None = None) -> BatchOutcome | None:
    """
    Cross-cell tally for the batch ``cell`` belongs to.

    Runs only once every cell of the batch is COMPLETED and while its ideas
    are still IN_VOTING. The winner is claimed conditionally, so of two
    concurrent tallies only one applies. The caller commits.

    Returns:
        BatchOutcome, or None if the batch is still voting or already resolved
    """
    batch_cells = [cell, *sibling_cells(db, cell)]
    if any(c.is_open for c in batch_cells):
        return None

    idea_ids = sorted(cell.idea_ids)
    still_voting = (
        db.query(Idea.id)
        .filter(Idea.id.in_(idea_ids), Idea.status == IdeaStatus.IN_VOTING.value)
        .count()
    )
    if not still_voting:
        logger.debug("Batch of cell %s already resolved", cell.id)
        return None

    cell_ids = sorted(c.id for c in batch_cells)
    xp_by_idea = vote_xp(db, cell_ids, idea_ids)
    winner_id = pick_batch_winner(idea_ids, xp_by_idea, rng)

    require_transition(IdeaStatus.IN_VOTING, IdeaStatus.ADVANCING)
    won = claim(
        db,
        Idea,
        Idea.id == winner_id,
        Idea.status == IdeaStatus.IN_VOTING.value,
        values={Idea.status: IdeaStatus.ADVANCING.value},
    )
    if not won:
        return None

    loser_ids = [i for i in idea_ids if i != winner_id]
    eliminate(db, loser_ids)
    logger.info(
        "Batch of cells %s: idea %s wins with %d XP",
        cell_ids, winner_id, xp_by_idea.get(winner_id, 0),
    )
    return BatchOutcome(cell_ids=cell_ids, winner_id=winner_id, loser_ids=loser_ids, xp_by_idea=xp_by_idea)


def eliminate(db: Session, idea_ids: list[int]) -> int:
    """IN_VOTING -> ELIMINATED with one more loss."""
    if not idea_ids:
        return 0
    require_transition(IdeaStatus.IN_VOTING, IdeaStatus.ELIMINATED)
    return claim_rows(
        db,
        Idea,
        Idea.id.in_(idea_ids),
        Idea.status == IdeaStatus.IN_VOTING.value,
        values={Idea.status: IdeaStatus.ELIMINATED.value, Idea.losses: Idea.losses + 1},
    )


def backfill_showdown(
    db: Session,
    deliberation: Deliberation,
    tier: int,
    advancing_count: int,
    rng: random.Random | None = None,
) -> list[Idea]:
    """
    Revive this tier's best eliminated ideas to top a small field up to 5.

    Applies when 2-4 ideas advance. Ranking uses XP earned in this tier's
    cells. Ideas tied at the cutoff all join while the field stays within
    MAX_SHOWDOWN_IDEAS, otherwise a random subset of the tie fills the
    remaining slots. The caller commits.
    """
    if not 2 <= advancing_count < FINAL_SHOWDOWN_SIZE:
        return []

    tier_cells = cells_at_tier(db, deliberation.id, tier)
    contested = set().union(*(c.idea_ids for c in tier_cells))
    eliminated = [
        idea
        for idea in ideas_with_status(db, deliberation.id, IdeaStatus.ELIMINATED, tier=tier)
        if idea.id in contested
    ]
    if not eliminated:
        return []

    needed = FINAL_SHOWDOWN_SIZE - advancing_count
    tier_cell_ids = [c.id for c in tier_cells]
    xp = vote_xp(db, tier_cell_ids, [i.id for i in eliminated])
    ranked = sorted(eliminated, key=lambda i: (-xp[i.id], i.created_at, i.id))

    if len(ranked) <= needed:
        chosen = ranked
    else:
        cutoff = xp[ranked[needed - 1].id]
        above = [i for i in ranked if xp[i.id] > cutoff]
        tied = [i for i in ranked if xp[i.id] == cutoff]
        if advancing_count + len(above) + len(tied) <= MAX_SHOWDOWN_IDEAS:
            chosen = above + tied
        else:
            rng = rng or random.Random()
            chosen = above + rng.sample(tied, needed - len(above))

    require_transition(IdeaStatus.ELIMINATED, IdeaStatus.ADVANCING)
    claim_rows(
        db,
        Idea,
        Idea.id.in_([i.id for i in chosen]),
        Idea.status == IdeaStatus.ELIMINATED.value,
        values={Idea.status: IdeaStatus.ADVANCING.value},
    )
    logger.info("Backfilled %d ideas into the tier %d showdown", len(chosen), tier + 1)
    return chosen


def up_pollinate(db: Session, tier: int, idea_ids: Iterable[int]) -> list[Comment]:
    """
    Promote each advancing idea's top comment at ``tier`` into the next tier.

    Only comments with at least one upvote qualify; the promoted comment's
    spread and per-tier upvote counters restart. The caller commits.
    """
    promoted = []
    for idea_id in idea_ids:
        top = (
            db.query(Comment)
            .filter(
                Comment.idea_id == idea_id,
                Comment.reach_tier == tier,
                Comment.upvote_count >= 1,
            )
            .order_by(Comment.upvote_count.desc(), Comment.created_at, Comment.id)
            .first()
        )
        if top is None:
            continue
        top.reach_tier = tier + 1
        top.spread_count = 0
        top.tier_upvotes = 0
        promoted.append(top)
    return promoted


async def check_tier_completion(
    db: Session,
    deliberation_id: int,
    tier: int,
    effects: EffectDispatcher | None = None,
    rng: random.Random | None = None,
) -> TierOutcome | None:
    """
    Advance a finished tier or declare its champion, exactly once.

    No-op unless every cell at ``tier`` is COMPLETED (and under FCFS every
    idea of the tier has been placed in a cell). The advance to ``tier + 1``
    is claimed on ``current_tier = tier`` before any next-tier cell exists,
    so concurrent callers create those cells once.

    Args:
        db: Database session
        deliberation_id: Deliberation to check
        tier: Tier whose cells just completed
        effects: Side-effect dispatcher
        rng: Random source for batch ties and backfill

    Returns:
        TierOutcome, or None when nothing happened (not done yet, or lost race)
    """
    effects = effects or get_effects()
    rng = rng or random.Random()
    tracer = get_tracer()

    with tracer.start_as_current_span("tierflow.check_tier_completion") as span:
        if is_telemetry_enabled():
            span.set_attribute("deliberation.id", deliberation_id)
            span.set_attribute("tier", tier)

        deliberation = load_deliberation(db, deliberation_id)
        cells = cells_at_tier(db, deliberation_id, tier)
        if not cells or any(c.is_open for c in cells):
            return None
        if deliberation.is_fcfs and unassigned_ideas_at_tier(db, deliberation_id, tier):
            logger.debug("Tier %d still has ideas waiting for FCFS cells", tier)
            return None

        if deliberation.current_tier != tier or deliberation.phase != DeliberationPhase.VOTING:
            logger.debug("Tier %d already handled (current tier %s)", tier, deliberation.current_tier)
            return None
        if cells_at_tier(db, deliberation_id, tier + 1):
            return None
        if (
            deliberation.continuous_flow
            and tier == 1
            and not deliberation.submissions_closed
            and ideas_with_status(db, deliberation_id, IdeaStatus.SUBMITTED)
        ):
            logger.info("Tier 1 waits for submissions to close")
            return None

        # Cross-cell tally for every multi-cell batch not yet resolved
        batch_outcomes = []
        seen: set[frozenset[int]] = set()
        for cell in cells:
            idea_set = cell.idea_ids
            if idea_set in seen:
                continue
            seen.add(idea_set)
            if sum(1 for c in cells if c.idea_ids == idea_set) > 1:
                outcome = tally_batch(db, cell, rng)
                if outcome is not None:
                    batch_outcomes.append(outcome)
        db.commit()
        for outcome in batch_outcomes:
            resolve_safely(resolve_cell_predictions, db, outcome.cell_ids, [outcome.winner_id])

        advancing = ideas_with_status(db, deliberation_id, IdeaStatus.ADVANCING, tier=tier)
        defender = readmit_defender(db, deliberation, tier, len(advancing))
        if defender is not None:
            db.commit()
            advancing.append(defender)

        if not advancing:
            logger.warning("Tier %d completed with no advancing ideas", tier)
            return None

        advancing_ids = [idea.id for idea in advancing]
        if len(advancing) == 1:
            declared = await declare_champion(
                db, deliberation_id, advancing_ids[0], tier=tier, effects=effects
            )
            if not declared:
                return None
            return TierOutcome(tier=tier, next_tier=None, champion_id=advancing_ids[0], advancing_ids=advancing_ids)

        next_tier = tier + 1
        now = utc_now()
        advanced = claim(
            db,
            Deliberation,
            Deliberation.id == deliberation_id,
            Deliberation.current_tier == tier,
            Deliberation.phase == DeliberationPhase.VOTING.value,
            values={Deliberation.current_tier: next_tier, Deliberation.current_tier_started_at: now},
        )
        if not advanced:
            db.rollback()
            logger.info("Tier %d advance already claimed", tier)
            return None
        if cells_at_tier(db, deliberation_id, next_tier):
            db.commit()
            logger.warning("Cells already exist at tier %d, not creating more", next_tier)
            return None

        try:
            backfilled = backfill_showdown(db, deliberation, tier, len(advancing), rng)
            up_pollinate(db, tier, advancing_ids)
            next_ids = advancing_ids + [idea.id for idea in backfilled]
            move_into_voting(db, next_ids, next_tier, (IdeaStatus.ADVANCING,))
            new_cells = (
                []
                if deliberation.is_fcfs
                else build_tier_cells(db, deliberation, next_tier, next_ids, rng=rng, now=now)
            )
            db.commit()
        except PreconditionError:
            db.rollback()
            raise

        if is_telemetry_enabled():
            span.set_attribute("tier.next", next_tier)
            span.set_attribute("tier.ideas", len(next_ids))
            span.set_attribute("tier.cells_created", len(new_cells))

        logger.info(
            "Deliberation %s advanced to tier %d with %d ideas (%d backfilled)",
            deliberation_id, next_tier, len(next_ids), len(backfilled),
        )

    payload = {
        "deliberation_id": deliberation_id,
        "completed_tier": tier,
        "next_tier": next_tier,
        "advancing_idea_ids": next_ids,
    }
    effects.fire_event("tier_complete", payload)
    effects.notify_members(deliberation_id, "tier_advanced", payload)
    return TierOutcome(
        tier=tier,
        next_tier=next_tier,
        advancing_ids=advancing_ids,
        backfilled_ids=[idea.id for idea in backfilled],
        cells_created=len(new_cells),
    )
