"""Champion declaration, accumulation and challenge rounds."""

import logging
import random
from datetime import timedelta

from sqlalchemy.orm import Session

from .cells import build_tier_cells, load_deliberation, move_into_voting
from .claims import claim
from .config import MIN_CHALLENGER_POOL, RETIREMENT_LOSSES
from .database import utc_now
from .errors import PreconditionError, ReasonCode
from .models import Cell, Deliberation, Idea
from .notifications import EffectDispatcher, get_effects
from .predictions import resolve_champion_predictions, resolve_safely
from .states import DeliberationPhase, IdeaStatus, require_transition
from .telemetry import trace_span

logger = logging.getLogger(__name__)


async def declare_champion(
    db: Session,
    deliberation_id: int,
    idea_id: int,
    tier: int | None = None,
    effects: EffectDispatcher | None = None,
) -> bool:
    """
    Declare ``idea_id`` the champion, exactly once.

    The phase change (VOTING or SUBMISSION -> COMPLETED, or ACCUMULATING when
    challenge rounds are enabled) is claimed before the idea is touched, so a
    concurrent caller that loses the claim returns False with no effects.

    Args:
        db: Database session
        deliberation_id: Deliberation to finish
        idea_id: Winning idea
        tier: Tier the idea won at (defaults to the current tier)
        effects: Side-effect dispatcher

    Returns:
        True if this call declared the champion
    """
    effects = effects or get_effects()

    with trace_span(
        "tierflow.declare_champion",
        {"deliberation.id": deliberation_id, "idea.id": idea_id},
    ):
        deliberation = load_deliberation(db, deliberation_id)
        idea = db.get(Idea, idea_id)
        if idea is None or idea.deliberation_id != deliberation_id:
            raise PreconditionError(ReasonCode.NOT_FOUND, f"Idea {idea_id} not found in deliberation")

        won_at = tier if tier is not None else deliberation.current_tier
        accumulate = bool(deliberation.accumulation_enabled)
        target = DeliberationPhase.ACCUMULATING if accumulate else DeliberationPhase.COMPLETED
        require_transition(idea.status, IdeaStatus.WINNER)

        now = utc_now()
        values = {Deliberation.phase: target.value, Deliberation.champion_id: idea_id}
        if accumulate:
            values[Deliberation.accumulation_ends_at] = now + timedelta(
                milliseconds=deliberation.accumulation_timeout_ms
            )
            values[Deliberation.champion_entered_tier] = max(2, won_at)
        else:
            values[Deliberation.completed_at] = now

        claimed = claim(
            db,
            Deliberation,
            Deliberation.id == deliberation_id,
            Deliberation.phase.in_([DeliberationPhase.VOTING.value, DeliberationPhase.SUBMISSION.value]),
            values=values,
        )
        if not claimed:
            db.rollback()
            logger.info("Champion for deliberation %s already declared", deliberation_id)
            return False

        # A previous round's champion loses its flag
        db.query(Idea).filter(
            Idea.deliberation_id == deliberation_id,
            Idea.id != idea_id,
            Idea.is_champion.is_(True),
        ).update({Idea.is_champion: False}, synchronize_session="fetch")

        idea.status = IdeaStatus.WINNER.value
        idea.is_champion = True
        db.commit()

        logger.info(
            "Idea %s is champion of deliberation %s at tier %s (%s)",
            idea_id, deliberation_id, won_at, target.value,
        )

    resolve_safely(resolve_champion_predictions, db, deliberation_id, idea_id)

    payload = {
        "deliberation_id": deliberation_id,
        "champion_id": idea_id,
        "champion_text": idea.text,
        "tier": won_at,
        "phase": target.value,
    }
    effects.fire_event("winner_declared", payload)
    effects.notify_members(
        deliberation_id,
        "accumulation_started" if accumulate else "champion_declared",
        payload,
    )
    return True


def readmit_defender(db: Session, deliberation: Deliberation, tier: int, advancing_count: int) -> Idea | None:
    """
    Bring a DEFENDING champion back as ADVANCING at ``tier``.

    The defender re-enters for the tier after ``tier`` once that reaches
    ``champion_entered_tier``, or earlier when at most one challenger is
    left so the last challenger still has to beat it. The caller commits.
    """
    if deliberation.champion_id is None:
        return None
    defender = db.get(Idea, deliberation.champion_id)
    if defender is None or defender.status != IdeaStatus.DEFENDING:
        return None
    entered = deliberation.champion_entered_tier or 2
    if tier + 1 < entered and advancing_count > 1:
        return None

    require_transition(defender.status, IdeaStatus.ADVANCING)
    claimed = claim(
        db,
        Idea,
        Idea.id == defender.id,
        Idea.status == IdeaStatus.DEFENDING.value,
        values={Idea.status: IdeaStatus.ADVANCING.value, Idea.tier: tier},
    )
    if not claimed:
        return None
    logger.info("Defending champion %s re-enters after tier %d", defender.id, tier)
    return defender


def split_challengers(
    challengers: list[Idea],
    min_pool: int,
) -> tuple[list[Idea], list[Idea], list[Idea]]:
    """
    Decide which challengers retire, sit out, or compete.

    Ideas with RETIREMENT_LOSSES or more losses are retired, worst first,
    while the pool stays at least ``min_pool``; the remaining repeat losers
    are benched. A pool no larger than ``min_pool`` competes in full.

    Returns:
        (to_retire, to_bench, to_compete)
    """
    if len(challengers) <= min_pool:
        return [], [], list(challengers)

    can_retire = len(challengers) - min_pool
    to_retire, to_bench, to_compete = [], [], []
    for idea in sorted(challengers, key=lambda i: -i.losses):
        if idea.losses >= RETIREMENT_LOSSES and len(to_retire) < can_retire:
            to_retire.append(idea)
        elif idea.losses >= RETIREMENT_LOSSES:
            to_bench.append(idea)
        else:
            to_compete.append(idea)
    return to_retire, to_bench, to_compete


async def start_challenge_round(
    db: Session,
    deliberation_id: int,
    effects: EffectDispatcher | None = None,
    rng: random.Random | None = None,
) -> list[Cell]:
    """
    Reopen an accumulating deliberation with the challengers as tier 1.

    Without any competing challenger the accumulation window is extended and
    no cells are created. The champion turns DEFENDING and re-enters at
    ``champion_entered_tier``.

    Returns:
        Tier-1 cells created (empty when the window was extended)
    """
    effects = effects or get_effects()

    with trace_span("tierflow.start_challenge_round", {"deliberation.id": deliberation_id}):
        deliberation = load_deliberation(db, deliberation_id)
        if deliberation.phase != DeliberationPhase.ACCUMULATING:
            raise PreconditionError(
                ReasonCode.WRONG_PHASE,
                f"Challenge rounds start from ACCUMULATING, not {deliberation.phase}",
            )

        now = utc_now()
        challengers = (
            db.query(Idea)
            .filter(
                Idea.deliberation_id == deliberation_id,
                Idea.status.in_([IdeaStatus.PENDING.value, IdeaStatus.BENCHED.value]),
            )
            .order_by(Idea.created_at, Idea.id)
            .all()
        )
        min_pool = max(MIN_CHALLENGER_POOL, (deliberation.champion_entered_tier or 1) * 2)
        to_retire, to_bench, to_compete = split_challengers(challengers, min_pool)

        for idea in to_retire:
            require_transition(idea.status, IdeaStatus.RETIRED)
            idea.status = IdeaStatus.RETIRED.value
        for idea in to_bench:
            require_transition(idea.status, IdeaStatus.BENCHED)
            idea.status = IdeaStatus.BENCHED.value

        if not to_compete:
            deliberation.accumulation_ends_at = now + timedelta(
                milliseconds=deliberation.accumulation_timeout_ms
            )
            db.commit()
            logger.info("No challengers for deliberation %s, accumulation extended", deliberation_id)
            return []

        next_round = deliberation.challenge_round + 1
        claimed = claim(
            db,
            Deliberation,
            Deliberation.id == deliberation_id,
            Deliberation.phase == DeliberationPhase.ACCUMULATING.value,
            values={
                Deliberation.phase: DeliberationPhase.VOTING.value,
                Deliberation.current_tier: 1,
                Deliberation.current_tier_started_at: now,
                Deliberation.challenge_round: next_round,
                Deliberation.accumulation_ends_at: None,
            },
        )
        if not claimed:
            db.rollback()
            logger.info("Challenge round for deliberation %s already started", deliberation_id)
            return []

        competing_ids = [idea.id for idea in to_compete]
        try:
            if deliberation.champion_id is not None:
                champion = db.get(Idea, deliberation.champion_id)
                if champion is not None and champion.status == IdeaStatus.WINNER:
                    champion.status = IdeaStatus.DEFENDING.value

            cells = build_tier_cells(
                db, deliberation, 1, competing_ids, rng=rng, now=now, full_groups_only=False
            )
            move_into_voting(db, competing_ids, 1, (IdeaStatus.PENDING, IdeaStatus.BENCHED))
            db.commit()
        except Exception:
            db.rollback()
            raise

        logger.info(
            "Challenge round %d: %d challengers, %d retired, %d benched, %d cells",
            next_round, len(to_compete), len(to_retire), len(to_bench), len(cells),
        )

    effects.notify_members(
        deliberation_id,
        "challenge_round_started",
        {"deliberation_id": deliberation_id, "challenge_round": next_round, "challengers": len(to_compete)},
    )
    return cells
