"""Deadline sweeps and facilitator overrides.

Timers are cooperative: a scheduler calls ``process_all_timers`` every few
seconds and each sweep re-enters the same idempotent entry points a request
handler would use. Every expired item gets its own session so one failure
does not roll back the others.
"""

import asyncio
import logging
import random
import uuid
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

from sqlalchemy.orm import Session

from .assignment import start_voting_phase
from .cell_results import CellOutcome, process_cell_results
from .cells import load_deliberation
from .champion import start_challenge_round
from .claims import claim
from .database import SessionLocal, utc_now
from .errors import PreconditionError, ReasonCode
from .logging_config import set_correlation_id, set_deliberation_id
from .models import Cell, Deliberation
from .notifications import EffectDispatcher, get_effects
from .states import OPEN_CELL_STATUSES, CellStatus, DeliberationPhase, require_transition
from .telemetry import trace_span
from .work_queue import AdvanceQueue, get_advance_queue

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


async def _run_each(
    session_factory: SessionFactory,
    label: str,
    ids: list[int],
    action: Callable[[Session, int], Awaitable[Any]],
) -> list[int]:
    """Run ``action`` once per id in a fresh session; returns the ids that ran cleanly."""
    done = []
    for item_id in ids:
        db = session_factory()
        try:
            await action(db, item_id)
            done.append(item_id)
        except PreconditionError as e:
            db.rollback()
            logger.info("[%s] Skipped %s: %s", label, item_id, e)
        except Exception as e:
            db.rollback()
            logger.error("[%s] Failed on %s: %s", label, item_id, e, exc_info=True)
        finally:
            db.close()
    return done


def _expired_ids(session_factory: SessionFactory, query: Callable[[Session], list[Any]]) -> list[int]:
    db = session_factory()
    try:
        return [row.id for row in query(db)]
    finally:
        db.close()


async def process_expired_submissions(
    session_factory: SessionFactory = SessionLocal,
    effects: EffectDispatcher | None = None,
    rng: random.Random | None = None,
) -> list[int]:
    """Start voting for deliberations whose submission window has ended."""
    now = utc_now()
    ids = _expired_ids(
        session_factory,
        lambda db: db.query(Deliberation.id)
        .filter(
            Deliberation.phase == DeliberationPhase.SUBMISSION.value,
            Deliberation.submission_ends_at.is_not(None),
            Deliberation.submission_ends_at <= now,
        )
        .all(),
    )

    async def start(db: Session, deliberation_id: int) -> None:
        set_deliberation_id(deliberation_id)
        await start_voting_phase(db, deliberation_id, effects=effects, rng=rng)

    return await _run_each(session_factory, "submissions", ids, start)


def open_cell_for_voting(db: Session, cell_id: int) -> bool:
    """Move a DELIBERATING cell to VOTING once; False if it already moved."""
    cell = db.get(Cell, cell_id)
    if cell is None:
        raise PreconditionError(ReasonCode.NOT_FOUND, f"Cell {cell_id} not found")
    deliberation = load_deliberation(db, cell.deliberation_id)
    require_transition(CellStatus.DELIBERATING, CellStatus.VOTING)

    now = utc_now()
    timeout_ms = deliberation.voting_timeout_ms or 0
    opened = claim(
        db,
        Cell,
        Cell.id == cell_id,
        Cell.status == CellStatus.DELIBERATING.value,
        values={
            Cell.status: CellStatus.VOTING.value,
            Cell.voting_started_at: now,
            Cell.voting_deadline: now + timedelta(milliseconds=timeout_ms) if timeout_ms > 0 else None,
        },
    )
    if not opened:
        db.rollback()
        return False
    db.commit()
    logger.info("Discussion over, cell %s open for voting", cell_id)
    return True


async def process_expired_discussions(session_factory: SessionFactory = SessionLocal) -> list[int]:
    """Open voting in cells whose discussion period has ended."""
    now = utc_now()
    ids = _expired_ids(
        session_factory,
        lambda db: db.query(Cell.id)
        .filter(
            Cell.status == CellStatus.DELIBERATING.value,
            Cell.discussion_ends_at.is_not(None),
            Cell.discussion_ends_at <= now,
        )
        .all(),
    )

    async def open_voting(db: Session, cell_id: int) -> None:
        open_cell_for_voting(db, cell_id)

    return await _run_each(session_factory, "discussions", ids, open_voting)


async def process_expired_cells(
    session_factory: SessionFactory = SessionLocal,
    effects: EffectDispatcher | None = None,
    queue: AdvanceQueue | None = None,
    rng: random.Random | None = None,
) -> list[int]:
    """Complete (or extend, when nobody voted) cells past their voting deadline."""
    now = utc_now()
    ids = _expired_ids(
        session_factory,
        lambda db: db.query(Cell.id)
        .filter(
            Cell.status == CellStatus.VOTING.value,
            Cell.voting_deadline.is_not(None),
            Cell.voting_deadline <= now,
        )
        .order_by(Cell.tier, Cell.id)
        .all(),
    )

    async def expire(db: Session, cell_id: int) -> None:
        await process_cell_results(db, cell_id, is_timeout=True, effects=effects, queue=queue, rng=rng)

    return await _run_each(session_factory, "cells", ids, expire)


async def process_expired_accumulations(
    session_factory: SessionFactory = SessionLocal,
    effects: EffectDispatcher | None = None,
    rng: random.Random | None = None,
) -> list[int]:
    """Start a challenge round where the accumulation window has closed."""
    now = utc_now()
    ids = _expired_ids(
        session_factory,
        lambda db: db.query(Deliberation.id)
        .filter(
            Deliberation.phase == DeliberationPhase.ACCUMULATING.value,
            Deliberation.accumulation_ends_at.is_not(None),
            Deliberation.accumulation_ends_at <= now,
        )
        .all(),
    )

    async def challenge(db: Session, deliberation_id: int) -> None:
        set_deliberation_id(deliberation_id)
        await start_challenge_round(db, deliberation_id, effects=effects, rng=rng)

    return await _run_each(session_factory, "accumulations", ids, challenge)


async def process_all_timers(
    session_factory: SessionFactory = SessionLocal,
    effects: EffectDispatcher | None = None,
    queue: AdvanceQueue | None = None,
    rng: random.Random | None = None,
) -> dict[str, int]:
    """
    Run every sweep once, then drain the advance queue.

    Continuous-flow follow-ups wait on ``queue`` (the process-wide queue when
    none is given). A queue whose worker was started drains itself; any
    other queue is drained here with its own session factory.

    Returns:
        Number of items handled per sweep
    """
    set_correlation_id(uuid.uuid4().hex)
    with trace_span("tierflow.process_all_timers"):
        submissions = await process_expired_submissions(session_factory, effects, rng)
        discussions = await process_expired_discussions(session_factory)
        cells = await process_expired_cells(session_factory, effects, queue, rng)
        accumulations = await process_expired_accumulations(session_factory, effects, rng)
        advance_queue = queue if queue is not None else get_advance_queue()
        advances = 0 if advance_queue.running else await advance_queue.run_pending()

    counts = {
        "submissions": len(submissions),
        "discussions": len(discussions),
        "cells": len(cells),
        "accumulations": len(accumulations),
        "advances": advances,
    }
    if any(counts.values()):
        logger.info("Timer sweep: %s", counts)
    return counts


async def run_timers(
    interval: float,
    session_factory: SessionFactory = SessionLocal,
    effects: EffectDispatcher | None = None,
    queue: AdvanceQueue | None = None,
    rng: random.Random | None = None,
) -> None:
    """Sweep every ``interval`` seconds until cancelled."""
    logger.info("Timer loop started (every %.1fs)", interval)
    while True:
        try:
            await process_all_timers(session_factory, effects, queue, rng)
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("Timer loop received cancellation signal")
            break
        except Exception as e:
            logger.error("Timer loop error: %s", e, exc_info=True)
            await asyncio.sleep(interval)


# ---------------------------------------------------------------------------
# Facilitator overrides
# ---------------------------------------------------------------------------

async def force_complete_cell(
    db: Session,
    cell_id: int,
    effects: EffectDispatcher | None = None,
    queue: AdvanceQueue | None = None,
    rng: random.Random | None = None,
) -> CellOutcome | None:
    """Complete a cell now, even with no votes (then every idea ties)."""
    return await process_cell_results(
        db, cell_id, is_timeout=True, force=True, effects=effects, queue=queue, rng=rng
    )


async def open_discussed_cells(db: Session, deliberation_id: int) -> int:
    """End open-ended discussion: move every DELIBERATING cell to VOTING."""
    ids = [
        cell_id
        for (cell_id,) in db.query(Cell.id)
        .filter(Cell.deliberation_id == deliberation_id, Cell.status == CellStatus.DELIBERATING.value)
        .all()
    ]
    return sum(1 for cell_id in ids if open_cell_for_voting(db, cell_id))


async def force_end_tier(
    db: Session,
    deliberation_id: int,
    effects: EffectDispatcher | None = None,
    queue: AdvanceQueue | None = None,
    rng: random.Random | None = None,
) -> list[CellOutcome]:
    """
    Complete every open cell of the current tier.

    The last completion hands off to tier completion as usual, so the
    deliberation advances (or crowns a champion) once.

    Raises:
        PreconditionError: WRONG_PHASE unless voting, CELL_NOT_VOTING when
            the tier has no open cells
    """
    effects = effects or get_effects()
    deliberation = load_deliberation(db, deliberation_id)
    if deliberation.phase != DeliberationPhase.VOTING:
        raise PreconditionError(ReasonCode.WRONG_PHASE, f"Deliberation is {deliberation.phase}, not VOTING")

    tier = deliberation.current_tier
    open_ids = [
        cell_id
        for (cell_id,) in db.query(Cell.id)
        .filter(
            Cell.deliberation_id == deliberation_id,
            Cell.tier == tier,
            Cell.challenge_round == deliberation.challenge_round,
            Cell.status.in_([s.value for s in OPEN_CELL_STATUSES]),
        )
        .order_by(Cell.id)
        .all()
    ]
    if not open_ids:
        raise PreconditionError(ReasonCode.CELL_NOT_VOTING, f"No open cells at tier {tier}")

    logger.info("Facilitator ends tier %d (%d open cells)", tier, len(open_ids))
    outcomes = []
    for cell_id in open_ids:
        outcome = await force_complete_cell(db, cell_id, effects=effects, queue=queue, rng=rng)
        if outcome is not None:
            outcomes.append(outcome)
    return outcomes
