"""XP ballots: validation and casting."""

import logging
import random
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field, ValidationError, model_validator
from sqlalchemy import func
from sqlalchemy.orm import Session

from .cell_results import CellOutcome, process_cell_results
from .cells import load_deliberation
from .config import XP_PER_BALLOT
from .database import utc_now
from .errors import PreconditionError, ReasonCode
from .models import Cell, CellParticipation, Idea, Vote
from .notifications import EffectDispatcher, get_effects
from .states import CellStatus, ParticipationStatus
from .telemetry import trace_span
from .work_queue import AdvanceQueue

logger = logging.getLogger(__name__)


class Allocation(BaseModel):
    """XP given to one idea."""

    idea_id: int
    xp_points: int = Field(ge=1, le=XP_PER_BALLOT)


class Ballot(BaseModel):
    """A full ballot: every point spent, at least 1 XP per idea, no idea twice."""

    allocations: list[Allocation] = Field(min_length=1)

    @model_validator(mode="after")
    def check_totals(self) -> "Ballot":
        idea_ids = [a.idea_id for a in self.allocations]
        if len(set(idea_ids)) != len(idea_ids):
            raise ValueError("Each idea may appear only once on a ballot")
        total = sum(a.xp_points for a in self.allocations)
        if total != XP_PER_BALLOT:
            raise ValueError(f"Ballot must allocate exactly {XP_PER_BALLOT} XP, got {total}")
        return self


@dataclass
class VoteReceipt:
    """Result of casting a ballot."""

    cell_id: int
    user_id: int
    allocations: dict[int, int]
    cell_outcome: CellOutcome | None = None


def parse_ballot(allocations: Ballot | list[Any] | dict[int, int]) -> Ballot:
    """Build a Ballot from a model, a list of allocations, or an idea -> XP dict."""
    if isinstance(allocations, Ballot):
        return allocations
    if isinstance(allocations, dict):
        allocations = [{"idea_id": k, "xp_points": v} for k, v in allocations.items()]
    try:
        return Ballot(allocations=allocations)
    except ValidationError as e:
        raise PreconditionError(ReasonCode.INVALID_BALLOT, str(e)) from e


def is_cell_full(db: Session, cell: Cell, cell_size: int, fcfs: bool) -> bool:
    """Batch cells finish when every seated member voted, FCFS cells at ``cell_size`` voters."""
    voted = (
        db.query(func.count(CellParticipation.id))
        .filter(
            CellParticipation.cell_id == cell.id,
            CellParticipation.status == ParticipationStatus.VOTED.value,
        )
        .scalar()
        or 0
    )
    if fcfs:
        return voted >= cell_size
    seated = db.query(func.count(CellParticipation.id)).filter(CellParticipation.cell_id == cell.id).scalar()
    return seated > 0 and voted >= seated


async def cast_vote(
    db: Session,
    cell_id: int,
    user_id: int,
    allocations: Ballot | list[Any] | dict[int, int],
    effects: EffectDispatcher | None = None,
    queue: AdvanceQueue | None = None,
    rng: random.Random | None = None,
) -> VoteReceipt:
    """
    Record a user's ballot in a cell, replacing any earlier one.

    When the ballot completes the cell (all seated members voted, or
    ``cell_size`` voters in an FCFS cell) the cell is processed right away.

    Raises:
        PreconditionError: NOT_FOUND, CELL_NOT_VOTING, NOT_A_PARTICIPANT,
            INVALID_BALLOT or ALREADY_VOTED_THIS_TIER
    """
    effects = effects or get_effects()
    ballot = parse_ballot(allocations)

    with trace_span("tierflow.cast_vote", {"cell.id": cell_id, "user.id": user_id}):
        cell = db.get(Cell, cell_id)
        if cell is None:
            raise PreconditionError(ReasonCode.NOT_FOUND, f"Cell {cell_id} not found")
        deliberation = load_deliberation(db, cell.deliberation_id)
        if cell.status != CellStatus.VOTING:
            raise PreconditionError(ReasonCode.CELL_NOT_VOTING, f"Cell {cell_id} is {cell.status}")

        participation = (
            db.query(CellParticipation)
            .filter(CellParticipation.cell_id == cell_id, CellParticipation.user_id == user_id)
            .first()
        )
        if participation is None:
            raise PreconditionError(ReasonCode.NOT_A_PARTICIPANT, f"User {user_id} is not in cell {cell_id}")

        voted_elsewhere = (
            db.query(CellParticipation.id)
            .join(Cell, Cell.id == CellParticipation.cell_id)
            .filter(
                Cell.deliberation_id == cell.deliberation_id,
                Cell.tier == cell.tier,
                Cell.challenge_round == cell.challenge_round,
                Cell.id != cell_id,
                CellParticipation.user_id == user_id,
                CellParticipation.status == ParticipationStatus.VOTED.value,
            )
            .first()
        )
        if voted_elsewhere is not None:
            raise PreconditionError(
                ReasonCode.ALREADY_VOTED_THIS_TIER, f"User {user_id} already voted at tier {cell.tier}"
            )

        chosen = {a.idea_id: a.xp_points for a in ballot.allocations}
        off_ballot = set(chosen) - cell.idea_ids
        if off_ballot:
            raise PreconditionError(
                ReasonCode.INVALID_BALLOT, f"Ideas {sorted(off_ballot)} are not in cell {cell_id}"
            )

        now = utc_now()
        previous = db.query(Vote).filter(Vote.cell_id == cell_id, Vote.user_id == user_id).all()
        touched = set(chosen) | {vote.idea_id for vote in previous}
        for vote in previous:
            db.delete(vote)
        db.flush()
        db.add_all(
            Vote(cell_id=cell_id, user_id=user_id, idea_id=idea_id, xp_points=xp, voted_at=now)
            for idea_id, xp in chosen.items()
        )
        participation.status = ParticipationStatus.VOTED.value
        participation.voted_at = now
        db.flush()

        totals = dict(
            db.query(Vote.idea_id, func.sum(Vote.xp_points))
            .filter(Vote.idea_id.in_(sorted(touched)))
            .group_by(Vote.idea_id)
            .all()
        )
        for idea in db.query(Idea).filter(Idea.id.in_(sorted(touched))).all():
            idea.total_xp = int(totals.get(idea.id) or 0)
        db.commit()

        logger.info("User %s voted in cell %s (%s)", user_id, cell_id, "replaced" if previous else "new")
        full = is_cell_full(db, cell, deliberation.cell_size, deliberation.is_fcfs)

    effects.fire_event(
        "vote_cast",
        {"deliberation_id": deliberation.id, "cell_id": cell_id, "user_id": user_id, "allocations": chosen},
    )

    receipt = VoteReceipt(cell_id=cell_id, user_id=user_id, allocations=chosen)
    if full:
        receipt.cell_outcome = await process_cell_results(
            db, cell_id, effects=effects, queue=queue, rng=rng
        )
    return receipt
