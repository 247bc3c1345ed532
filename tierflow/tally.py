"""Pure XP tallying and winner selection."""

import random
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from . import config


@dataclass
class TallyResult:
    """Winners and losers of one cell's vote."""

    winner_ids: list[int]
    loser_ids: list[int]
    xp_by_idea: dict[int, int] = field(default_factory=dict)
    all_advance: bool = False


def sum_xp(idea_ids: Iterable[int], votes: Iterable[tuple[int, int]]) -> dict[int, int]:
    """
    Sum XP per idea.

    Args:
        idea_ids: Ideas on the ballot; each starts at 0
        votes: (idea_id, xp_points) pairs; votes for ideas off the ballot are ignored

    Returns:
        Dict of idea_id -> total XP
    """
    totals = {idea_id: 0 for idea_id in idea_ids}
    for idea_id, xp_points in votes:
        if idea_id in totals:
            totals[idea_id] += xp_points
    return totals


def resolve_winners(
    idea_ids: Sequence[int],
    xp_by_idea: dict[int, int],
    voter_count: int,
    min_xp: int | None = None,
) -> TallyResult:
    """
    Decide a single cell's winners.

    With at most one distinct voter, ideas below ``min_xp`` (default
    TIERFLOW_MIN_XP_TO_ADVANCE) cannot win. When no idea qualifies, or nobody
    voted, every idea advances. Otherwise all ideas at the top qualifying XP
    win and the rest lose.
    """
    ordered = list(idea_ids)
    if voter_count == 0 or not any(xp_by_idea.get(i, 0) for i in ordered):
        return TallyResult(winner_ids=ordered, loser_ids=[], xp_by_idea=dict(xp_by_idea), all_advance=True)

    if min_xp is None:
        min_xp = config.MIN_XP_TO_ADVANCE
    threshold = min_xp if voter_count <= 1 else 0
    qualifying = [i for i in ordered if xp_by_idea.get(i, 0) >= threshold]
    if not qualifying:
        return TallyResult(winner_ids=ordered, loser_ids=[], xp_by_idea=dict(xp_by_idea), all_advance=True)

    top = max(xp_by_idea.get(i, 0) for i in qualifying)
    winners = [i for i in qualifying if xp_by_idea.get(i, 0) == top]
    losers = [i for i in ordered if i not in winners]
    return TallyResult(winner_ids=winners, loser_ids=losers, xp_by_idea=dict(xp_by_idea))


def pick_batch_winner(
    idea_ids: Sequence[int],
    xp_by_idea: dict[int, int],
    rng: random.Random | None = None,
) -> int:
    """Pick one winner, drawing at random among ideas tied at the top."""
    if not idea_ids:
        raise ValueError("Cannot pick a winner from an empty idea set")
    rng = rng or random.Random()
    top = max(xp_by_idea.get(i, 0) for i in idea_ids)
    leaders = sorted(i for i in idea_ids if xp_by_idea.get(i, 0) == top)
    return leaders[0] if len(leaders) == 1 else rng.choice(leaders)
