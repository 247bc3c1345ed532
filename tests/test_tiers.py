"""Tests for tierflow.tiers: tier completion, backfill, up-pollination."""

import pytest

from tierflow.assignment import enter_cell, start_voting_phase
from tierflow.errors import PreconditionError
from tierflow.models import Cell, Comment
from tierflow.states import AllocationMode, CellStatus, DeliberationPhase, IdeaStatus
from tierflow.tiers import check_tier_completion, up_pollinate
from tierflow.voting import cast_vote


@pytest.fixture
def finished_tier(db, voting_deliberation, add_members, add_ideas, add_cell, add_votes):
    """
    Tier 1 done: three completed cells, winners W1-W3 ADVANCING and
    runners-up D, E, F ELIMINATED with XP 8, 8 and 3.
    """
    deliberation = voting_deliberation(cell_size=5)
    users = add_members(deliberation, 5)
    w1, w2, w3 = add_ideas(deliberation, 3, status=IdeaStatus.ADVANCING, tier=1)
    d, e, f = add_ideas(deliberation, 3, status=IdeaStatus.ELIMINATED, tier=1, losses=1)

    cells = []
    for winner, runner_up, (top, low) in ((w1, d, (12, 8)), (w2, e, (12, 8)), (w3, f, (17, 3))):
        cell = add_cell(deliberation, 1, [winner, runner_up], status=CellStatus.COMPLETED)
        add_votes(cell, {users[0]: {winner: top}, users[1]: {runner_up: low}})
        cells.append(cell)
    return deliberation, users, (w1, w2, w3), (d, e, f), cells


# ---------------------------------------------------------------------------
# check_tier_completion
# ---------------------------------------------------------------------------

class TestCheckTierCompletion:
    """Tests for check_tier_completion."""

    @pytest.mark.asyncio
    async def test_backfill_tied_runners_up(self, db, finished_tier, effects, rng):
        """3 advancing + {D:8, E:8, F:3}: D and E join for a 5-idea showdown."""
        deliberation, _, winners, (d, e, f), _ = finished_tier

        outcome = await check_tier_completion(db, deliberation.id, 1, effects=effects, rng=rng)

        assert outcome.next_tier == 2
        assert sorted(outcome.backfilled_ids) == sorted([d.id, e.id])
        tier_two = db.query(Cell).filter(Cell.tier == 2).all()
        assert len(tier_two) == 1
        assert tier_two[0].idea_ids == frozenset([*(w.id for w in winners), d.id, e.id])
        db.expire_all()
        assert f.status == IdeaStatus.ELIMINATED
        assert d.status == IdeaStatus.IN_VOTING and d.tier == 2
        assert deliberation.current_tier == 2

    @pytest.mark.asyncio
    async def test_advances_only_once(self, db, finished_tier, effects, rng, session_factory):
        """A second completion check for the same tier does nothing."""
        deliberation, *_ = finished_tier

        first = await check_tier_completion(db, deliberation.id, 1, effects=effects, rng=rng)
        other = session_factory()
        try:
            second = await check_tier_completion(other, deliberation.id, 1, effects=effects, rng=rng)
        finally:
            other.close()

        assert first is not None
        assert second is None
        assert db.query(Cell).filter(Cell.tier == 2).count() == 1

    @pytest.mark.asyncio
    async def test_waits_for_open_cells(self, db, finished_tier, add_ideas, add_cell, effects, rng):
        """Nothing happens while any cell of the tier is still voting."""
        deliberation, users, *_ = finished_tier
        pending = add_ideas(deliberation, 2, status=IdeaStatus.IN_VOTING, tier=1)
        add_cell(deliberation, 1, pending, users[:2])

        outcome = await check_tier_completion(db, deliberation.id, 1, effects=effects, rng=rng)

        assert outcome is None
        assert db.query(Cell).filter(Cell.tier == 2).count() == 0
        db.expire_all()
        assert deliberation.current_tier == 1

    @pytest.mark.asyncio
    async def test_fires_tier_complete(self, db, finished_tier, effects, events, notifier, rng):
        """Advancing a tier fires tier_complete and notifies members."""
        deliberation, *_ = finished_tier

        await check_tier_completion(db, deliberation.id, 1, effects=effects, rng=rng)
        await effects.drain()

        kinds = [c.args[0] for c in events.fire_event.await_args_list]
        assert kinds == ["tier_complete"]
        notified = [c.args[1] for c in notifier.notify_deliberation_members.await_args_list]
        assert "tier_advanced" in notified


class TestChampion:
    """Tests for tiers that end with one idea."""

    @pytest.fixture
    def final_tier(self, voting_deliberation, add_members, add_ideas, add_cell):
        def _make(**kwargs):
            deliberation = voting_deliberation(tier=2, cell_size=5, **kwargs)
            users = add_members(deliberation, 3)
            (winner,) = add_ideas(deliberation, 1, status=IdeaStatus.ADVANCING, tier=2)
            (runner_up,) = add_ideas(deliberation, 1, status=IdeaStatus.ELIMINATED, tier=2)
            add_cell(deliberation, 2, [winner, runner_up], users, status=CellStatus.COMPLETED)
            return deliberation, winner

        return _make

    @pytest.mark.asyncio
    async def test_single_advancing_idea_completes(self, db, final_tier, effects, events, rng):
        """One advancing idea is champion and the deliberation completes."""
        deliberation, winner = final_tier()

        outcome = await check_tier_completion(db, deliberation.id, 2, effects=effects, rng=rng)
        await effects.drain()

        assert outcome.champion_id == winner.id
        assert outcome.next_tier is None
        db.expire_all()
        assert deliberation.phase == DeliberationPhase.COMPLETED
        assert deliberation.completed_at is not None
        assert winner.status == IdeaStatus.WINNER
        assert [c.args[0] for c in events.fire_event.await_args_list] == ["winner_declared"]

    @pytest.mark.asyncio
    async def test_accumulation_keeps_deliberation_open(self, db, final_tier, effects, rng):
        """With accumulation the champion stands and the phase is ACCUMULATING."""
        deliberation, winner = final_tier(accumulation_enabled=True, accumulation_timeout_ms=60_000)

        await check_tier_completion(db, deliberation.id, 2, effects=effects, rng=rng)

        db.expire_all()
        assert deliberation.phase == DeliberationPhase.ACCUMULATING
        assert deliberation.accumulation_ends_at is not None
        assert deliberation.champion_id == winner.id
        assert deliberation.champion_entered_tier == 2
        assert deliberation.completed_at is None


# ---------------------------------------------------------------------------
# up_pollinate
# ---------------------------------------------------------------------------

class TestUpPollinate:
    """Tests for up_pollinate."""

    def test_top_comment_moves_up(self, db, voting_deliberation, add_ideas, add_cell, make_users):
        """The most upvoted comment on an advancing idea reaches the next tier."""
        deliberation = voting_deliberation()
        (idea,) = add_ideas(deliberation, 1, status=IdeaStatus.ADVANCING, tier=1)
        cell = add_cell(deliberation, 1, [idea], status=CellStatus.COMPLETED)
        (author,) = make_users(1)
        top = Comment(cell_id=cell.id, user_id=author.id, idea_id=idea.id, text="great", upvote_count=5,
                      tier_upvotes=5, spread_count=2)
        other = Comment(cell_id=cell.id, user_id=author.id, idea_id=idea.id, text="ok", upvote_count=2)
        silent = Comment(cell_id=cell.id, user_id=author.id, idea_id=idea.id, text="meh", upvote_count=0)
        db.add_all([top, other, silent])
        db.commit()

        promoted = up_pollinate(db, 1, [idea.id])
        db.commit()

        assert promoted == [top]
        assert top.reach_tier == 2
        assert top.tier_upvotes == 0
        assert top.spread_count == 0
        assert other.reach_tier == 1

    def test_needs_an_upvote(self, db, voting_deliberation, add_ideas, add_cell, make_users):
        """Comments nobody upvoted stay put."""
        deliberation = voting_deliberation()
        (idea,) = add_ideas(deliberation, 1, status=IdeaStatus.ADVANCING, tier=1)
        cell = add_cell(deliberation, 1, [idea], status=CellStatus.COMPLETED)
        (author,) = make_users(1)
        db.add(Comment(cell_id=cell.id, user_id=author.id, idea_id=idea.id, text="meh"))
        db.commit()

        assert up_pollinate(db, 1, [idea.id]) == []


class TestBackfill:
    """Tests for topping up a small final field."""

    @pytest.mark.asyncio
    async def test_tie_at_cutoff_is_sampled(
        self, db, voting_deliberation, add_members, add_ideas, add_cell, add_votes, effects, rng
    ):
        """2 advancing, D:8 and five ideas tied at 5: D plus two of the tie make a field of 5."""
        deliberation = voting_deliberation(cell_size=5)
        users = add_members(deliberation, 5)
        w1, w2 = add_ideas(deliberation, 2, status=IdeaStatus.ADVANCING, tier=1)
        d, e, f, g, h, i = add_ideas(deliberation, 6, status=IdeaStatus.ELIMINATED, tier=1, losses=1)
        tied = {e.id, f.id, g.id, h.id, i.id}

        first = add_cell(deliberation, 1, [w1, d, e], status=CellStatus.COMPLETED)
        add_votes(first, {users[0]: {w1: 20}, users[1]: {d: 8}, users[2]: {e: 5}})
        second = add_cell(deliberation, 1, [w2, f, g, h, i], status=CellStatus.COMPLETED)
        add_votes(
            second,
            {users[0]: {w2: 20}, users[1]: {f: 5}, users[2]: {g: 5}, users[3]: {h: 5}, users[4]: {i: 5}},
        )

        outcome = await check_tier_completion(db, deliberation.id, 1, effects=effects, rng=rng)

        assert len(outcome.backfilled_ids) == 3
        assert d.id in outcome.backfilled_ids
        sampled = set(outcome.backfilled_ids) - {d.id}
        assert len(sampled) == 2 and sampled <= tied
        (showdown,) = db.query(Cell).filter(Cell.tier == 2).all()
        assert len(showdown.idea_ids) == 5
        db.expire_all()
        left_out = [idea for idea in (e, f, g, h, i) if idea.id not in sampled]
        assert all(idea.status == IdeaStatus.ELIMINATED for idea in left_out)


class TestFcfsToChampion:
    """FCFS deliberations played from the first tier to a champion."""

    @staticmethod
    async def play_tier(db, deliberation, users, effects, rng):
        """Every member who can enter a cell does, then each backs the cell's oldest idea."""
        seats = []
        for user in users:
            try:
                cell = await enter_cell(db, deliberation.id, user.id, effects=effects)
            except PreconditionError:
                continue
            seats.append((user.id, cell.id))
        for user_id, cell_id in seats:
            favourite = min(db.get(Cell, cell_id).idea_ids)
            await cast_vote(db, cell_id, user_id, {favourite: 10}, effects=effects, rng=rng)
        return len(seats)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("cell_size, members", [(3, 12), (4, 12), (5, 15)])
    async def test_small_final_field_shares_one_batch(
        self, db, make_deliberation, add_members, add_ideas, effects, rng, cell_size, members
    ):
        """A final field of at most 7 ideas is voted on whole, so one idea comes out."""
        deliberation = make_deliberation(cell_size=cell_size, allocation_mode=AllocationMode.FCFS.value)
        users = add_members(deliberation, members)
        add_ideas(deliberation, 12)
        await start_voting_phase(db, deliberation.id, effects=effects, rng=rng)

        for _ in range(4):
            db.expire_all()
            if deliberation.phase != DeliberationPhase.VOTING:
                break
            assert await self.play_tier(db, deliberation, users, effects, rng) > 0

        db.expire_all()
        assert deliberation.phase == DeliberationPhase.COMPLETED
        assert deliberation.champion_id is not None
        assert deliberation.current_tier == 2
        assert all(not cell.is_open for cell in db.query(Cell).all())
        final = db.query(Cell).filter(Cell.tier == 2).all()
        assert len({cell.idea_ids for cell in final}) == 1
        assert deliberation.champion_id in final[0].idea_ids
