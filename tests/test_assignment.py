"""Tests for tierflow.assignment: starting votes, seating, cell entry, submission."""

import pytest

from tierflow.assignment import enter_cell, start_voting_phase, submit_idea
from tierflow.cells import plan_cells, seat_members
from tierflow.errors import PreconditionError, ReasonCode
from tierflow.models import Cell, CellParticipation, DeliberationMember, Idea
from tierflow.states import AllocationMode, CellStatus, DeliberationPhase, IdeaStatus, MemberRole, ParticipationStatus


# ---------------------------------------------------------------------------
# Planning and seating (pure)
# ---------------------------------------------------------------------------

class TestPlanCells:
    """Tests for plan_cells."""

    def test_groups_match_cells(self):
        """Enough ideas: one idea group per cell, no batches."""
        plans = plan_cells(list(range(10)), member_count=10, cell_size=5)
        assert [len(p.idea_ids) for p in plans] == [5, 5]
        assert all(p.batch is None for p in plans)

    def test_fewer_groups_than_cells_share_batches(self):
        """Cells beyond the idea groups vote on copies and share a batch."""
        plans = plan_cells(list(range(4)), member_count=15, cell_size=5)
        assert len(plans) == 3
        assert all(p.idea_ids == [0, 1, 2, 3] for p in plans)
        assert {p.batch for p in plans} == {0}

    def test_shared_showdown(self):
        """A showdown gives every cell every idea."""
        plans = plan_cells([1, 2, 3, 4, 5], member_count=10, cell_size=5, shared_showdown=True)
        assert len(plans) == 2
        assert all(p.idea_ids == [1, 2, 3, 4, 5] for p in plans)
        assert all(p.batch == 0 for p in plans)


class TestSeatMembers:
    """Tests for seat_members."""

    def test_authors_avoid_own_ideas(self):
        """Each author lands in the cell not holding their idea."""
        plans = plan_cells([1, 2, 3, 4, 5, 6], member_count=6, cell_size=3)
        author_of = {1: 101, 2: 102, 4: 104}
        seats = seat_members([101, 102, 104, 200, 201, 202], plans, author_of)
        for index, plan in enumerate(plans):
            for idea_id in plan.idea_ids:
                assert author_of.get(idea_id) not in seats[index]

    def test_capacity_respected(self):
        """Planned member counts are filled exactly."""
        plans = plan_cells(list(range(8)), member_count=8, cell_size=4)
        seats = seat_members(list(range(100, 108)), plans, {})
        assert [len(s) for s in seats] == [p.member_count for p in plans]

    def test_falls_back_when_no_conflict_free_seat(self):
        """An author of ideas in every cell is still seated."""
        plans = plan_cells([1, 2, 3, 4, 5, 6], member_count=6, cell_size=3)
        author_of = {plans[0].idea_ids[0]: 7, plans[1].idea_ids[0]: 7}
        seats = seat_members([7, 8, 9, 10, 11, 12], plans, author_of)
        assert sum(s.count(7) for s in seats) == 1


# ---------------------------------------------------------------------------
# start_voting_phase
# ---------------------------------------------------------------------------

class TestStartVotingPhase:
    """Tests for start_voting_phase."""

    @pytest.mark.asyncio
    async def test_eleven_ideas_twelve_members(self, db, make_deliberation, add_members, add_ideas, effects, rng):
        """11 ideas / 12 members / size 5: cells of 5 and 7, each idea once, no author with own idea."""
        deliberation = make_deliberation(cell_size=5)
        members = add_members(deliberation, 12)
        ideas = add_ideas(deliberation, 11, authors=members)

        cells = await start_voting_phase(db, deliberation.id, effects=effects, rng=rng)

        assert sorted(len(c.participants) for c in cells) == [5, 7]
        placed = [ci.idea_id for c in cells for ci in c.cell_ideas]
        assert sorted(placed) == sorted(i.id for i in ideas)

        author_of = {i.id: i.author_id for i in ideas}
        for cell in cells:
            seated = {p.user_id for p in cell.participants}
            assert not seated & {author_of[idea_id] for idea_id in cell.idea_ids}

        db.expire_all()
        assert deliberation.phase == DeliberationPhase.VOTING
        assert deliberation.current_tier == 1
        assert all(i.status == IdeaStatus.IN_VOTING and i.tier == 1 for i in ideas)
        assert all(c.status == CellStatus.VOTING for c in cells)

    @pytest.mark.asyncio
    async def test_single_idea_wins_immediately(self, db, make_deliberation, add_members, add_ideas, effects):
        """One submitted idea skips voting and becomes champion."""
        deliberation = make_deliberation()
        add_members(deliberation, 3)
        (idea,) = add_ideas(deliberation, 1)

        cells = await start_voting_phase(db, deliberation.id, effects=effects)

        assert cells == []
        db.expire_all()
        assert deliberation.phase == DeliberationPhase.COMPLETED
        assert deliberation.champion_id == idea.id
        assert idea.status == IdeaStatus.WINNER
        assert idea.is_champion is True
        assert db.query(Cell).count() == 0

    @pytest.mark.asyncio
    async def test_no_ideas_leaves_deliberation_unchanged(self, db, make_deliberation, add_members, effects):
        """Starting with no ideas fails with NO_IDEAS and changes nothing."""
        deliberation = make_deliberation()
        add_members(deliberation, 3)

        with pytest.raises(PreconditionError) as exc_info:
            await start_voting_phase(db, deliberation.id, effects=effects)

        assert exc_info.value.reason == ReasonCode.NO_IDEAS
        db.expire_all()
        assert deliberation.phase == DeliberationPhase.SUBMISSION
        assert deliberation.current_tier == 0

    @pytest.mark.asyncio
    async def test_batch_mode_needs_members(self, db, make_deliberation, add_ideas, effects):
        """Batch mode with nobody to seat fails before the phase changes."""
        deliberation = make_deliberation()
        add_ideas(deliberation, 3)

        with pytest.raises(PreconditionError) as exc_info:
            await start_voting_phase(db, deliberation.id, effects=effects)

        assert exc_info.value.reason == ReasonCode.INSUFFICIENT_PARTICIPANTS
        db.expire_all()
        assert deliberation.phase == DeliberationPhase.SUBMISSION

    @pytest.mark.asyncio
    async def test_wrong_phase(self, db, voting_deliberation, effects):
        """Only SUBMISSION can start voting."""
        deliberation = voting_deliberation()
        with pytest.raises(PreconditionError) as exc_info:
            await start_voting_phase(db, deliberation.id, effects=effects)
        assert exc_info.value.reason == ReasonCode.WRONG_PHASE

    @pytest.mark.asyncio
    async def test_second_start_is_rejected(self, db, make_deliberation, add_members, add_ideas, effects, rng):
        """A repeated start cannot create a second set of tier-1 cells."""
        deliberation = make_deliberation(cell_size=3)
        add_members(deliberation, 3)
        add_ideas(deliberation, 3)

        await start_voting_phase(db, deliberation.id, effects=effects, rng=rng)
        with pytest.raises(PreconditionError):
            await start_voting_phase(db, deliberation.id, effects=effects, rng=rng)

        assert db.query(Cell).filter(Cell.tier == 1).count() == 1

    @pytest.mark.asyncio
    async def test_fcfs_creates_idea_only_cells(self, db, make_deliberation, add_ideas, effects, rng):
        """FCFS cells start with ideas and no seats."""
        deliberation = make_deliberation(cell_size=5, allocation_mode=AllocationMode.FCFS.value)
        add_ideas(deliberation, 7)

        cells = await start_voting_phase(db, deliberation.id, effects=effects, rng=rng)

        assert sorted(len(c.cell_ideas) for c in cells) == [3, 4]
        assert all(c.participants == [] for c in cells)

    @pytest.mark.asyncio
    async def test_notifies_members(self, db, make_deliberation, add_members, add_ideas, effects, notifier, rng):
        """Members hear that voting started; seated users get their cell."""
        deliberation = make_deliberation(cell_size=3)
        add_members(deliberation, 3)
        add_ideas(deliberation, 3)

        await start_voting_phase(db, deliberation.id, effects=effects, rng=rng)
        await effects.drain()

        kinds = [c.args[1] for c in notifier.notify_deliberation_members.await_args_list]
        assert "voting_started" in kinds
        assert notifier.notify_user.await_count == 3


# ---------------------------------------------------------------------------
# enter_cell
# ---------------------------------------------------------------------------

class TestEnterCell:
    """Tests for enter_cell."""

    @pytest.fixture
    def fcfs(self, make_deliberation, add_members, add_ideas):
        deliberation = make_deliberation(cell_size=3, allocation_mode=AllocationMode.FCFS.value)
        users = add_members(deliberation, 8)
        add_ideas(deliberation, 3)
        return deliberation, users

    @pytest.mark.asyncio
    async def test_joins_and_returns_same_cell(self, db, fcfs, effects, rng):
        """Entering twice returns the member's open cell."""
        deliberation, users = fcfs
        await start_voting_phase(db, deliberation.id, effects=effects, rng=rng)

        first = await enter_cell(db, deliberation.id, users[0].id, effects=effects)
        again = await enter_cell(db, deliberation.id, users[0].id, effects=effects)

        assert first.id == again.id
        assert db.query(CellParticipation).filter(CellParticipation.user_id == users[0].id).count() == 1

    @pytest.mark.asyncio
    async def test_full_cell_spawns_batch_copy(self, db, fcfs, effects, rng):
        """Once the only cell is full, the next member gets a copy of its ideas."""
        deliberation, users = fcfs
        (original,) = await start_voting_phase(db, deliberation.id, effects=effects, rng=rng)

        for user in users[:3]:
            await enter_cell(db, deliberation.id, user.id, effects=effects)
        overflow = await enter_cell(db, deliberation.id, users[3].id, effects=effects)

        assert overflow.id != original.id
        assert overflow.idea_ids == original.idea_ids
        assert overflow.tier == 1

    @pytest.mark.asyncio
    async def test_non_member_rejected(self, db, fcfs, make_users, effects, rng):
        """Outsiders cannot enter."""
        deliberation, _ = fcfs
        await start_voting_phase(db, deliberation.id, effects=effects, rng=rng)
        (stranger,) = make_users(1, prefix="stranger")

        with pytest.raises(PreconditionError) as exc_info:
            await enter_cell(db, deliberation.id, stranger.id, effects=effects)
        assert exc_info.value.reason == ReasonCode.NOT_A_PARTICIPANT

    @pytest.mark.asyncio
    async def test_observer_rejected(self, db, fcfs, add_members, effects, rng):
        """Observers are members but never take seats."""
        deliberation, _ = fcfs
        (observer,) = add_members(deliberation, 1, role=MemberRole.OBSERVER)
        await start_voting_phase(db, deliberation.id, effects=effects, rng=rng)

        with pytest.raises(PreconditionError) as exc_info:
            await enter_cell(db, deliberation.id, observer.id, effects=effects)
        assert exc_info.value.reason == ReasonCode.NOT_A_PARTICIPANT

    @pytest.fixture
    def seated(self, db, make_deliberation, add_members, add_ideas, effects, rng):
        """Batch deliberation voting at tier 1 in cells of 5 and 3, plus one member who joined late."""

        async def _start():
            deliberation = make_deliberation(cell_size=5)
            add_members(deliberation, 8)
            add_ideas(deliberation, 10)
            cells = await start_voting_phase(db, deliberation.id, effects=effects, rng=rng)
            (late,) = add_members(deliberation, 1)
            return deliberation, cells, late

        return _start

    @pytest.mark.asyncio
    async def test_late_joiner_takes_smallest_cell(self, db, seated, effects):
        """A member added after voting started joins the least-populated cell."""
        deliberation, cells, late = await seated()
        smallest = min(cells, key=lambda c: (len(c.participants), c.id))

        cell = await enter_cell(db, deliberation.id, late.id, effects=effects)

        assert cell.id == smallest.id
        db.expire_all()
        assert len(smallest.participants) == 4
        assert await enter_cell(db, deliberation.id, late.id, effects=effects) == cell

    @pytest.mark.asyncio
    async def test_late_joiner_avoids_own_idea(self, db, seated, effects):
        """The smallest cell is skipped when it contains the joiner's idea."""
        deliberation, cells, late = await seated()
        smallest, largest = sorted(cells, key=lambda c: len(c.participants))
        own = db.get(Idea, min(smallest.idea_ids))
        own.author_id = late.id
        db.commit()

        cell = await enter_cell(db, deliberation.id, late.id, effects=effects)

        assert cell.id == largest.id

    @pytest.mark.asyncio
    async def test_seated_member_who_voted(self, db, seated, effects):
        """A member who already voted this tier gets no second seat."""
        deliberation, cells, _ = await seated()
        cell = cells[0]
        seat = cell.participants[0]
        seat.status = ParticipationStatus.VOTED.value
        db.commit()

        with pytest.raises(PreconditionError) as exc_info:
            await enter_cell(db, deliberation.id, seat.user_id, effects=effects)
        assert exc_info.value.reason == ReasonCode.ALREADY_VOTED_THIS_TIER

    @pytest.mark.asyncio
    async def test_no_open_cells(self, db, voting_deliberation, add_members, effects):
        """A batch deliberation with no open cells at its tier cannot seat anyone."""
        deliberation = voting_deliberation()
        (member,) = add_members(deliberation, 1)
        with pytest.raises(PreconditionError) as exc_info:
            await enter_cell(db, deliberation.id, member.id, effects=effects)
        assert exc_info.value.reason == ReasonCode.NO_IDEAS_IN_TIER


# ---------------------------------------------------------------------------
# submit_idea
# ---------------------------------------------------------------------------

class TestSubmitIdea:
    """Tests for submit_idea."""

    @pytest.mark.asyncio
    async def test_submission_phase(self, db, make_deliberation, make_users, effects, events):
        """Ideas wait as SUBMITTED and their author joins the deliberation."""
        deliberation = make_deliberation()
        (author,) = make_users(1)

        idea = await submit_idea(db, deliberation.id, "  Lisbon  ", author_id=author.id, effects=effects)
        await effects.drain()

        assert idea.status == IdeaStatus.SUBMITTED
        assert idea.text == "Lisbon"
        member = db.query(DeliberationMember).filter(DeliberationMember.user_id == author.id).one()
        assert member.role == MemberRole.PARTICIPANT
        events.fire_event.assert_awaited_once()
        assert events.fire_event.await_args.args[0] == "idea_submitted"

    @pytest.mark.asyncio
    async def test_accumulating_makes_pending_challenger(self, db, make_deliberation, effects):
        """While a champion stands, new ideas are PENDING challengers."""
        deliberation = make_deliberation(phase=DeliberationPhase.ACCUMULATING.value)
        idea = await submit_idea(db, deliberation.id, "Porto", effects=effects)
        assert idea.status == IdeaStatus.PENDING

    @pytest.mark.asyncio
    async def test_batch_voting_rejects(self, db, voting_deliberation, effects):
        """A voting batch deliberation takes no new ideas."""
        deliberation = voting_deliberation()
        with pytest.raises(PreconditionError) as exc_info:
            await submit_idea(db, deliberation.id, "Late idea", effects=effects)
        assert exc_info.value.reason == ReasonCode.WRONG_PHASE

    @pytest.mark.asyncio
    async def test_continuous_flow_closed(self, db, voting_deliberation, effects):
        """Closed continuous-flow submissions are refused."""
        deliberation = voting_deliberation(continuous_flow=True, submissions_closed=True)
        with pytest.raises(PreconditionError) as exc_info:
            await submit_idea(db, deliberation.id, "Too late", effects=effects)
        assert exc_info.value.reason == ReasonCode.SUBMISSIONS_CLOSED

    @pytest.mark.asyncio
    async def test_continuous_flow_forms_cell_when_group_fills(self, db, voting_deliberation, effects):
        """The submission that completes a group forms a tier-1 cell."""
        deliberation = voting_deliberation(continuous_flow=True, cell_size=3)

        for text in ("a", "b"):
            await submit_idea(db, deliberation.id, text, effects=effects)
        assert db.query(Cell).count() == 0

        await submit_idea(db, deliberation.id, "c", effects=effects)
        cells = db.query(Cell).all()
        assert len(cells) == 1
        assert cells[0].tier == 1
        assert db.query(Idea).filter(Idea.status == IdeaStatus.IN_VOTING.value).count() == 3

    @pytest.mark.asyncio
    async def test_empty_text(self, db, make_deliberation, effects):
        """Blank ideas are rejected."""
        deliberation = make_deliberation()
        with pytest.raises(ValueError):
            await submit_idea(db, deliberation.id, "   ", effects=effects)
