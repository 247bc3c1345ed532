"""Shared test fixtures and configuration.

Sets environment variables before any tierflow modules are imported so the
module-level engine never points at a real database file.
"""

import os

# Set env vars BEFORE any tierflow imports happen.
# pytest loads conftest.py before test modules, so this runs first.
os.environ.setdefault("TIERFLOW_DATABASE_URL", "sqlite://")
os.environ.setdefault("TIERFLOW_DEFAULT_VOTING_TIMEOUT_MS", "0")

import random
from unittest.mock import AsyncMock

import pytest

from tierflow.database import init_db, make_engine, make_session_factory
from tierflow.models import Cell, CellIdea, CellParticipation, Deliberation, DeliberationMember, Idea, User, Vote
from tierflow.notifications import EffectDispatcher
from tierflow.states import CellStatus, DeliberationPhase, IdeaStatus, MemberRole, ParticipationStatus
from tierflow.work_queue import AdvanceQueue


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
def engine(tmp_path):
    """A fresh SQLite database file per test."""
    engine = make_engine(f"sqlite:///{tmp_path / 'tierflow.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

@pytest.fixture
def notifier():
    """Notifier double; every method is an AsyncMock."""
    return AsyncMock()


@pytest.fixture
def events():
    """Event sink double standing in for the webhook dispatcher."""
    return AsyncMock()


@pytest.fixture
def effects(notifier, events):
    return EffectDispatcher(notifier=notifier, events=events)


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def queue(session_factory, effects, rng):
    return AdvanceQueue(session_factory=session_factory, effects=effects, rng=rng, worker_name="test-worker")


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_users(db):
    """Create ``count`` users."""

    def _make(count, prefix="user"):
        users = [User(name=f"{prefix}-{i}") for i in range(count)]
        db.add_all(users)
        db.commit()
        return users

    return _make


@pytest.fixture
def make_deliberation(db):
    """Create a deliberation; timers are off unless asked for."""

    def _make(**kwargs):
        kwargs.setdefault("question", "Where should the team offsite be?")
        kwargs.setdefault("voting_timeout_ms", 0)
        deliberation = Deliberation(**kwargs)
        db.add(deliberation)
        db.commit()
        return deliberation

    return _make


@pytest.fixture
def add_members(db, make_users):
    """Create ``count`` users and make them participants of a deliberation."""

    def _add(deliberation, count, role=MemberRole.PARTICIPANT):
        users = make_users(count, prefix=f"member-{deliberation.id}")
        db.add_all(
            DeliberationMember(deliberation_id=deliberation.id, user_id=u.id, role=role.value) for u in users
        )
        db.commit()
        return users

    return _add


@pytest.fixture
def add_ideas(db):
    """Create ideas directly in a given status and tier."""

    def _add(deliberation, count, status=IdeaStatus.SUBMITTED, tier=0, authors=None, **kwargs):
        ideas = [
            Idea(
                deliberation_id=deliberation.id,
                text=f"idea {i}",
                status=status.value,
                tier=tier,
                author_id=authors[i].id if authors else None,
                **kwargs,
            )
            for i in range(count)
        ]
        db.add_all(ideas)
        db.commit()
        return ideas

    return _add


@pytest.fixture
def add_cell(db):
    """Create a cell with a fixed idea set and seated users."""

    def _add(deliberation, tier, ideas, users=(), status=CellStatus.VOTING, **kwargs):
        cell = Cell(deliberation_id=deliberation.id, tier=tier, status=status.value, **kwargs)
        cell.cell_ideas = [CellIdea(idea_id=idea.id) for idea in ideas]
        cell.participants = [CellParticipation(user_id=u.id) for u in users]
        db.add(cell)
        db.commit()
        return cell

    return _add


@pytest.fixture
def add_votes(db):
    """Insert raw vote rows: ``{user: {idea: xp}}``; marks the seats VOTED."""

    def _add(cell, ballots):
        for user, allocation in ballots.items():
            for idea, xp in allocation.items():
                db.add(Vote(cell_id=cell.id, user_id=user.id, idea_id=idea.id, xp_points=xp))
            seat = (
                db.query(CellParticipation)
                .filter(CellParticipation.cell_id == cell.id, CellParticipation.user_id == user.id)
                .first()
            )
            if seat is not None:
                seat.status = ParticipationStatus.VOTED.value
        db.commit()

    return _add


@pytest.fixture
def voting_deliberation(make_deliberation):
    """Factory for a deliberation already in VOTING at ``tier``."""

    def _make(tier=1, **kwargs):
        return make_deliberation(phase=DeliberationPhase.VOTING.value, current_tier=tier, **kwargs)

    return _make
