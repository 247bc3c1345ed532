"""Persistence models for the tierflow engine."""

from .cell import Cell, CellIdea, CellParticipation
from .comment import Comment
from .deliberation import Deliberation
from .idea import Idea
from .member import DeliberationMember
from .prediction import Prediction
from .user import User
from .vote import Vote
from .webhook import WebhookSubscription

__all__ = [
    "Cell",
    "CellIdea",
    "CellParticipation",
    "Comment",
    "Deliberation",
    "DeliberationMember",
    "Idea",
    "Prediction",
    "User",
    "Vote",
    "WebhookSubscription",
]
