"""
Cell data models
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from ..database import Base, utc_now
from ..states import CellStatus, ParticipationStatus


class Cell(Base):
    """A discussion/voting group for one tier"""
    __tablename__ = "cells"

    id = Column(Integer, primary_key=True, index=True)
    deliberation_id = Column(Integer, ForeignKey("deliberations.id"), nullable=False, index=True)
    tier = Column(Integer, nullable=False)
    batch = Column(Integer, nullable=True)           # cells sharing a batch vote on the same ideas
    challenge_round = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=CellStatus.VOTING.value)
    discussion_ends_at = Column(DateTime, nullable=True)
    voting_started_at = Column(DateTime, nullable=True)
    voting_deadline = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    completed_by_timeout = Column(Boolean, nullable=False, default=False)  # also "deadline extended once"
    created_at = Column(DateTime, nullable=False, default=utc_now)

    # Relationships
    deliberation = relationship("Deliberation", back_populates="cells")
    cell_ideas = relationship("CellIdea", back_populates="cell", order_by="CellIdea.id")
    participants = relationship("CellParticipation", back_populates="cell", order_by="CellParticipation.id")
    votes = relationship("Vote", back_populates="cell")

    @property
    def idea_ids(self) -> frozenset[int]:
        """The fixed idea set this cell votes on."""
        return frozenset(ci.idea_id for ci in self.cell_ideas)

    @property
    def is_open(self) -> bool:
        return self.status != CellStatus.COMPLETED.value


class CellIdea(Base):
    """An idea assigned to a cell at creation"""
    __tablename__ = "cell_ideas"
    __table_args__ = (UniqueConstraint("cell_id", "idea_id"),)

    id = Column(Integer, primary_key=True, index=True)
    cell_id = Column(Integer, ForeignKey("cells.id"), nullable=False, index=True)
    idea_id = Column(Integer, ForeignKey("ideas.id"), nullable=False, index=True)

    # Relationships
    cell = relationship("Cell", back_populates="cell_ideas")
    idea = relationship("Idea")


class CellParticipation(Base):
    """A user seated in a cell"""
    __tablename__ = "cell_participations"
    __table_args__ = (UniqueConstraint("cell_id", "user_id"),)

    id = Column(Integer, primary_key=True, index=True)
    cell_id = Column(Integer, ForeignKey("cells.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    status = Column(String(10), nullable=False, default=ParticipationStatus.ACTIVE.value)
    joined_at = Column(DateTime, nullable=False, default=utc_now)
    voted_at = Column(DateTime, nullable=True)

    # Relationships
    cell = relationship("Cell", back_populates="participants")
