"""
Vote data model
"""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, UniqueConstraint
from sqlalchemy.orm import relationship

from ..database import Base, utc_now


class Vote(Base):
    """XP a user gave one idea inside one cell; a ballot is a user's rows for a cell"""
    __tablename__ = "votes"
    __table_args__ = (UniqueConstraint("cell_id", "user_id", "idea_id"),)

    id = Column(Integer, primary_key=True, index=True)
    cell_id = Column(Integer, ForeignKey("cells.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    idea_id = Column(Integer, ForeignKey("ideas.id"), nullable=False, index=True)
    xp_points = Column(Integer, nullable=False)
    voted_at = Column(DateTime, nullable=False, default=utc_now)

    # Relationships
    cell = relationship("Cell", back_populates="votes")
