"""
Idea data model
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from ..database import Base, utc_now
from ..states import IdeaStatus


class Idea(Base):
    """A proposal competing through the tiers"""
    __tablename__ = "ideas"

    id = Column(Integer, primary_key=True, index=True)
    deliberation_id = Column(Integer, ForeignKey("deliberations.id"), nullable=False, index=True)
    author_id = Column(Integer, ForeignKey("users.id"), nullable=True)   # AI or anonymous ideas have none
    text = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default=IdeaStatus.SUBMITTED.value)
    tier = Column(Integer, nullable=False, default=0)                    # tier contested or last contested
    total_xp = Column(Integer, nullable=False, default=0)
    losses = Column(Integer, nullable=False, default=0)
    is_champion = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    # Relationships
    deliberation = relationship("Deliberation", back_populates="ideas")
