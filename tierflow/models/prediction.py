"""
Prediction data model
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer

from ..database import Base, utc_now


class Prediction(Base):
    """A user's bet on an idea, for one cell or for the whole deliberation"""
    __tablename__ = "predictions"

    id = Column(Integer, primary_key=True, index=True)
    deliberation_id = Column(Integer, ForeignKey("deliberations.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    cell_id = Column(Integer, ForeignKey("cells.id"), nullable=True, index=True)
    predicted_idea_id = Column(Integer, ForeignKey("ideas.id"), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    # Write-once resolution fields
    won_immediate = Column(Boolean, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    idea_became_champion = Column(Boolean, nullable=True)
    idea_final_tier = Column(Integer, nullable=True)
