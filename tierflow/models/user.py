"""
User data model
"""

from sqlalchemy import Column, DateTime, Integer, String

from ..database import Base, utc_now


class User(Base):
    """A voter; carries the prediction scoreboard"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    correct_predictions = Column(Integer, nullable=False, default=0)
    current_streak = Column(Integer, nullable=False, default=0)
    best_streak = Column(Integer, nullable=False, default=0)
    champion_picks = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utc_now)
