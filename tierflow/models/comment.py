"""
Comment data model
"""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text

from ..database import Base, utc_now


class Comment(Base):
    """Cell-scoped discussion text about an idea"""
    __tablename__ = "comments"

    id = Column(Integer, primary_key=True, index=True)
    cell_id = Column(Integer, ForeignKey("cells.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    idea_id = Column(Integer, ForeignKey("ideas.id"), nullable=True, index=True)
    text = Column(Text, nullable=False)
    upvote_count = Column(Integer, nullable=False, default=0)
    tier_upvotes = Column(Integer, nullable=False, default=0)   # upvotes earned at reach_tier
    spread_count = Column(Integer, nullable=False, default=0)
    reach_tier = Column(Integer, nullable=False, default=1)      # highest tier the comment is shown at
    created_at = Column(DateTime, nullable=False, default=utc_now)
