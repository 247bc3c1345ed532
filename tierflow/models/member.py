"""
Deliberation membership data model
"""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from ..database import Base, utc_now
from ..states import MemberRole


class DeliberationMember(Base):
    """A user taking part in a deliberation"""
    __tablename__ = "deliberation_members"
    __table_args__ = (UniqueConstraint("deliberation_id", "user_id"),)

    id = Column(Integer, primary_key=True, index=True)
    deliberation_id = Column(Integer, ForeignKey("deliberations.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    role = Column(String(20), nullable=False, default=MemberRole.PARTICIPANT.value)
    joined_at = Column(DateTime, nullable=False, default=utc_now)

    # Relationships
    deliberation = relationship("Deliberation", back_populates="members")
    user = relationship("User")
