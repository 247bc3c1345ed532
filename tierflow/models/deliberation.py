"""
Deliberation data model
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from .. import config
from ..database import Base, utc_now
from ..states import AllocationMode, DeliberationPhase


class Deliberation(Base):
    """One voting campaign"""
    __tablename__ = "deliberations"

    id = Column(Integer, primary_key=True, index=True)
    question = Column(Text, nullable=False)
    creator_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    phase = Column(String(20), nullable=False, default=DeliberationPhase.SUBMISSION.value)
    current_tier = Column(Integer, nullable=False, default=0)
    current_tier_started_at = Column(DateTime, nullable=True)

    cell_size = Column(Integer, nullable=False, default=lambda: config.DEFAULT_CELL_SIZE)
    allocation_mode = Column(String(10), nullable=False, default=AllocationMode.BATCH.value)
    continuous_flow = Column(Boolean, nullable=False, default=False)
    single_cell = Column(Boolean, nullable=False, default=False)     # fast cell: lone cell decides
    submissions_closed = Column(Boolean, nullable=False, default=False)

    # 0 = no timer
    voting_timeout_ms = Column(Integer, nullable=False, default=lambda: config.DEFAULT_VOTING_TIMEOUT_MS)
    discussion_duration_ms = Column(Integer, nullable=True)          # None/0 = straight to voting
    submission_ends_at = Column(DateTime, nullable=True)

    accumulation_enabled = Column(Boolean, nullable=False, default=False)
    accumulation_timeout_ms = Column(
        Integer, nullable=False, default=lambda: config.DEFAULT_ACCUMULATION_TIMEOUT_MS
    )
    accumulation_ends_at = Column(DateTime, nullable=True)
    champion_id = Column(Integer, nullable=True)                     # ideas.id, no FK to keep the cycle out
    champion_entered_tier = Column(Integer, nullable=True)
    challenge_round = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=utc_now)
    completed_at = Column(DateTime, nullable=True)

    # Relationships
    ideas = relationship("Idea", back_populates="deliberation")
    members = relationship("DeliberationMember", back_populates="deliberation")
    cells = relationship("Cell", back_populates="deliberation")

    @property
    def is_fcfs(self) -> bool:
        """Cells are created idea-only and members enter on demand."""
        return bool(self.continuous_flow) or self.allocation_mode == AllocationMode.FCFS.value

    @property
    def has_discussion(self) -> bool:
        return self.discussion_duration_ms is not None and self.discussion_duration_ms != 0
