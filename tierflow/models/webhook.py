"""
Webhook subscription data model
"""

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from ..database import Base, utc_now


class WebhookSubscription(Base):
    """An external endpoint receiving engine events"""
    __tablename__ = "webhook_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    url = Column(String(500), nullable=False)
    secret = Column(String(200), nullable=False)
    events = Column(Text, nullable=False, default="")           # comma-separated event kinds
    active = Column(Boolean, nullable=False, default=True)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    last_failure_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    def subscribes_to(self, event_kind: str) -> bool:
        kinds = {k.strip() for k in (self.events or "").split(",") if k.strip()}
        return not kinds or event_kind in kinds
