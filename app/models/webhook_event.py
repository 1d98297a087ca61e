from enum import Enum

from sqlalchemy import Boolean, Column, Integer, String, Text

from app.core.base_model import Base, UTCDateTime, utcnow


class WebhookEventState(str, Enum):
    """Terminal states of one delivery of a payment provider event."""
    APPLIED = "applied"
    IGNORED = "ignored"
    USER_RESOLUTION_FAILED = "user_resolution_failed"
    APPLY_FAILED = "apply_failed"


class WebhookEvent(Base):
    """
    Audit row per provider event id.

    Redeliveries update the same row. The row never gates processing;
    duplicate effects are prevented by the ledger idempotency keys.
    """
    __tablename__ = "webhook_events"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False)
    state = Column(String(40), nullable=False)
    outcome = Column(String(100))
    user_id = Column(String(64), index=True)
    stripe_customer_id = Column(String(255))
    match_confidence = Column(String(10))
    needs_review = Column(Boolean, nullable=False, default=False, index=True)
    delivery_count = Column(Integer, nullable=False, default=1)
    last_error = Column(Text)
    first_received_at = Column(UTCDateTime, nullable=False, default=utcnow)
    last_received_at = Column(UTCDateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<WebhookEvent(event_id='{self.event_id}', type='{self.event_type}', state='{self.state}')>"
