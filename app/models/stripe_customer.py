from enum import Enum

from sqlalchemy import Column, Integer, String

from app.core.base_model import Base, UTCDateTime, utcnow


class MatchConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class StripeCustomer(Base):
    """Authoritative Stripe customer id -> user id mapping."""
    __tablename__ = "stripe_customers"

    id = Column(Integer, primary_key=True)
    stripe_customer_id = Column(String(255), unique=True, nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    match_method = Column(String(50), nullable=False)
    confidence = Column(String(10), nullable=False, default=MatchConfidence.HIGH.value)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<StripeCustomer(stripe_customer_id='{self.stripe_customer_id}', user_id='{self.user_id}')>"
