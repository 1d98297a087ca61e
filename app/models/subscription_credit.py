"""Credits granted per subscription billing period."""

from enum import Enum

from sqlalchemy import Column, Integer, String, CheckConstraint, UniqueConstraint, Index

from app.core.base_model import Base, UTCDateTime, utcnow


class SubscriptionCreditStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class SubscriptionCredit(Base):
    __tablename__ = "subscription_credits"
    __table_args__ = (
        CheckConstraint("credits > 0", name="ck_subscription_credits_credits_positive"),
        CheckConstraint(
            "remaining_credits >= 0 AND remaining_credits <= credits",
            name="ck_subscription_credits_remaining_in_range"
        ),
        CheckConstraint("end_date > start_date", name="ck_subscription_credits_period_order"),
        UniqueConstraint("subscription_id", "start_date", "end_date", name="uq_subscription_credits_period"),
        Index("ix_subscription_credits_user_status_end", "user_id", "status", "end_date"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    subscription_id = Column(String(255), nullable=False, index=True)
    credits = Column(Integer, nullable=False)
    remaining_credits = Column(Integer, nullable=False)
    start_date = Column(UTCDateTime, nullable=False)
    end_date = Column(UTCDateTime, nullable=False)
    status = Column(String(20), nullable=False, default=SubscriptionCreditStatus.ACTIVE.value)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return (
            f"<SubscriptionCredit(id={self.id}, subscription_id='{self.subscription_id}', "
            f"remaining={self.remaining_credits}/{self.credits}, status='{self.status}')>"
        )
