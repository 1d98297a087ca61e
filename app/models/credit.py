"""Credit ledger models."""

from enum import Enum

from sqlalchemy import Column, Integer, String, Text, JSON, CheckConstraint, UniqueConstraint, Index
from sqlalchemy.dialects.postgresql import JSONB

from app.core.base_model import Base, UTCDateTime, utcnow


class TransactionType(str, Enum):
    """Kinds of balance change recorded in the ledger."""
    INITIAL = "initial"
    RECHARGE = "recharge"
    CONSUMPTION = "consumption"
    BONUS = "bonus"
    SUBSCRIPTION = "subscription"
    EXPIRATION = "expiration"
    REFUND = "refund"


class CreditTransaction(Base):
    """
    Append-only ledger entry.

    ``amount`` is signed (credits positive, debits negative) and
    ``balance_after`` snapshots the user's total balance once the entry is
    applied. ``idempotency_key`` mirrors the key stored in ``metadata`` so
    duplicate deliveries are caught by an indexed lookup and a constraint.
    """
    __tablename__ = "credit_transactions"
    __table_args__ = (
        CheckConstraint("balance_after >= 0", name="ck_credit_transactions_balance_after_non_negative"),
        CheckConstraint("amount <> 0", name="ck_credit_transactions_amount_non_zero"),
        UniqueConstraint("transaction_type", "idempotency_key", name="uq_credit_transactions_type_key"),
        Index("ix_credit_transactions_user_created", "user_id", "created_at"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    transaction_type = Column(String(20), nullable=False)
    description = Column(Text)
    balance_after = Column(Integer, nullable=False)
    related_subscription_id = Column(String(255), index=True)
    idempotency_key = Column(String(255), index=True)
    # "metadata" is reserved on declarative classes
    metadata_ = Column("metadata", JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return (
            f"<CreditTransaction(id={self.id}, user_id='{self.user_id}', "
            f"type='{self.transaction_type}', amount={self.amount}, balance_after={self.balance_after})>"
        )
