"""Per-user credit balance."""

from sqlalchemy import Column, Integer, String, CheckConstraint

from app.core.base_model import Base, UTCDateTime, utcnow


class UserBalance(Base):
    """
    One row per user; the lock target for every balance mutation.

    ``wallet_balance`` holds the non-expiring credits (initial grant,
    recharges, plain bonuses, refunds). ``balance`` caches
    ``wallet_balance`` plus the remaining credits of the user's active
    subscription periods and is rewritten by every mutation.
    """
    __tablename__ = "user_balances"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_user_balances_balance_non_negative"),
        CheckConstraint("wallet_balance >= 0", name="ck_user_balances_wallet_non_negative"),
        CheckConstraint("total_recharged >= 0", name="ck_user_balances_recharged_non_negative"),
        CheckConstraint("total_consumed >= 0", name="ck_user_balances_consumed_non_negative"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), unique=True, nullable=False, index=True)
    balance = Column(Integer, nullable=False, default=0)
    wallet_balance = Column(Integer, nullable=False, default=0)
    total_recharged = Column(Integer, nullable=False, default=0)
    total_consumed = Column(Integer, nullable=False, default=0)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<UserBalance(user_id='{self.user_id}', balance={self.balance}, wallet={self.wallet_balance})>"
