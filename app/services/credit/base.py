"""Base credit service with core functionality."""

from datetime import datetime
from typing import Optional, List, Dict, Any

from sqlalchemy import desc, select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.base_model import utcnow
from app.core.config import settings
from app.core.db_utils import dialect_insert, set_lock_timeout, to_database_exception
from app.models.balance import UserBalance
from app.models.credit import CreditTransaction, TransactionType
from app.models.subscription_credit import SubscriptionCredit, SubscriptionCreditStatus
from app.schemas import credit_schemas
from app.log.logging import logger

from app.services.credit.decorators import ledger_operation


class BaseCreditService:
    """
    Balance rows, ledger appends and the locking discipline shared by every
    mutating operation.

    Mutations lock the user's balance row first and then the user's
    subscription periods in ``(end_date, id)`` order, so two operations on
    the same user always queue on the same row and never deadlock each other.
    Helpers prefixed with ``_`` or documented as "locked" never commit; the
    public operation that calls them owns the unit of work.
    """

    def __init__(self, db: AsyncSession):
        """Initialize with database session."""
        self.db = db

    async def _select_balance(self, user_id: str, for_update: bool = False) -> Optional[UserBalance]:
        query = select(UserBalance).where(UserBalance.user_id == user_id)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def _insert_balance_row(self, user_id: str) -> bool:
        """
        Insert the balance row with the initial grant unless it already exists.

        The unique constraint on ``user_id`` arbitrates concurrent first
        accesses: exactly one insert wins and only the winner records the
        ``initial`` transaction.
        """
        grant = settings.INITIAL_CREDIT_GRANT
        now = utcnow()
        stmt = (
            dialect_insert(self.db)(UserBalance)
            .values(
                user_id=user_id,
                balance=grant,
                wallet_balance=grant,
                total_recharged=grant,
                total_consumed=0,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["user_id"])
            .returning(UserBalance.id)
        )
        result = await self.db.execute(stmt)
        if result.scalar_one_or_none() is None:
            return False

        if grant > 0:
            self.db.add(CreditTransaction(
                user_id=user_id,
                amount=grant,
                transaction_type=TransactionType.INITIAL.value,
                description="Welcome credits",
                balance_after=grant,
                idempotency_key=f"initial:{user_id}",
                metadata_={"idempotency_key": f"initial:{user_id}"},
                created_at=now,
            ))
        logger.info(f"Created balance for user {user_id} with {grant} initial credits",
                    event_type="balance_created",
                    user_id=user_id,
                    initial_grant=grant)
        return True

    async def get_or_create_balance(self, user_id: str) -> UserBalance:
        """
        Get or create the user's balance row.

        Args:
            user_id: Opaque user id from the identity provider

        Returns:
            UserBalance: The existing row, or a new one holding the initial grant
        """
        balance = await self._select_balance(user_id)
        if balance is not None:
            return balance

        try:
            await self._insert_balance_row(user_id)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.warning(f"Balance creation failed for user {user_id}, re-reading",
                           event_type="balance_create_retry_read",
                           user_id=user_id,
                           error=str(e))
            try:
                balance = await self._select_balance(user_id)
            except SQLAlchemyError as read_error:
                raise to_database_exception(read_error, "get_or_create_balance") from e
            if balance is None:
                raise to_database_exception(e, "get_or_create_balance") from e
            return balance

        return await self._select_balance(user_id)

    async def lock_balance(self, user_id: str) -> UserBalance:
        """Lock (creating if needed) the user's balance row for the current unit of work."""
        await set_lock_timeout(self.db, settings.LEDGER_LOCK_TIMEOUT_MS)
        balance = await self._select_balance(user_id, for_update=True)
        if balance is None:
            await self._insert_balance_row(user_id)
            balance = await self._select_balance(user_id, for_update=True)
        return balance

    async def active_periods(
        self,
        user_id: str,
        now: datetime,
        lapsed: bool = False
    ) -> List[SubscriptionCredit]:
        """
        Lock the user's active subscription periods, soonest expiry first.

        With ``lapsed=True`` only periods whose window has closed are returned,
        otherwise only those still running.
        """
        await self.db.flush()
        window = SubscriptionCredit.end_date <= now if lapsed else SubscriptionCredit.end_date > now
        result = await self.db.execute(
            select(SubscriptionCredit)
            .where(
                SubscriptionCredit.user_id == user_id,
                SubscriptionCredit.status == SubscriptionCreditStatus.ACTIVE.value,
                window
            )
            .order_by(SubscriptionCredit.end_date, SubscriptionCredit.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    def record_transaction(
        self,
        balance: UserBalance,
        amount: int,
        transaction_type: TransactionType,
        description: Optional[str] = None,
        related_subscription_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> CreditTransaction:
        """Append a ledger entry snapshotting the balance as it stands now."""
        entry_metadata = dict(metadata or {})
        if idempotency_key:
            entry_metadata["idempotency_key"] = idempotency_key

        transaction = CreditTransaction(
            user_id=balance.user_id,
            amount=amount,
            transaction_type=transaction_type.value,
            description=description,
            balance_after=balance.balance,
            related_subscription_id=related_subscription_id,
            idempotency_key=idempotency_key,
            metadata_=entry_metadata,
        )
        self.db.add(transaction)
        return transaction

    async def find_transaction_by_key(
        self,
        transaction_type: TransactionType,
        idempotency_key: str
    ) -> Optional[CreditTransaction]:
        result = await self.db.execute(
            select(CreditTransaction).where(
                CreditTransaction.transaction_type == transaction_type.value,
                CreditTransaction.idempotency_key == idempotency_key
            )
        )
        return result.scalar_one_or_none()

    async def forfeit_period(
        self,
        balance: UserBalance,
        period: SubscriptionCredit,
        status: SubscriptionCreditStatus,
        reason: str
    ) -> int:
        """
        Close a locked period and record the loss of whatever it still held.

        Returns:
            int: Credits forfeited
        """
        forfeited = period.remaining_credits
        period.remaining_credits = 0
        period.status = status.value

        if forfeited > 0:
            balance.balance -= forfeited
            key_prefix = "expire" if status == SubscriptionCreditStatus.EXPIRED else "cancel"
            self.record_transaction(
                balance,
                -forfeited,
                TransactionType.EXPIRATION,
                description=reason,
                related_subscription_id=period.subscription_id,
                idempotency_key=f"{key_prefix}:{period.id}",
                metadata={
                    "subscription_credit_id": period.id,
                    "period_end": period.end_date.isoformat(),
                    "status": status.value,
                }
            )

        logger.info(f"Subscription period {period.id} {status.value}, {forfeited} credits forfeited",
                    event_type="subscription_period_closed",
                    user_id=balance.user_id,
                    subscription_id=period.subscription_id,
                    subscription_credit_id=period.id,
                    status=status.value,
                    forfeited=forfeited)
        return forfeited

    async def expire_lapsed_locked(self, balance: UserBalance, now: datetime) -> int:
        """Expire the user's lapsed active periods; the balance row must already be locked."""
        expired = 0
        for period in await self.active_periods(balance.user_id, now, lapsed=True):
            expired += await self.forfeit_period(
                balance, period, SubscriptionCreditStatus.EXPIRED, "Subscription credits expired"
            )
        return expired

    async def subscription_credits(self, user_id: str, now: Optional[datetime] = None) -> int:
        """Sum of remaining credits over active periods (still running when ``now`` is given)."""
        await self.db.flush()
        query = select(func.coalesce(func.sum(SubscriptionCredit.remaining_credits), 0)).where(
            SubscriptionCredit.user_id == user_id,
            SubscriptionCredit.status == SubscriptionCreditStatus.ACTIVE.value
        )
        if now is not None:
            query = query.where(SubscriptionCredit.end_date > now)
        result = await self.db.execute(query)
        return int(result.scalar_one())

    async def reconcile(self, balance: UserBalance) -> int:
        """Rewrite the cached total from the wallet and the active periods."""
        balance.balance = balance.wallet_balance + await self.subscription_credits(balance.user_id)
        return balance.balance

    @ledger_operation
    async def recalculate_balance(self, user_id: str) -> UserBalance:
        """
        Recompute the user's balance from its authoritative sources.

        Lapsed periods are expired first, then ``balance`` is overwritten with
        ``wallet_balance`` plus the remaining credits of every active period.
        Any difference from the cached value is logged as drift.
        """
        balance = await self.lock_balance(user_id)
        await self.expire_lapsed_locked(balance, utcnow())
        cached = balance.balance
        reconciled = await self.reconcile(balance)
        await self.db.commit()

        if cached != reconciled:
            logger.warning(f"Corrected balance drift for user {user_id}: {cached} -> {reconciled}",
                           event_type="balance_drift_corrected",
                           user_id=user_id,
                           cached=cached,
                           reconciled=reconciled)
        else:
            logger.info(f"Recalculated balance for user {user_id}: {reconciled}",
                        event_type="balance_recalculated",
                        user_id=user_id,
                        balance=reconciled)
        return balance

    async def get_balance(self, user_id: str) -> credit_schemas.BalanceResponse:
        """
        Get user's current credit balance.

        Periods whose window has closed are left out even before the expiry
        sweep has reached them, so the figure shown is what can be spent.
        """
        balance = await self.get_or_create_balance(user_id)
        subscription_balance = await self.subscription_credits(user_id, now=utcnow())
        return credit_schemas.BalanceResponse(
            user_id=user_id,
            balance=balance.wallet_balance + subscription_balance,
            wallet_balance=balance.wallet_balance,
            subscription_balance=subscription_balance,
            total_recharged=balance.total_recharged,
            total_consumed=balance.total_consumed,
            created_at=balance.created_at,
            updated_at=balance.updated_at
        )

    async def get_transaction_history(
        self,
        user_id: str,
        limit: int = 20,
        offset: int = 0
    ) -> credit_schemas.TransactionHistoryResponse:
        """
        Get user's transaction history, newest first.

        Args:
            user_id: The ID of the user
            limit: Page size, clamped to 1..100
            offset: Number of records to skip

        Returns:
            TransactionHistoryResponse: One page of transactions and the total count
        """
        limit = max(1, min(limit, 100))
        offset = max(0, offset)

        count_result = await self.db.execute(
            select(func.count()).select_from(CreditTransaction).where(
                CreditTransaction.user_id == user_id
            )
        )
        total_count = count_result.scalar_one()

        result = await self.db.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(desc(CreditTransaction.created_at), desc(CreditTransaction.id))
            .offset(offset)
            .limit(limit)
        )
        transactions = result.scalars().all()

        logger.debug(f"Retrieved {len(transactions)} of {total_count} transactions for user {user_id}",
                     event_type="transactions_retrieved",
                     user_id=user_id,
                     total_count=total_count,
                     limit=limit,
                     offset=offset)

        return credit_schemas.TransactionHistoryResponse(
            transactions=[credit_schemas.TransactionResponse.model_validate(tx) for tx in transactions],
            total_count=total_count,
            limit=limit,
            offset=offset
        )
