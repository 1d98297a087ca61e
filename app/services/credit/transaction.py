"""Consumption, recharge, bonus and refund operations."""

from typing import Optional, Dict, Any

from app.core.base_model import utcnow
from app.models.credit import CreditTransaction, TransactionType
from app.models.subscription_credit import SubscriptionCreditStatus
from app.schemas import credit_schemas
from app.schemas.credit_schemas import CreditFailure, CreditFailureReason
from app.log.logging import logger

from app.services.credit.decorators import ledger_operation


class TransactionService:
    """Service class for transaction-related operations."""

    def __init__(self):
        """Initialize the service."""
        self.db = None
        self.base_service = None  # Will be set by CreditService

    @staticmethod
    def _invalid_amount(amount: int) -> CreditFailure:
        return CreditFailure(
            reason=CreditFailureReason.INVALID_AMOUNT,
            message=f"Amount must be a positive integer, got {amount}",
            required=amount
        )

    @ledger_operation
    async def consume(
        self,
        user_id: str,
        amount: int,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> credit_schemas.ConsumeResult:
        """
        Spend credits, draining the soonest-expiring subscription periods first.

        Args:
            user_id: The ID of the user
            amount: Credits to spend, must be positive
            description: Optional description of the transaction
            metadata: Extra keys stored on the ledger entry

        Returns:
            ConsumeSuccess, or CreditFailure (invalid_amount, insufficient_funds)
            with nothing written
        """
        if amount <= 0:
            return self._invalid_amount(amount)

        balance = await self.base_service.lock_balance(user_id)
        now = utcnow()
        await self.base_service.expire_lapsed_locked(balance, now)
        periods = await self.base_service.active_periods(user_id, now)

        available = balance.wallet_balance + sum(p.remaining_credits for p in periods)
        if available < amount:
            await self.db.rollback()
            logger.info(f"Insufficient credits for user {user_id}. Required: {amount}, Available: {available}",
                        event_type="insufficient_credits",
                        user_id=user_id,
                        required=amount,
                        available=available)
            return CreditFailure(
                reason=CreditFailureReason.INSUFFICIENT_FUNDS,
                message=f"Insufficient credits. Required: {amount}, Available: {available}",
                balance=available,
                required=amount
            )

        still_needed = amount
        sources = []
        for period in periods:
            if still_needed == 0:
                break
            take = min(period.remaining_credits, still_needed)
            if take == 0:
                continue
            period.remaining_credits -= take
            still_needed -= take
            sources.append({
                "subscription_credit_id": period.id,
                "subscription_id": period.subscription_id,
                "amount": take,
            })

        wallet_amount = still_needed
        balance.wallet_balance -= wallet_amount
        balance.total_consumed += amount
        await self.base_service.reconcile(balance)

        entry_metadata = dict(metadata or {})
        entry_metadata.update({"subscription_sources": sources, "wallet_amount": wallet_amount})
        transaction = self.base_service.record_transaction(
            balance,
            -amount,
            TransactionType.CONSUMPTION,
            description=description,
            metadata=entry_metadata
        )
        await self.db.commit()

        logger.info(f"Used {amount} credits from user {user_id}. New balance: {balance.balance}",
                    event_type="credits_used",
                    user_id=user_id,
                    amount=amount,
                    subscription_amount=amount - wallet_amount,
                    wallet_amount=wallet_amount,
                    new_balance=balance.balance,
                    transaction_id=transaction.id)

        return credit_schemas.ConsumeSuccess(
            balance_after=balance.balance,
            amount_consumed=amount,
            transaction_id=transaction.id,
            subscription_amount=amount - wallet_amount,
            wallet_amount=wallet_amount
        )

    async def _grant(
        self,
        user_id: str,
        amount: int,
        transaction_type: TransactionType,
        idempotency_key: Optional[str],
        description: Optional[str],
        metadata: Optional[Dict[str, Any]] = None
    ) -> credit_schemas.GrantResult:
        if amount <= 0:
            return self._invalid_amount(amount)

        balance = await self.base_service.lock_balance(user_id)

        if idempotency_key:
            existing = await self.base_service.find_transaction_by_key(transaction_type, idempotency_key)
            if existing is not None:
                await self.db.rollback()
                logger.info(f"Duplicate {transaction_type.value} for key {idempotency_key}, nothing applied",
                            event_type="duplicate_grant",
                            user_id=user_id,
                            idempotency_key=idempotency_key,
                            transaction_id=existing.id)
                return credit_schemas.GrantSuccess(
                    duplicate=True,
                    balance_after=existing.balance_after,
                    amount_added=existing.amount,
                    transaction_id=existing.id
                )

        await self.base_service.expire_lapsed_locked(balance, utcnow())
        balance.wallet_balance += amount
        balance.total_recharged += amount
        await self.base_service.reconcile(balance)

        transaction = self.base_service.record_transaction(
            balance,
            amount,
            transaction_type,
            description=description,
            idempotency_key=idempotency_key,
            metadata=metadata
        )
        await self.db.commit()

        logger.info(f"Added {amount} credits to user {user_id}. New balance: {balance.balance}, Transaction ID: {transaction.id}",
                    event_type="credits_added",
                    user_id=user_id,
                    amount=amount,
                    transaction_type=transaction_type.value,
                    idempotency_key=idempotency_key,
                    new_balance=balance.balance,
                    transaction_id=transaction.id)

        return credit_schemas.GrantSuccess(
            balance_after=balance.balance,
            amount_added=amount,
            transaction_id=transaction.id
        )

    @ledger_operation
    async def recharge(
        self,
        user_id: str,
        amount: int,
        idempotency_key: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> credit_schemas.GrantResult:
        """
        Add purchased credits to the wallet.

        A repeated ``idempotency_key`` (an external payment reference) returns
        the first application's result with ``duplicate=True`` and writes nothing.

        Args:
            user_id: The ID of the user
            amount: Credits to add, must be positive
            idempotency_key: External payment reference, if any
            description: Ledger entry description
            metadata: Extra context stored on the entry

        Returns:
            GrantSuccess, or CreditFailure for a non-positive amount

        Raises:
            DatabaseException: The grant could not be stored
        """
        return await self._grant(
            user_id,
            amount,
            TransactionType.RECHARGE,
            idempotency_key,
            description or f"Recharged {amount} credits",
            metadata
        )

    @ledger_operation
    async def grant_bonus(
        self,
        user_id: str,
        amount: int,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None
    ) -> credit_schemas.GrantResult:
        """Add promotional credits to the wallet, tagged with a reason."""
        entry_metadata = dict(metadata or {})
        entry_metadata["reason"] = reason
        return await self._grant(
            user_id,
            amount,
            TransactionType.BONUS,
            idempotency_key,
            reason,
            entry_metadata
        )

    @ledger_operation
    async def refund(
        self,
        user_id: str,
        consumption_transaction_id: int,
        reason: Optional[str] = None
    ) -> credit_schemas.RefundResult:
        """
        Reverse a consumption exactly once.

        Credits go back to the subscription periods they were drawn from while
        those periods are still active; anything else returns to the wallet.
        Lifetime totals are left untouched.

        Args:
            user_id: Owner of the consumption
            consumption_transaction_id: The consumption entry to reverse
            reason: Ledger entry description

        Returns:
            RefundSuccess (``duplicate=True`` when already refunded), or
            CreditFailure when the entry is not a consumption of this user

        Raises:
            DatabaseException: The refund could not be stored
        """
        balance = await self.base_service.lock_balance(user_id)

        consumption = await self.db.get(CreditTransaction, consumption_transaction_id)
        if (
            consumption is None
            or consumption.user_id != user_id
            or consumption.transaction_type != TransactionType.CONSUMPTION.value
        ):
            await self.db.rollback()
            logger.warning(f"Refund refused: transaction {consumption_transaction_id} is not a consumption of user {user_id}",
                           event_type="refund_refused",
                           user_id=user_id,
                           transaction_id=consumption_transaction_id)
            return CreditFailure(
                reason=CreditFailureReason.NOT_REFUNDABLE,
                message=f"Transaction {consumption_transaction_id} is not a refundable consumption"
            )

        idempotency_key = f"refund:{consumption.id}"
        existing = await self.base_service.find_transaction_by_key(TransactionType.REFUND, idempotency_key)
        if existing is not None:
            await self.db.rollback()
            return credit_schemas.RefundSuccess(
                duplicate=True,
                balance_after=existing.balance_after,
                amount_refunded=existing.amount,
                transaction_id=existing.id
            )

        now = utcnow()
        await self.base_service.expire_lapsed_locked(balance, now)
        running = {p.id: p for p in await self.base_service.active_periods(user_id, now)}

        amount = -consumption.amount
        restored = []
        to_periods = 0
        for source in (consumption.metadata_ or {}).get("subscription_sources", []):
            period = running.get(source.get("subscription_credit_id"))
            if period is None or period.status != SubscriptionCreditStatus.ACTIVE.value:
                continue
            give_back = min(int(source.get("amount", 0)), period.credits - period.remaining_credits)
            if give_back <= 0:
                continue
            period.remaining_credits += give_back
            to_periods += give_back
            restored.append({
                "subscription_credit_id": period.id,
                "subscription_id": period.subscription_id,
                "amount": give_back,
            })

        wallet_amount = amount - to_periods
        balance.wallet_balance += wallet_amount
        await self.base_service.reconcile(balance)

        transaction = self.base_service.record_transaction(
            balance,
            amount,
            TransactionType.REFUND,
            description=reason or "Refund",
            idempotency_key=idempotency_key,
            metadata={
                "consumption_transaction_id": consumption.id,
                "subscription_sources": restored,
                "wallet_amount": wallet_amount,
            }
        )
        await self.db.commit()

        logger.info(f"Refunded {amount} credits to user {user_id} for transaction {consumption.id}",
                    event_type="credits_refunded",
                    user_id=user_id,
                    amount=amount,
                    consumption_transaction_id=consumption.id,
                    new_balance=balance.balance)

        return credit_schemas.RefundSuccess(
            balance_after=balance.balance,
            amount_refunded=amount,
            transaction_id=transaction.id
        )
