"""Subscription credit periods: grants, expiry sweep and cancellation."""

from datetime import datetime
from typing import List, Tuple

from sqlalchemy import select, desc

from app.core.base_model import utcnow
from app.core.db_exceptions import DatabaseException
from app.models.credit import TransactionType
from app.models.subscription_credit import SubscriptionCredit, SubscriptionCreditStatus
from app.schemas import credit_schemas, subscription_schemas
from app.log.logging import logger

from app.services.credit.decorators import ledger_operation


class SubscriptionService:
    """Service class for subscription-related operations."""

    def __init__(self):
        """Initialize the service."""
        self.db = None
        self.base_service = None  # Will be set by CreditService

    @ledger_operation
    async def grant_subscription_period(
        self,
        user_id: str,
        subscription_id: str,
        credits: int,
        start_date: datetime,
        end_date: datetime
    ) -> subscription_schemas.SubscriptionGrantResult:
        """
        Grant the credits of one billing period, at most once per period.

        Every other running period of the user is cancelled first and its
        remainder forfeited: one subscription at a time, and one period per
        subscription, so a plan change inside the same subscription replaces
        the old period instead of stacking on it. A period that starts before
        an already running period of the same subscription is recorded and
        cancelled at once. The grant itself is recorded as a ``bonus`` entry
        tied to the subscription.

        Args:
            user_id: The ID of the user
            subscription_id: Billing provider subscription id
            credits: Credits granted for the period, must be positive
            start_date: Period start
            end_date: Period end, after start_date

        Returns:
            SubscriptionGrantResult: The period row and whether it was created now

        Raises:
            ValueError: On a non-positive grant or an empty period
        """
        if credits <= 0:
            raise ValueError(f"Subscription credits must be positive, got {credits}")
        if end_date <= start_date:
            raise ValueError("Subscription period must end after it starts")

        balance = await self.base_service.lock_balance(user_id)

        result = await self.db.execute(
            select(SubscriptionCredit).where(
                SubscriptionCredit.subscription_id == subscription_id,
                SubscriptionCredit.start_date == start_date,
                SubscriptionCredit.end_date == end_date
            )
        )
        existing = result.scalar_one_or_none()
        if existing is not None:
            response = subscription_schemas.SubscriptionGrantResult(
                period=subscription_schemas.SubscriptionCreditResponse.model_validate(existing),
                created=False,
                balance_after=balance.balance
            )
            await self.db.rollback()
            logger.info(f"Subscription period already granted for {subscription_id}",
                        event_type="subscription_period_duplicate",
                        user_id=user_id,
                        subscription_id=subscription_id,
                        subscription_credit_id=existing.id)
            return response

        now = utcnow()
        await self.base_service.expire_lapsed_locked(balance, now)

        cancelled = 0
        stale = False
        for other in await self.base_service.active_periods(user_id, now):
            if other.subscription_id != subscription_id:
                reason = f"Subscription replaced by {subscription_id}"
            elif other.start_date > start_date:
                # A later period of this subscription is already running
                stale = True
                continue
            else:
                reason = f"Period superseded by a new period of {subscription_id}"
            await self.base_service.forfeit_period(balance, other, SubscriptionCreditStatus.CANCELLED, reason)
            cancelled += 1

        period = SubscriptionCredit(
            user_id=user_id,
            subscription_id=subscription_id,
            credits=credits,
            remaining_credits=credits,
            start_date=start_date,
            end_date=end_date,
            status=SubscriptionCreditStatus.ACTIVE.value
        )
        self.db.add(period)
        await self.db.flush()

        balance.total_recharged += credits
        await self.base_service.reconcile(balance)
        self.base_service.record_transaction(
            balance,
            credits,
            TransactionType.BONUS,
            description=f"Subscription credits {start_date.date().isoformat()} - {end_date.date().isoformat()}",
            related_subscription_id=subscription_id,
            idempotency_key=f"subscription:{subscription_id}:{start_date.isoformat()}:{end_date.isoformat()}",
            metadata={
                "reason": "subscription_grant",
                "subscription_credit_id": period.id,
                "period_start": start_date.isoformat(),
                "period_end": end_date.isoformat(),
            }
        )

        # A late delivery for a period that has already ended, or that a later
        # period of the same subscription replaced, is recorded and closed at once
        if end_date <= now:
            await self.base_service.forfeit_period(
                balance, period, SubscriptionCreditStatus.EXPIRED, "Subscription credits expired"
            )
        elif stale:
            await self.base_service.forfeit_period(
                balance, period, SubscriptionCreditStatus.CANCELLED,
                f"Period superseded by a later period of {subscription_id}"
            )

        await self.db.commit()

        logger.info(f"Granted {credits} subscription credits to user {user_id} for {subscription_id}",
                    event_type="subscription_credits_granted",
                    user_id=user_id,
                    subscription_id=subscription_id,
                    subscription_credit_id=period.id,
                    credits=credits,
                    cancelled_periods=cancelled,
                    new_balance=balance.balance)

        return subscription_schemas.SubscriptionGrantResult(
            period=subscription_schemas.SubscriptionCreditResponse.model_validate(period),
            created=True,
            balance_after=balance.balance,
            cancelled_periods=cancelled
        )

    @ledger_operation
    async def _expire_user(self, user_id: str, now: datetime) -> Tuple[int, int]:
        balance = await self.base_service.lock_balance(user_id)
        # Re-selected under the lock: periods a concurrent sweep or consumption
        # already closed are no longer active and are skipped.
        lapsed = await self.base_service.active_periods(user_id, now, lapsed=True)
        credits = 0
        for period in lapsed:
            credits += await self.base_service.forfeit_period(
                balance, period, SubscriptionCreditStatus.EXPIRED, "Subscription credits expired"
            )
        await self.base_service.reconcile(balance)
        await self.db.commit()
        return len(lapsed), credits

    async def expire_subscription_credits(self) -> credit_schemas.ExpirySummary:
        """
        Expire every active period whose window has closed.

        Each user is handled in its own unit of work under the usual locks, so
        the sweep can run concurrently with itself and with consumption. A user
        whose lock cannot be obtained is reported and left for the next run.
        """
        now = utcnow()
        result = await self.db.execute(
            select(SubscriptionCredit.user_id)
            .where(
                SubscriptionCredit.status == SubscriptionCreditStatus.ACTIVE.value,
                SubscriptionCredit.end_date <= now
            )
            .distinct()
        )
        candidates = sorted(result.scalars().all())
        await self.db.rollback()

        expired_count = 0
        expired_credits = 0
        affected_users: List[str] = []
        failed_users: List[str] = []
        for user_id in candidates:
            try:
                count, credits = await self._expire_user(user_id, now)
            except DatabaseException as e:
                logger.error(f"Expiry sweep failed for user {user_id}",
                             event_type="subscription_expiry_user_failed",
                             user_id=user_id,
                             error_code=e.error_code.name)
                failed_users.append(user_id)
                continue
            if count:
                expired_count += count
                expired_credits += credits
                affected_users.append(user_id)

        logger.info(f"Expired {expired_count} subscription periods for {len(affected_users)} users",
                    event_type="subscription_expiry_sweep",
                    expired_count=expired_count,
                    expired_credits=expired_credits,
                    affected_users=len(affected_users),
                    failed_users=len(failed_users))

        return credit_schemas.ExpirySummary(
            expired_count=expired_count,
            expired_credits=expired_credits,
            affected_users=affected_users,
            failed_users=failed_users
        )

    @ledger_operation
    async def _cancel_user(self, user_id: str, subscription_id: str, reason: str) -> Tuple[int, int]:
        balance = await self.base_service.lock_balance(user_id)
        now = utcnow()
        await self.base_service.expire_lapsed_locked(balance, now)
        cancelled = 0
        forfeited = 0
        for period in await self.base_service.active_periods(user_id, now):
            if period.subscription_id != subscription_id:
                continue
            forfeited += await self.base_service.forfeit_period(
                balance, period, SubscriptionCreditStatus.CANCELLED, reason
            )
            cancelled += 1
        await self.base_service.reconcile(balance)
        await self.db.commit()
        return cancelled, forfeited

    async def cancel_subscription_credits(
        self,
        subscription_id: str,
        reason: str = "Subscription cancelled"
    ) -> subscription_schemas.SubscriptionCancellationSummary:
        """
        Cancel every active period of a subscription and forfeit what remains.

        Each holder of the subscription is handled in its own unit of work.

        Args:
            subscription_id: Billing provider subscription id
            reason: Description of the forfeit entries

        Returns:
            SubscriptionCancellationSummary: Periods closed and credits forfeited

        Raises:
            DatabaseException: A holder's periods could not be cancelled
        """
        result = await self.db.execute(
            select(SubscriptionCredit.user_id)
            .where(
                SubscriptionCredit.subscription_id == subscription_id,
                SubscriptionCredit.status == SubscriptionCreditStatus.ACTIVE.value
            )
            .distinct()
        )
        user_ids = sorted(result.scalars().all())
        await self.db.rollback()

        cancelled_count = 0
        forfeited_credits = 0
        for user_id in user_ids:
            cancelled, forfeited = await self._cancel_user(user_id, subscription_id, reason)
            cancelled_count += cancelled
            forfeited_credits += forfeited

        logger.info(f"Cancelled {cancelled_count} periods of subscription {subscription_id}",
                    event_type="subscription_credits_cancelled",
                    subscription_id=subscription_id,
                    cancelled_count=cancelled_count,
                    forfeited_credits=forfeited_credits)

        return subscription_schemas.SubscriptionCancellationSummary(
            subscription_id=subscription_id,
            cancelled_count=cancelled_count,
            forfeited_credits=forfeited_credits,
            affected_users=user_ids
        )

    async def get_subscription_status(self, user_id: str) -> subscription_schemas.SubscriptionStatusResponse:
        """Running periods and the status of the user's latest period."""
        now = utcnow()
        result = await self.db.execute(
            select(SubscriptionCredit)
            .where(SubscriptionCredit.user_id == user_id)
            .order_by(desc(SubscriptionCredit.end_date), desc(SubscriptionCredit.id))
        )
        periods = result.scalars().all()

        running = [
            p for p in periods
            if p.status == SubscriptionCreditStatus.ACTIVE.value and p.end_date > now
        ]
        latest_status = None
        if periods:
            latest = periods[0]
            latest_status = latest.status
            if latest_status == SubscriptionCreditStatus.ACTIVE.value and latest.end_date <= now:
                latest_status = SubscriptionCreditStatus.EXPIRED.value

        return subscription_schemas.SubscriptionStatusResponse(
            has_active_subscription=bool(running),
            status=latest_status,
            active_credits=sum(p.remaining_credits for p in running),
            periods=[subscription_schemas.SubscriptionCreditResponse.model_validate(p) for p in running]
        )
