"""Credit service module for the credit ledger and subscription credits."""

from typing import Optional

from app.services.credit.base import BaseCreditService
from app.services.credit.plan import PlanService
from app.services.credit.transaction import TransactionService
from app.services.credit.subscription import SubscriptionService
from app.services.credit.stripe_integration import StripeIntegrationService, UserResolution
from app.services.stripe_async import PaymentGateway
from app.log.logging import logger


class CreditService:
    """
    Single entry point for ledger operations.

    This service uses composition to combine functionality from multiple specialized services:
    - BaseCreditService: Balance rows, locking, reconciliation and history
    - TransactionService: Consumption, recharge, bonus and refund
    - SubscriptionService: Subscription periods, expiry and cancellation
    - PlanService: Plan credit allotments
    - StripeIntegrationService: Stripe customer mapping

    Every mutating operation commits its own unit of work and returns a
    tagged result; only storage failures raise.
    """

    def __init__(self, db, gateway: Optional[PaymentGateway] = None):
        """Initialize with database session and create service instances."""
        self.db = db

        # Initialize services
        self.base_service = BaseCreditService(db)
        self.plan_service = PlanService()
        self.transaction_service = TransactionService()
        self.subscription_service = SubscriptionService()
        self.stripe_service = StripeIntegrationService(gateway)

        # Set db for all services
        self.transaction_service.db = db
        self.subscription_service.db = db
        self.stripe_service.db = db

        # Set dependencies between services
        self.transaction_service.base_service = self.base_service
        self.subscription_service.base_service = self.base_service

    # Delegate BaseCreditService methods
    async def get_or_create_balance(self, user_id):
        logger.debug(f"Getting balance row: User {user_id}", event_type="get_or_create_balance", user_id=user_id)
        return await self.base_service.get_or_create_balance(user_id)

    async def get_balance(self, user_id):
        logger.debug(f"Getting balance: User {user_id}", event_type="get_balance", user_id=user_id)
        return await self.base_service.get_balance(user_id)

    async def get_transactions(self, user_id, limit=20, offset=0):
        logger.debug(f"Getting transaction history: User {user_id}",
                     event_type="get_transaction_history",
                     user_id=user_id,
                     limit=limit,
                     offset=offset)
        return await self.base_service.get_transaction_history(user_id, limit=limit, offset=offset)

    async def recalculate_balance(self, user_id):
        logger.debug(f"Recalculating balance: User {user_id}", event_type="recalculate_balance", user_id=user_id)
        return await self.base_service.recalculate_balance(user_id)

    # Delegate TransactionService methods
    async def consume(self, user_id, amount, description=None, metadata=None):
        logger.debug(f"Consuming credits: User {user_id}, Amount {amount}",
                     event_type="consume_credits",
                     user_id=user_id,
                     amount=amount)
        return await self.transaction_service.consume(user_id, amount, description=description, metadata=metadata)

    async def recharge(self, user_id, amount, idempotency_key=None, description=None, metadata=None):
        logger.debug(f"Recharging credits: User {user_id}, Amount {amount}",
                     event_type="recharge_credits",
                     user_id=user_id,
                     amount=amount,
                     idempotency_key=idempotency_key)
        return await self.transaction_service.recharge(
            user_id, amount, idempotency_key=idempotency_key, description=description, metadata=metadata
        )

    async def grant_bonus(self, user_id, amount, reason, metadata=None, idempotency_key=None):
        logger.debug(f"Granting bonus: User {user_id}, Amount {amount}",
                     event_type="grant_bonus",
                     user_id=user_id,
                     amount=amount,
                     reason=reason)
        return await self.transaction_service.grant_bonus(
            user_id, amount, reason, metadata=metadata, idempotency_key=idempotency_key
        )

    async def refund(self, user_id, consumption_transaction_id, reason=None):
        logger.debug(f"Refunding consumption {consumption_transaction_id}: User {user_id}",
                     event_type="refund_credits",
                     user_id=user_id,
                     consumption_transaction_id=consumption_transaction_id)
        return await self.transaction_service.refund(user_id, consumption_transaction_id, reason=reason)

    # Delegate SubscriptionService methods
    async def grant_subscription_period(self, user_id, subscription_id, credits, start_date, end_date):
        logger.debug(f"Granting subscription period: User {user_id}, Subscription {subscription_id}",
                     event_type="grant_subscription_period",
                     user_id=user_id,
                     subscription_id=subscription_id,
                     credits=credits)
        return await self.subscription_service.grant_subscription_period(
            user_id, subscription_id, credits, start_date, end_date
        )

    async def expire_subscription_credits(self):
        logger.debug("Running subscription credit expiry", event_type="expire_subscription_credits")
        return await self.subscription_service.expire_subscription_credits()

    async def cancel_subscription_credits(self, subscription_id, reason="Subscription cancelled"):
        logger.debug(f"Cancelling subscription credits: {subscription_id}",
                     event_type="cancel_subscription_credits",
                     subscription_id=subscription_id)
        return await self.subscription_service.cancel_subscription_credits(subscription_id, reason=reason)

    async def get_subscription_status(self, user_id):
        logger.debug(f"Getting subscription status: User {user_id}",
                     event_type="get_subscription_status",
                     user_id=user_id)
        return await self.subscription_service.get_subscription_status(user_id)

    # Delegate StripeIntegrationService methods
    async def resolve_user(self, event_object, stripe_customer_id):
        return await self.stripe_service.resolve_user(event_object, stripe_customer_id)

    async def link_customer(self, user_id, stripe_customer_id=None, email=None, verified_email=None):
        logger.debug(f"Linking Stripe customer: User {user_id}",
                     event_type="link_stripe_customer",
                     user_id=user_id,
                     stripe_customer_id=stripe_customer_id)
        return await self.stripe_service.link_customer(
            user_id, stripe_customer_id=stripe_customer_id, email=email, verified_email=verified_email
        )

    async def assign_customer(self, stripe_customer_id, user_id, method="manual"):
        logger.debug(f"Assigning Stripe customer {stripe_customer_id} to user {user_id}",
                     event_type="assign_stripe_customer",
                     user_id=user_id,
                     stripe_customer_id=stripe_customer_id)
        return await self.stripe_service.assign_mapping(stripe_customer_id, user_id, method=method)

    async def create_checkout_session(self, user_id, request, email=None):
        logger.debug(f"Creating checkout session: User {user_id}",
                     event_type="create_checkout_session",
                     user_id=user_id,
                     mode=request.mode)
        return await self.stripe_service.create_checkout_session(user_id, request, email=email)


# Export the main service class
__all__ = ["CreditService", "UserResolution"]
