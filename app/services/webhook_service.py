"""Apply Stripe events to the credit ledger."""

from dataclasses import dataclass
from typing import Optional

import stripe
from sqlalchemy import select, func, desc
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.base_model import utcnow
from app.core.db_utils import dialect_insert
from app.log.logging import logger
from app.models.stripe_customer import MatchConfidence
from app.models.webhook_event import WebhookEvent, WebhookEventState
from app.schemas.webhook_schemas import (
    WebhookEventListResponse, WebhookEventRecord, WebhookResponse, WebhookStatus
)
from app.services.credit import CreditService, UserResolution
from app.services.credit.plan import PlanService
from app.services.credit.utils import get_stripe_value, parse_credit_amount
from app.services.stripe_async import PaymentGateway

GRANTING_SUBSCRIPTION_STATUSES = {"active", "trialing"}
TERMINAL_SUBSCRIPTION_STATUSES = {"canceled", "unpaid", "incomplete_expired"}


@dataclass
class WebhookOutcome:
    """What happened to one delivery; rendered as the 2xx response body."""
    status: WebhookStatus
    outcome: str
    message: str
    state: WebhookEventState = WebhookEventState.APPLIED
    resolution: Optional[UserResolution] = None
    stripe_customer_id: Optional[str] = None
    needs_review: bool = False


class WebhookService:
    """
    Dispatch verified Stripe events to ledger operations.

    Events are never deduplicated by id: each effect carries its own
    idempotency key (the payment intent id for purchases, the subscription
    id and billing period for grants), so redeliveries and out-of-order
    events are harmless. Every delivery is recorded in ``webhook_events``
    for reconciliation.
    """

    HANDLERS = {
        "payment_intent.succeeded": "handle_payment_intent_succeeded",
        "checkout.session.completed": "handle_checkout_session_completed",
        "customer.subscription.created": "handle_subscription_changed",
        "customer.subscription.updated": "handle_subscription_changed",
        "customer.subscription.deleted": "handle_subscription_deleted",
        "invoice.payment_succeeded": "handle_invoice_paid",
        "invoice.paid": "handle_invoice_paid",
    }

    def __init__(self, db_session: AsyncSession, gateway: Optional[PaymentGateway] = None):
        self.db = db_session
        self.credit_service = CreditService(db_session, gateway=gateway)
        self.plan_service = PlanService()
        self.assigned_user_id: Optional[str] = None

    async def reapply_event(self, event: stripe.Event, user_id: str) -> WebhookResponse:
        """
        Apply a recorded event on behalf of a user chosen by an operator.

        The event's customer is pointed at the user first, so its later
        events resolve on their own. Effects keep their idempotency keys,
        so an event that was already applied is answered as a duplicate.

        Args:
            event: The event as retrieved from Stripe
            user_id: The user the event belongs to

        Returns:
            WebhookResponse: The outcome, as a webhook delivery would report it

        Raises:
            DatabaseException: The event could not be applied
        """
        stripe_customer_id = get_stripe_value(event.data.object, "customer")
        if isinstance(stripe_customer_id, str):
            await self.credit_service.assign_customer(stripe_customer_id, user_id)

        self.assigned_user_id = user_id
        try:
            return await self.process_event(event)
        finally:
            self.assigned_user_id = None

    async def get_recorded_event(self, event_id: str) -> Optional[WebhookEvent]:
        result = await self.db.execute(select(WebhookEvent).where(WebhookEvent.event_id == event_id))
        return result.scalar_one_or_none()

    async def list_events(
        self,
        needs_review: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0
    ) -> WebhookEventListResponse:
        """Recorded deliveries, most recently received first."""
        query = select(WebhookEvent)
        count_query = select(func.count(WebhookEvent.event_id))
        if needs_review is not None:
            query = query.where(WebhookEvent.needs_review == needs_review)
            count_query = count_query.where(WebhookEvent.needs_review == needs_review)

        total = (await self.db.execute(count_query)).scalar_one()
        result = await self.db.execute(
            query.order_by(desc(WebhookEvent.last_received_at)).offset(offset).limit(limit)
        )
        return WebhookEventListResponse(
            events=[WebhookEventRecord.model_validate(row) for row in result.scalars().all()],
            total_count=total
        )

    async def process_event(self, event: stripe.Event) -> WebhookResponse:
        """
        Apply one event and record the delivery.

        Returns:
            WebhookResponse for every outcome that should be acknowledged

        Raises:
            DatabaseException, PaymentProviderError: The event could not be
                applied now and should be redelivered
        """
        handler_name = self.HANDLERS.get(event.type)
        if handler_name is None:
            logger.info(f"Received unhandled event type: {event.type}",
                        event_type="webhook_unhandled",
                        event_id=event.id,
                        stripe_event_type=event.type)
            outcome = WebhookOutcome(
                status=WebhookStatus.UNHANDLED,
                outcome="unhandled_event_type",
                message=f"Webhook received for unhandled event type: {event.type}",
                state=WebhookEventState.IGNORED
            )
        else:
            outcome = await getattr(self, handler_name)(event)

        await self.record_event(event, outcome)

        resolution = outcome.resolution
        logger.info(f"Processed event {event.id} ({event.type}): {outcome.outcome}",
                    event_type="webhook_processed",
                    event_id=event.id,
                    stripe_event_type=event.type,
                    outcome=outcome.outcome,
                    user_id=resolution.user_id if resolution else None,
                    needs_review=resolution.needs_review if resolution else False)

        return WebhookResponse(
            status=outcome.status,
            message=outcome.message,
            outcome=outcome.outcome,
            event_id=event.id,
            event_type=event.type,
            user_id=resolution.user_id if resolution else None,
            match_confidence=resolution.confidence.value if resolution else None
        )

    async def record_event(
        self,
        event: stripe.Event,
        outcome: WebhookOutcome,
        error: Optional[str] = None
    ) -> None:
        """Upsert the audit row for this event id, counting deliveries."""
        now = utcnow()
        resolution = outcome.resolution
        values = {
            "event_id": event.id,
            "event_type": event.type,
            "state": outcome.state.value,
            "outcome": outcome.outcome,
            "user_id": resolution.user_id if resolution else None,
            "stripe_customer_id": outcome.stripe_customer_id,
            "match_confidence": resolution.confidence.value if resolution else None,
            "needs_review": (
                outcome.needs_review
                or outcome.state == WebhookEventState.USER_RESOLUTION_FAILED
                or bool(resolution and resolution.needs_review)
            ),
            "delivery_count": 1,
            "last_error": error,
            "first_received_at": now,
            "last_received_at": now,
        }
        stmt = dialect_insert(self.db)(WebhookEvent).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["event_id"],
            set_={
                "state": stmt.excluded.state,
                "outcome": stmt.excluded.outcome,
                "user_id": stmt.excluded.user_id,
                "stripe_customer_id": stmt.excluded.stripe_customer_id,
                "match_confidence": stmt.excluded.match_confidence,
                "needs_review": stmt.excluded.needs_review,
                "last_error": stmt.excluded.last_error,
                "delivery_count": WebhookEvent.delivery_count + 1,
                "last_received_at": stmt.excluded.last_received_at,
            }
        )
        await self.db.execute(stmt)
        await self.db.commit()

    async def record_failure(self, event: stripe.Event, error: Exception) -> None:
        """Best-effort audit of a delivery that will be retried."""
        try:
            await self.db.rollback()
            await self.record_event(
                event,
                WebhookOutcome(
                    status=WebhookStatus.ERROR,
                    outcome="apply_failed",
                    message=str(error),
                    state=WebhookEventState.APPLY_FAILED
                ),
                error=f"{type(error).__name__}: {error}"[:2000]
            )
        except Exception as audit_error:
            await self.db.rollback()
            logger.error(f"Could not record failure of event {event.id}: {audit_error}",
                         event_type="webhook_audit_failed",
                         event_id=event.id)

    @staticmethod
    def _ignored(outcome: str, message: str, stripe_customer_id: Optional[str] = None) -> WebhookOutcome:
        return WebhookOutcome(
            status=WebhookStatus.IGNORED,
            outcome=outcome,
            message=message,
            state=WebhookEventState.IGNORED,
            stripe_customer_id=stripe_customer_id
        )

    async def _resolve(self, event: stripe.Event, obj, stripe_customer_id: Optional[str]):
        """Resolve the user, or build the acknowledged failure outcome."""
        if self.assigned_user_id:
            return UserResolution(self.assigned_user_id, MatchConfidence.HIGH, "manual"), None

        resolution = await self.credit_service.resolve_user(obj, stripe_customer_id)
        if resolution is None:
            logger.error(f"User resolution failed for event {event.id}; flagged for manual reconciliation",
                         event_type="webhook_user_resolution_failed",
                         event_id=event.id,
                         stripe_event_type=event.type,
                         stripe_customer_id=stripe_customer_id)
            return None, WebhookOutcome(
                status=WebhookStatus.USER_RESOLUTION_FAILED,
                outcome="user_resolution_failed",
                message="No user could be resolved for this event",
                state=WebhookEventState.USER_RESOLUTION_FAILED,
                stripe_customer_id=stripe_customer_id
            )
        if resolution.needs_review:
            logger.warning(f"Event {event.id} resolved with {resolution.confidence.value} confidence",
                           event_type="webhook_low_confidence_match",
                           event_id=event.id,
                           user_id=resolution.user_id,
                           method=resolution.method)
        return resolution, None

    async def _recharge(
        self,
        event: stripe.Event,
        obj,
        payment_intent_id: str,
        credits: int,
        stripe_customer_id: Optional[str]
    ) -> WebhookOutcome:
        resolution, failed = await self._resolve(event, obj, stripe_customer_id)
        if failed:
            return failed

        result = await self.credit_service.recharge(
            resolution.user_id,
            credits,
            idempotency_key=payment_intent_id,
            description=f"Purchase of {credits} credits",
            metadata={
                "stripe_event_id": event.id,
                "payment_intent_id": payment_intent_id,
                "stripe_customer_id": stripe_customer_id,
            }
        )
        if not result.success:
            return WebhookOutcome(
                status=WebhookStatus.IGNORED,
                outcome=result.reason.value,
                message=result.message,
                state=WebhookEventState.IGNORED,
                resolution=resolution,
                stripe_customer_id=stripe_customer_id
            )
        if result.duplicate:
            return WebhookOutcome(
                status=WebhookStatus.DUPLICATE,
                outcome="duplicate",
                message=f"Payment {payment_intent_id} was already credited",
                resolution=resolution,
                stripe_customer_id=stripe_customer_id
            )
        return WebhookOutcome(
            status=WebhookStatus.SUCCESS,
            outcome="recharged",
            message=f"Recharged {credits} credits",
            resolution=resolution,
            stripe_customer_id=stripe_customer_id
        )

    async def handle_payment_intent_succeeded(self, event: stripe.Event) -> WebhookOutcome:
        """One-time credit purchase: recharge ``metadata.credits``."""
        payment_intent = event.data.object
        stripe_customer_id = get_stripe_value(payment_intent, "customer")

        if get_stripe_value(payment_intent, "invoice"):
            return self._ignored("invoice_payment", "Invoice payments are handled by invoice events", stripe_customer_id)

        credits = parse_credit_amount(get_stripe_value(get_stripe_value(payment_intent, "metadata"), "credits"))
        if credits is None:
            return self._ignored("no_credit_metadata", "Payment carries no credit amount", stripe_customer_id)

        return await self._recharge(event, payment_intent, payment_intent.id, credits, stripe_customer_id)

    async def handle_checkout_session_completed(self, event: stripe.Event) -> WebhookOutcome:
        """
        One-time checkout. Keyed on the session's payment intent so the
        matching ``payment_intent.succeeded`` delivery is a duplicate.
        """
        session = event.data.object
        stripe_customer_id = get_stripe_value(session, "customer")

        if get_stripe_value(session, "mode") != "payment":
            return self._ignored("not_one_time_payment", "Subscription checkouts are handled by subscription events",
                                 stripe_customer_id)
        if get_stripe_value(session, "payment_status") not in (None, "paid"):
            return self._ignored("unpaid", "Checkout session is not paid", stripe_customer_id)

        credits = parse_credit_amount(get_stripe_value(get_stripe_value(session, "metadata"), "credits"))
        if credits is None:
            return self._ignored("no_credit_metadata", "Checkout carries no credit amount", stripe_customer_id)

        payment_intent_id = get_stripe_value(session, "payment_intent") or session.id
        return await self._recharge(event, session, payment_intent_id, credits, stripe_customer_id)

    async def _grant_period(
        self,
        event: stripe.Event,
        obj,
        subscription_id: str,
        credits: int,
        period,
        stripe_customer_id: Optional[str]
    ) -> WebhookOutcome:
        resolution, failed = await self._resolve(event, obj, stripe_customer_id)
        if failed:
            return failed

        start_date, end_date = period
        try:
            result = await self.credit_service.grant_subscription_period(
                resolution.user_id, subscription_id, credits, start_date, end_date
            )
        except ValueError as e:
            # Redelivery cannot fix the event, so it is acknowledged and left for review
            logger.error(f"Rejected subscription grant for event {event.id}: {e}",
                         event_type="webhook_invalid_grant",
                         event_id=event.id,
                         subscription_id=subscription_id,
                         user_id=resolution.user_id,
                         credits=credits)
            return WebhookOutcome(
                status=WebhookStatus.IGNORED,
                outcome="invalid_grant",
                message=str(e),
                state=WebhookEventState.IGNORED,
                resolution=resolution,
                stripe_customer_id=stripe_customer_id,
                needs_review=True
            )
        if not result.created:
            return WebhookOutcome(
                status=WebhookStatus.DUPLICATE,
                outcome="period_already_granted",
                message=f"Credits for this period of {subscription_id} were already granted",
                resolution=resolution,
                stripe_customer_id=stripe_customer_id
            )
        return WebhookOutcome(
            status=WebhookStatus.SUCCESS,
            outcome="subscription_credits_granted",
            message=f"Granted {credits} subscription credits",
            resolution=resolution,
            stripe_customer_id=stripe_customer_id
        )

    async def _cancel(self, subscription_id: str, stripe_customer_id: Optional[str]) -> WebhookOutcome:
        summary = await self.credit_service.cancel_subscription_credits(subscription_id)
        return WebhookOutcome(
            status=WebhookStatus.SUCCESS,
            outcome="subscription_credits_cancelled",
            message=f"Cancelled {summary.cancelled_count} periods, {summary.forfeited_credits} credits forfeited",
            stripe_customer_id=stripe_customer_id
        )

    async def handle_subscription_changed(self, event: stripe.Event) -> WebhookOutcome:
        """Grant the current period of a live subscription, or cancel a dead one."""
        subscription = event.data.object
        subscription_status = get_stripe_value(subscription, "status")
        stripe_customer_id = get_stripe_value(subscription, "customer")

        if subscription_status in TERMINAL_SUBSCRIPTION_STATUSES:
            return await self._cancel(subscription.id, stripe_customer_id)

        if subscription_status not in GRANTING_SUBSCRIPTION_STATUSES:
            return self._ignored(f"status_{subscription_status}",
                                 f"Subscription status {subscription_status} grants nothing",
                                 stripe_customer_id)

        period = self.plan_service.subscription_period(subscription)
        if period is None:
            return self._ignored("missing_period", "Subscription carries no current period", stripe_customer_id)

        credits = self.plan_service.credits_for_subscription(subscription)
        return await self._grant_period(event, subscription, subscription.id, credits, period, stripe_customer_id)

    async def handle_subscription_deleted(self, event: stripe.Event) -> WebhookOutcome:
        subscription = event.data.object
        return await self._cancel(subscription.id, get_stripe_value(subscription, "customer"))

    async def handle_invoice_paid(self, event: stripe.Event) -> WebhookOutcome:
        """Grant the billed period of a subscription invoice."""
        invoice = event.data.object
        stripe_customer_id = get_stripe_value(invoice, "customer")

        subscription_id = get_stripe_value(invoice, "subscription")
        if not subscription_id:
            # Newer API versions move the subscription under parent.subscription_details
            details = get_stripe_value(get_stripe_value(invoice, "parent"), "subscription_details")
            subscription_id = get_stripe_value(details, "subscription")
        if not isinstance(subscription_id, str):
            subscription_id = get_stripe_value(subscription_id, "id")
        if not subscription_id:
            return self._ignored("not_subscription_invoice", "Invoice is not for a subscription", stripe_customer_id)

        period = self.plan_service.invoice_period(invoice)
        if period is None:
            return self._ignored("missing_period", "Invoice carries no billing period", stripe_customer_id)

        credits = self.plan_service.credits_for_subscription(invoice)
        return await self._grant_period(event, invoice, subscription_id, credits, period, stripe_customer_id)
