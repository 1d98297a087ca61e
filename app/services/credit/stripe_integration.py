"""Stripe customer to user mapping for the credit service."""

from dataclasses import dataclass
from typing import Optional, Any

from fastapi import HTTPException, status
from sqlalchemy import select

from app.core.base_model import utcnow
from app.core.config import settings
from app.core.db_utils import dialect_insert
from app.models.stripe_customer import StripeCustomer, MatchConfidence
from app.schemas import billing_schemas
from app.log.logging import logger
from app.services.stripe_async import PaymentGateway
from app.services.credit.utils import get_stripe_value

from app.services.credit.decorators import ledger_operation

USER_ID_METADATA_KEYS = ("userId", "user_id")


@dataclass
class UserResolution:
    user_id: str
    confidence: MatchConfidence
    method: str

    @property
    def needs_review(self) -> bool:
        return self.confidence != MatchConfidence.HIGH


def user_id_from_metadata(obj: Any) -> Optional[str]:
    metadata = get_stripe_value(obj, "metadata")
    for key in USER_ID_METADATA_KEYS:
        value = get_stripe_value(metadata, key)
        if value and str(value).strip():
            return str(value).strip()
    return None


def same_email(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return a.strip().lower() == b.strip().lower()


class StripeIntegrationService:
    """
    Resolve Stripe customers to users.

    The ``stripe_customers`` table is the authoritative mapping. Events for
    customers it does not know yet fall back on the user id carried in the
    event object's metadata, then on the customer's own metadata; every such
    match is written back so later events resolve from the table.
    """

    def __init__(self, gateway: Optional[PaymentGateway] = None):
        """Initialize the service."""
        self.db = None
        self.gateway = gateway

    async def get_user_by_stripe_customer_id(self, stripe_customer_id: str) -> Optional[StripeCustomer]:
        """
        Get the mapping for a Stripe customer ID.

        Args:
            stripe_customer_id: The Stripe customer ID

        Returns:
            Optional[StripeCustomer]: The mapping if found, None otherwise
        """
        result = await self.db.execute(
            select(StripeCustomer).where(StripeCustomer.stripe_customer_id == stripe_customer_id)
        )
        return result.scalar_one_or_none()

    async def get_customer_for_user(self, user_id: str) -> Optional[StripeCustomer]:
        result = await self.db.execute(
            select(StripeCustomer)
            .where(StripeCustomer.user_id == user_id)
            .order_by(StripeCustomer.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()

    @ledger_operation
    async def record_mapping(
        self,
        stripe_customer_id: str,
        user_id: str,
        method: str,
        confidence: MatchConfidence
    ) -> StripeCustomer:
        """
        Store a customer mapping unless the customer is already mapped.

        An existing mapping always wins; a conflicting match is logged and
        left for manual review.
        """
        now = utcnow()
        await self.db.execute(
            dialect_insert(self.db)(StripeCustomer)
            .values(
                stripe_customer_id=stripe_customer_id,
                user_id=user_id,
                match_method=method,
                confidence=confidence.value,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["stripe_customer_id"])
        )
        await self.db.commit()

        mapping = await self.get_user_by_stripe_customer_id(stripe_customer_id)
        if mapping.user_id != user_id:
            logger.warning(f"Stripe customer {stripe_customer_id} already mapped to another user",
                           event_type="stripe_customer_mapping_conflict",
                           stripe_customer_id=stripe_customer_id,
                           mapped_user_id=mapping.user_id,
                           candidate_user_id=user_id,
                           method=method)
        else:
            logger.info(f"Mapped Stripe customer {stripe_customer_id} to user {user_id}",
                        event_type="stripe_customer_mapped",
                        stripe_customer_id=stripe_customer_id,
                        user_id=user_id,
                        method=mapping.match_method,
                        confidence=mapping.confidence)
        return mapping

    @ledger_operation
    async def assign_mapping(self, stripe_customer_id: str, user_id: str, method: str = "manual") -> StripeCustomer:
        """Point a customer at a user, replacing any existing mapping. Operator use only."""
        now = utcnow()
        stmt = dialect_insert(self.db)(StripeCustomer).values(
            stripe_customer_id=stripe_customer_id,
            user_id=user_id,
            match_method=method,
            confidence=MatchConfidence.HIGH.value,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["stripe_customer_id"],
            set_={
                "user_id": stmt.excluded.user_id,
                "match_method": stmt.excluded.match_method,
                "confidence": stmt.excluded.confidence,
                "updated_at": stmt.excluded.updated_at,
            }
        )
        await self.db.execute(stmt)
        await self.db.commit()

        result = await self.db.execute(
            select(StripeCustomer)
            .where(StripeCustomer.stripe_customer_id == stripe_customer_id)
            .execution_options(populate_existing=True)
        )
        mapping = result.scalar_one()
        logger.info(f"Stripe customer {stripe_customer_id} assigned to user {user_id}",
                    event_type="stripe_customer_assigned",
                    stripe_customer_id=stripe_customer_id,
                    user_id=user_id,
                    method=method)
        return mapping

    async def resolve_user(self, event_object: Any, stripe_customer_id: Optional[str]) -> Optional[UserResolution]:
        """
        Resolve the user an event object belongs to.

        Args:
            event_object: The ``data.object`` of a Stripe event
            stripe_customer_id: Customer id carried by the object, if any

        Returns:
            UserResolution, or None when no source names a user or the
            mapping and the event's own metadata name different users

        Raises:
            PaymentProviderError: The customer lookup at Stripe failed
        """
        user_id = user_id_from_metadata(event_object) or get_stripe_value(event_object, "client_reference_id")

        if stripe_customer_id:
            mapping = await self.get_user_by_stripe_customer_id(stripe_customer_id)
            if mapping is not None:
                if user_id and user_id != mapping.user_id:
                    logger.warning(f"Event for Stripe customer {stripe_customer_id} names another user than its mapping",
                                   event_type="stripe_customer_mapping_conflict",
                                   stripe_customer_id=stripe_customer_id,
                                   mapped_user_id=mapping.user_id,
                                   event_user_id=user_id,
                                   object_id=get_stripe_value(event_object, "id"))
                    return None
                return UserResolution(mapping.user_id, MatchConfidence.HIGH, "mapping")

        if user_id:
            if stripe_customer_id:
                await self.record_mapping(stripe_customer_id, user_id, "event_metadata", MatchConfidence.HIGH)
            return UserResolution(user_id, MatchConfidence.HIGH, "event_metadata")

        if stripe_customer_id and self.gateway is not None:
            customer = await self.gateway.retrieve_customer(stripe_customer_id)
            user_id = user_id_from_metadata(customer)
            if user_id:
                await self.record_mapping(stripe_customer_id, user_id, "customer_metadata", MatchConfidence.MEDIUM)
                return UserResolution(user_id, MatchConfidence.MEDIUM, "customer_metadata")

        logger.warning("Could not resolve user for Stripe object",
                       event_type="stripe_user_resolution_failed",
                       stripe_customer_id=stripe_customer_id,
                       object_id=get_stripe_value(event_object, "id"))
        return None

    async def link_customer(
        self,
        user_id: str,
        stripe_customer_id: Optional[str] = None,
        email: Optional[str] = None,
        verified_email: Optional[str] = None
    ) -> billing_schemas.CustomerLinkResponse:
        """
        Link a user to a Stripe customer at account-linking time.

        Without a customer id the user's existing link is returned, or a new
        customer carrying ``metadata.userId`` is created. An existing customer
        is only linked when its ``metadata.userId`` is the user, or when its
        email is the one in the user's access token.

        Args:
            user_id: The authenticated user
            stripe_customer_id: Existing customer to claim, if any
            email: Email for a newly created customer
            verified_email: Email asserted by the user's access token

        Returns:
            CustomerLinkResponse: The mapping now in place

        Raises:
            HTTPException: 404 for an unknown customer, 403 when nothing ties
                the customer to the user, 409 when it belongs to another user
            PaymentProviderError: Stripe could not be reached
        """
        created = False
        if stripe_customer_id is None:
            existing = await self.get_customer_for_user(user_id)
            if existing is not None:
                return self._link_response(existing, created=False)
            customer = await self.gateway.create_customer(user_id, email=email)
            stripe_customer_id = customer.id
            created = True
        else:
            customer = await self.gateway.retrieve_customer(stripe_customer_id)
            if customer is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Stripe customer not found")
            owner = user_id_from_metadata(customer)
            if owner and owner != user_id:
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail="Stripe customer belongs to another user"
                )
            if owner is None and not same_email(get_stripe_value(customer, "email"), verified_email):
                logger.warning(f"Refused to link Stripe customer {stripe_customer_id}: no ownership proof",
                               event_type="stripe_customer_link_refused",
                               stripe_customer_id=stripe_customer_id,
                               user_id=user_id)
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail="Stripe customer is not linked to this account"
                )

        mapping = await self.record_mapping(stripe_customer_id, user_id, "account_link", MatchConfidence.HIGH)
        if mapping.user_id != user_id:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Stripe customer belongs to another user"
            )
        return self._link_response(mapping, created=created)

    async def create_checkout_session(
        self,
        user_id: str,
        request: billing_schemas.CheckoutRequest,
        email: Optional[str] = None
    ) -> billing_schemas.CheckoutResponse:
        """
        Start a hosted checkout billed to the user's own Stripe customer.

        The customer is created first when the user has none, so the events
        the checkout produces resolve from the mapping.

        Raises:
            PaymentProviderError: Stripe could not be reached
        """
        link = await self.link_customer(user_id, email=email)

        metadata = {}
        if request.interval:
            metadata["interval"] = request.interval
        if request.credits is not None:
            metadata["credits"] = str(request.credits)

        app_url = settings.APP_URL.rstrip("/")
        session = await self.gateway.create_checkout_session(
            user_id,
            request.price_id,
            request.mode.value,
            success_url=f"{app_url}{settings.CHECKOUT_SUCCESS_PATH}",
            cancel_url=f"{app_url}{settings.CHECKOUT_CANCEL_PATH}",
            customer_id=link.stripe_customer_id,
            metadata=metadata
        )
        logger.info(f"Created {request.mode.value} checkout session for user {user_id}",
                    event_type="checkout_session_created",
                    user_id=user_id,
                    session_id=get_stripe_value(session, "id"),
                    stripe_customer_id=link.stripe_customer_id,
                    price_id=request.price_id)
        return billing_schemas.CheckoutResponse(
            session_id=get_stripe_value(session, "id"),
            url=get_stripe_value(session, "url"),
            stripe_customer_id=link.stripe_customer_id
        )

    @staticmethod
    def _link_response(mapping: StripeCustomer, created: bool) -> billing_schemas.CustomerLinkResponse:
        return billing_schemas.CustomerLinkResponse(
            stripe_customer_id=mapping.stripe_customer_id,
            user_id=mapping.user_id,
            match_method=mapping.match_method,
            confidence=mapping.confidence,
            created=created,
            created_at=mapping.created_at
        )
