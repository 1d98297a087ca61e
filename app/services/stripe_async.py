"""Async wrappers for Stripe API calls to prevent blocking the event loop."""

import asyncio
from typing import Any, Optional, Dict

import stripe

from app.core.config import settings
from app.log.logging import logger


class PaymentProviderError(Exception):
    """The payment provider could not be reached or answered with an error."""


async def run_stripe_async(func, *args, timeout: Optional[float] = None, **kwargs) -> Any:
    """
    Run a synchronous Stripe API call in a thread pool to avoid blocking.

    Args:
        func: The Stripe API function to call
        *args: Positional arguments to pass to the function
        timeout: Seconds to wait before giving up (defaults to STRIPE_TIMEOUT_SECONDS)
        **kwargs: Keyword arguments to pass to the function

    Returns:
        The result from the Stripe API call

    Raises:
        stripe.error.StripeError: If the Stripe API call fails
        PaymentProviderError: If the call does not complete in time
    """
    timeout = timeout if timeout is not None else settings.STRIPE_TIMEOUT_SECONDS
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.error(
            "Stripe API call timed out",
            event_type="stripe_api_timeout",
            function=getattr(func, "__qualname__", str(func)),
            timeout_seconds=timeout,
        )
        raise PaymentProviderError(f"Stripe call timed out after {timeout}s") from e
    except stripe.error.StripeError as e:
        logger.error(
            "Stripe API error",
            event_type="stripe_api_error",
            error_type=type(e).__name__,
            error_code=getattr(e, 'code', None),
            error_message=str(e),
        )
        raise


class PaymentGateway:
    """
    The service's view of Stripe: webhook verification, customers, checkout
    sessions and event lookups.

    Credentials are held per instance and passed on every call, so handlers
    receive a gateway through dependency injection instead of relying on
    process-wide SDK state.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        api_version: Optional[str] = None,
        timeout: Optional[float] = None
    ):
        self.api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET
        self.api_version = api_version or settings.STRIPE_API_VERSION
        self.timeout = timeout if timeout is not None else settings.STRIPE_TIMEOUT_SECONDS

    def _request_options(self) -> Dict[str, Any]:
        return {"api_key": self.api_key, "stripe_version": self.api_version}

    def construct_event(self, payload: bytes, sig_header: str) -> stripe.Event:
        """
        Verify the signature and parse the event.

        Raises:
            ValueError: Invalid payload
            stripe.error.SignatureVerificationError: Invalid signature
        """
        return stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)

    async def retrieve_customer(self, customer_id: str) -> Optional[stripe.Customer]:
        """Fetch a customer; ``None`` when Stripe does not know it or it was deleted."""
        try:
            customer = await run_stripe_async(
                stripe.Customer.retrieve, customer_id, timeout=self.timeout, **self._request_options()
            )
        except stripe.error.InvalidRequestError as e:
            logger.warning(
                f"Stripe customer {customer_id} not found",
                event_type="stripe_customer_not_found",
                stripe_customer_id=customer_id,
                error_message=str(e),
            )
            return None
        except stripe.error.StripeError as e:
            raise PaymentProviderError(str(e)) from e

        if getattr(customer, "deleted", False):
            return None
        return customer

    async def create_customer(
        self,
        user_id: str,
        email: Optional[str] = None
    ) -> stripe.Customer:
        """Create a customer carrying the user id in its metadata."""
        params: Dict[str, Any] = {"metadata": {"userId": user_id}}
        if email:
            params["email"] = email
        try:
            return await run_stripe_async(
                stripe.Customer.create,
                timeout=self.timeout,
                idempotency_key=f"customer-link-{user_id}",
                **params,
                **self._request_options()
            )
        except stripe.error.StripeError as e:
            raise PaymentProviderError(str(e)) from e

    async def create_checkout_session(
        self,
        user_id: str,
        price_id: str,
        mode: str,
        success_url: str,
        cancel_url: str,
        customer_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None
    ) -> stripe.checkout.Session:
        """
        Create a hosted checkout session for one price.

        The user id is written to the session's ``client_reference_id`` and
        metadata, and to the metadata of the payment intent or subscription
        the session creates, so every later event names its user.

        Args:
            user_id: The paying user
            price_id: Stripe price id
            mode: ``subscription`` or ``payment``
            success_url: Redirect after payment
            cancel_url: Redirect when the user backs out
            customer_id: Existing customer to bill, if the user has one
            metadata: Extra metadata, e.g. the credits of a one-time purchase

        Returns:
            stripe.checkout.Session: The session; redirect the user to its ``url``

        Raises:
            PaymentProviderError: Stripe refused the request or could not be reached
        """
        session_metadata = {**(metadata or {}), "userId": user_id}
        params: Dict[str, Any] = {
            "mode": mode,
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": user_id,
            "metadata": session_metadata,
        }
        if mode == "subscription":
            params["subscription_data"] = {"metadata": session_metadata}
        else:
            params["payment_intent_data"] = {"metadata": session_metadata}
        if customer_id:
            params["customer"] = customer_id

        try:
            return await run_stripe_async(
                stripe.checkout.Session.create,
                timeout=self.timeout,
                **params,
                **self._request_options()
            )
        except stripe.error.StripeError as e:
            raise PaymentProviderError(str(e)) from e

    async def retrieve_event(self, event_id: str) -> Optional[stripe.Event]:
        """Fetch an event by id; ``None`` once Stripe no longer keeps it."""
        try:
            return await run_stripe_async(
                stripe.Event.retrieve, event_id, timeout=self.timeout, **self._request_options()
            )
        except stripe.error.InvalidRequestError as e:
            logger.warning(
                f"Stripe event {event_id} not found",
                event_type="stripe_event_not_found",
                event_id=event_id,
                error_message=str(e),
            )
            return None
        except stripe.error.StripeError as e:
            raise PaymentProviderError(str(e)) from e


def get_payment_gateway() -> PaymentGateway:
    """FastAPI dependency returning a gateway built from settings."""
    return PaymentGateway()
