"""Tests for the parameters PaymentGateway sends to Stripe."""

from unittest.mock import MagicMock

import pytest
import stripe

from app.services.stripe_async import PaymentGateway, PaymentProviderError


@pytest.fixture()
def gateway() -> PaymentGateway:
    return PaymentGateway(api_key="sk_test_gateway", webhook_secret="whsec_test", timeout=5)


class TestCheckoutSession:

    async def test_subscription_carries_user_on_the_subscription(self, gateway: PaymentGateway, monkeypatch):
        create = MagicMock(return_value={"id": "cs_1", "url": "https://checkout.stripe.test/cs_1"})
        monkeypatch.setattr(stripe.checkout.Session, "create", create)

        session = await gateway.create_checkout_session(
            "user-1", "price_monthly", "subscription",
            "https://app.test/ok", "https://app.test/cancel",
            customer_id="cus_1", metadata={"interval": "month"}
        )

        assert session["id"] == "cs_1"
        params = create.call_args.kwargs
        assert params["client_reference_id"] == "user-1"
        assert params["customer"] == "cus_1"
        assert params["line_items"] == [{"price": "price_monthly", "quantity": 1}]
        assert params["metadata"] == {"interval": "month", "userId": "user-1"}
        assert params["subscription_data"] == {"metadata": {"interval": "month", "userId": "user-1"}}
        assert "payment_intent_data" not in params
        assert params["api_key"] == "sk_test_gateway"

    async def test_payment_carries_user_on_the_payment_intent(self, gateway: PaymentGateway, monkeypatch):
        create = MagicMock(return_value={"id": "cs_2", "url": None})
        monkeypatch.setattr(stripe.checkout.Session, "create", create)

        await gateway.create_checkout_session(
            "user-1", "price_pack", "payment", "https://app.test/ok", "https://app.test/cancel",
            metadata={"credits": "50", "userId": "someone-else"}
        )

        params = create.call_args.kwargs
        assert params["payment_intent_data"] == {"metadata": {"credits": "50", "userId": "user-1"}}
        assert "subscription_data" not in params
        assert "customer" not in params

    async def test_stripe_error_becomes_provider_error(self, gateway: PaymentGateway, monkeypatch):
        monkeypatch.setattr(stripe.checkout.Session, "create",
                            MagicMock(side_effect=stripe.error.APIConnectionError("unreachable")))

        with pytest.raises(PaymentProviderError):
            await gateway.create_checkout_session(
                "user-1", "price_monthly", "subscription", "https://app.test/ok", "https://app.test/cancel"
            )


class TestRetrieveEvent:

    async def test_unknown_event_is_none(self, gateway: PaymentGateway, monkeypatch):
        monkeypatch.setattr(stripe.Event, "retrieve",
                            MagicMock(side_effect=stripe.error.InvalidRequestError("No such event", "id")))

        assert await gateway.retrieve_event("evt_gone") is None

    async def test_outage_is_provider_error(self, gateway: PaymentGateway, monkeypatch):
        monkeypatch.setattr(stripe.Event, "retrieve",
                            MagicMock(side_effect=stripe.error.APIConnectionError("unreachable")))

        with pytest.raises(PaymentProviderError):
            await gateway.retrieve_event("evt_1")
