"""Tests for the Stripe webhook endpoint and the WebhookService it drives."""

import json
from unittest.mock import AsyncMock

import pytest
import stripe
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db_exceptions import DatabaseConnectionLostError
from app.models.balance import UserBalance
from app.models.credit import CreditTransaction, TransactionType
from app.models.stripe_customer import StripeCustomer
from app.models.webhook_event import WebhookEvent, WebhookEventState
from app.services.credit import CreditService
from tests.helpers import period, signed_post, stripe_event

USER = "7d3f9a51-2c4b-4e8a-b1f0-6a9c2d5e8f13"


def payment_intent(intent_id: str = "pi_test_1", credits="50", customer="cus_test_1", metadata=None):
    meta = {"userId": USER, "credits": credits} if metadata is None else metadata
    return {
        "id": intent_id,
        "object": "payment_intent",
        "customer": customer,
        "amount": 990,
        "currency": "eur",
        "metadata": meta,
    }


def subscription(status: str = "active", unit_amount: int = 1690, bounds=None, sub_id: str = "sub_test_1"):
    start, end = bounds or period(0, 30)
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": "cus_sub_1",
        "status": status,
        "metadata": {"userId": USER},
        "current_period_start": int(start.timestamp()),
        "current_period_end": int(end.timestamp()),
        "items": {
            "object": "list",
            "data": [{"price": {"unit_amount": unit_amount, "recurring": {"interval": "month"}}}],
        },
    }


async def balance_of(db: AsyncSession, user_id: str = USER) -> int:
    result = await db.execute(
        select(UserBalance).where(UserBalance.user_id == user_id).execution_options(populate_existing=True)
    )
    row = result.scalar_one_or_none()
    return row.balance if row else None


async def audit_row(db: AsyncSession, event_id: str) -> WebhookEvent:
    result = await db.execute(
        select(WebhookEvent).where(WebhookEvent.event_id == event_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


class TestSignatureVerification:

    async def test_missing_signature_is_rejected(self, client: AsyncClient):
        response = await client.post(
            "/webhooks/payments",
            content=json.dumps(stripe_event("payment_intent.succeeded", payment_intent()))
        )

        assert response.status_code == 400
        assert "Stripe-Signature" in response.json()["message"]

    async def test_invalid_signature_is_rejected(self, client: AsyncClient, db: AsyncSession):
        response = await client.post(
            "/webhooks/payments",
            content=json.dumps(stripe_event("payment_intent.succeeded", payment_intent())),
            headers={"Stripe-Signature": "t=1,v1=forged"}
        )

        assert response.status_code == 400
        assert await balance_of(db) is None

    async def test_versioned_path_accepts_events(self, client: AsyncClient):
        response = await signed_post(
            client, stripe_event("payment_intent.succeeded", payment_intent()), path="/v1/webhooks/payments"
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "recharged"

    async def test_stripe_alias_path(self, client: AsyncClient):
        response = await signed_post(
            client, stripe_event("payment_intent.succeeded", payment_intent()), path="/webhooks/stripe"
        )

        assert response.status_code == 200


class TestOneTimePurchases:

    async def test_payment_intent_recharges_once(self, client: AsyncClient, db: AsyncSession):
        """Redelivery of the same payment under a new event id is acknowledged as a duplicate."""
        first = await signed_post(client, stripe_event("payment_intent.succeeded", payment_intent(), "evt_a"))
        second = await signed_post(client, stripe_event("payment_intent.succeeded", payment_intent(), "evt_b"))

        assert first.status_code == 200
        assert first.json()["status"] == "success"
        assert first.json()["user_id"] == USER
        assert first.json()["match_confidence"] == "high"
        assert second.status_code == 200
        assert second.json()["status"] == "duplicate"
        assert await balance_of(db) == 55

    async def test_same_event_redelivered(self, client: AsyncClient, db: AsyncSession):
        payload = stripe_event("payment_intent.succeeded", payment_intent(), "evt_same")

        await signed_post(client, payload)
        await signed_post(client, payload)

        assert await balance_of(db) == 55
        row = await audit_row(db, "evt_same")
        assert row.delivery_count == 2
        assert row.outcome == "duplicate"

    async def test_checkout_and_payment_intent_apply_once(self, client: AsyncClient, db: AsyncSession):
        checkout = {
            "id": "cs_test_1",
            "object": "checkout.session",
            "mode": "payment",
            "payment_status": "paid",
            "payment_intent": "pi_checkout_1",
            "customer": "cus_test_1",
            "client_reference_id": USER,
            "metadata": {"credits": "50"},
        }

        first = await signed_post(client, stripe_event("checkout.session.completed", checkout, "evt_cs"))
        second = await signed_post(
            client, stripe_event("payment_intent.succeeded", payment_intent("pi_checkout_1"), "evt_pi")
        )

        assert first.json()["outcome"] == "recharged"
        assert second.json()["outcome"] == "duplicate"
        assert await balance_of(db) == 55

        recharge = (await db.execute(
            select(CreditTransaction).where(CreditTransaction.transaction_type == TransactionType.RECHARGE.value)
        )).scalar_one()
        assert recharge.idempotency_key == "pi_checkout_1"
        assert recharge.metadata_["stripe_event_id"] == "evt_cs"

    async def test_subscription_checkout_is_ignored(self, client: AsyncClient):
        checkout = {"id": "cs_sub", "object": "checkout.session", "mode": "subscription", "customer": "cus_1"}

        response = await signed_post(client, stripe_event("checkout.session.completed", checkout))

        assert response.status_code == 200
        assert response.json()["outcome"] == "not_one_time_payment"

    @pytest.mark.parametrize("credits", [None, "abc", "0", "-5"])
    async def test_payment_without_usable_credits_is_ignored(self, client: AsyncClient, db: AsyncSession, credits):
        metadata = {"userId": USER}
        if credits is not None:
            metadata["credits"] = credits

        response = await signed_post(
            client, stripe_event("payment_intent.succeeded", payment_intent(metadata=metadata))
        )

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
        assert response.json()["outcome"] == "no_credit_metadata"
        assert await balance_of(db) is None

    async def test_invoice_payment_intent_is_left_to_invoice_events(self, client: AsyncClient):
        intent = payment_intent()
        intent["invoice"] = "in_test_1"

        response = await signed_post(client, stripe_event("payment_intent.succeeded", intent))

        assert response.json()["outcome"] == "invoice_payment"


class TestSubscriptionEvents:

    async def test_created_subscription_grants_period(self, client: AsyncClient, db: AsyncSession):
        response = await signed_post(client, stripe_event("customer.subscription.created", subscription()))

        assert response.status_code == 200
        assert response.json()["outcome"] == "subscription_credits_granted"
        assert await balance_of(db) == 5 + 120

    async def test_yearly_price_grants_yearly_credits(self, client: AsyncClient, db: AsyncSession):
        response = await signed_post(
            client, stripe_event("customer.subscription.created", subscription(unit_amount=11880, bounds=period(0, 365)))
        )

        assert response.json()["outcome"] == "subscription_credits_granted"
        assert await balance_of(db) == 5 + 1800

    async def test_invoice_for_granted_period_is_duplicate(self, client: AsyncClient, db: AsyncSession):
        start, end = period(0, 30)
        await signed_post(
            client, stripe_event("customer.subscription.created", subscription(bounds=(start, end)), "evt_sub")
        )
        invoice = {
            "id": "in_test_1",
            "object": "invoice",
            "customer": "cus_sub_1",
            "subscription": "sub_test_1",
            "lines": {
                "object": "list",
                "data": [{
                    "period": {"start": int(start.timestamp()), "end": int(end.timestamp())},
                    "price": {"unit_amount": 1690, "recurring": {"interval": "month"}},
                }],
            },
        }

        response = await signed_post(client, stripe_event("invoice.paid", invoice, "evt_inv"))

        assert response.json()["status"] == "duplicate"
        assert response.json()["outcome"] == "period_already_granted"
        # The customer was resolved from the mapping recorded by the first event
        assert response.json()["user_id"] == USER
        assert await balance_of(db) == 125

    async def test_invoice_without_subscription_is_ignored(self, client: AsyncClient):
        invoice = {"id": "in_one_off", "object": "invoice", "customer": "cus_1", "lines": {"data": []}}

        response = await signed_post(client, stripe_event("invoice.paid", invoice))

        assert response.json()["outcome"] == "not_subscription_invoice"

    async def test_incomplete_subscription_grants_nothing(self, client: AsyncClient, db: AsyncSession):
        response = await signed_post(
            client, stripe_event("customer.subscription.updated", subscription(status="incomplete"))
        )

        assert response.json()["outcome"] == "status_incomplete"
        assert await balance_of(db) is None

    async def test_deleted_subscription_forfeits_credits(self, client: AsyncClient, db: AsyncSession):
        await signed_post(client, stripe_event("customer.subscription.created", subscription(), "evt_created"))

        response = await signed_post(
            client, stripe_event("customer.subscription.deleted", subscription(status="canceled"), "evt_deleted")
        )

        assert response.json()["outcome"] == "subscription_credits_cancelled"
        assert await balance_of(db) == 5
        status = await CreditService(db).get_subscription_status(USER)
        assert status.status == "cancelled"

    async def test_update_to_canceled_status_cancels(self, client: AsyncClient, db: AsyncSession):
        await signed_post(client, stripe_event("customer.subscription.created", subscription(), "evt_created"))

        response = await signed_post(
            client, stripe_event("customer.subscription.updated", subscription(status="unpaid"), "evt_unpaid")
        )

        assert response.json()["outcome"] == "subscription_credits_cancelled"
        assert await balance_of(db) == 5

    async def test_empty_period_is_acknowledged_for_review(self, client: AsyncClient, db: AsyncSession):
        response = await signed_post(
            client, stripe_event("customer.subscription.created", subscription(bounds=period(30, 0)), "evt_bad_period")
        )

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
        assert response.json()["outcome"] == "invalid_grant"
        assert await balance_of(db) is None
        row = await audit_row(db, "evt_bad_period")
        assert row.state == WebhookEventState.IGNORED.value
        assert row.needs_review is True


class TestUserResolution:

    async def test_unresolvable_customer_is_acknowledged(self, client: AsyncClient, db: AsyncSession, fake_gateway):
        intent = payment_intent(customer="cus_unknown", metadata={"credits": "50"})

        response = await signed_post(client, stripe_event("payment_intent.succeeded", intent, "evt_orphan"))

        assert response.status_code == 200
        assert response.json()["status"] == "user_resolution_failed"
        fake_gateway.retrieve_customer.assert_awaited_once_with("cus_unknown")

        row = await audit_row(db, "evt_orphan")
        assert row.state == WebhookEventState.USER_RESOLUTION_FAILED.value
        assert row.needs_review is True
        assert row.stripe_customer_id == "cus_unknown"

    async def test_customer_metadata_match_needs_review(self, client: AsyncClient, db: AsyncSession, fake_gateway):
        fake_gateway.retrieve_customer.return_value = {"id": "cus_meta", "metadata": {"userId": USER}}
        intent = payment_intent(customer="cus_meta", metadata={"credits": "50"})

        response = await signed_post(client, stripe_event("payment_intent.succeeded", intent, "evt_meta"))

        assert response.json()["outcome"] == "recharged"
        assert response.json()["match_confidence"] == "medium"
        assert await balance_of(db) == 55

        row = await audit_row(db, "evt_meta")
        assert row.needs_review is True
        mapping = (await db.execute(
            select(StripeCustomer).where(StripeCustomer.stripe_customer_id == "cus_meta")
        )).scalar_one()
        assert mapping.user_id == USER
        assert mapping.confidence == "medium"

    async def test_event_metadata_records_mapping(self, client: AsyncClient, db: AsyncSession):
        await signed_post(client, stripe_event("payment_intent.succeeded", payment_intent(customer="cus_new")))

        mapping = (await db.execute(
            select(StripeCustomer).where(StripeCustomer.stripe_customer_id == "cus_new")
        )).scalar_one()
        assert mapping.user_id == USER
        assert mapping.match_method == "event_metadata"

    async def test_metadata_disagreeing_with_mapping_is_held(self, client: AsyncClient, db: AsyncSession):
        await CreditService(db).assign_customer("cus_victim", "attacker-user", method="account_link")
        intent = payment_intent(customer="cus_victim")

        response = await signed_post(client, stripe_event("payment_intent.succeeded", intent, "evt_conflict"))

        assert response.status_code == 200
        assert response.json()["status"] == "user_resolution_failed"
        assert await balance_of(db, "attacker-user") is None
        assert await balance_of(db) is None
        assert (await audit_row(db, "evt_conflict")).needs_review is True


class TestUnhandledAndFailures:

    async def test_unhandled_event_type(self, client: AsyncClient, db: AsyncSession):
        response = await signed_post(client, stripe_event("customer.created", {"id": "cus_1", "object": "customer"}))

        assert response.status_code == 200
        assert response.json()["status"] == "unhandled"
        assert (await audit_row(db, "evt_test_1")).state == WebhookEventState.IGNORED.value

    async def test_storage_failure_asks_for_redelivery(self, client: AsyncClient, db: AsyncSession, monkeypatch):
        monkeypatch.setattr(CreditService, "recharge", AsyncMock(side_effect=DatabaseConnectionLostError()))

        response = await signed_post(client, stripe_event("payment_intent.succeeded", payment_intent(), "evt_fail"))

        assert response.status_code == 500
        body = response.json()
        assert body["status"] == "error"
        assert body["retry"] is True
        assert body["event_id"] == "evt_fail"

        row = await audit_row(db, "evt_fail")
        assert row.state == WebhookEventState.APPLY_FAILED.value
        assert "DatabaseConnectionLostError" in row.last_error


class TestReviewQueue:

    @staticmethod
    async def deliver_orphan(client: AsyncClient):
        payload = stripe_event(
            "payment_intent.succeeded",
            payment_intent(customer="cus_unknown", metadata={"credits": "50"}),
            "evt_orphan"
        )
        await signed_post(client, payload)
        return payload

    async def test_lists_events_waiting_for_review(self, client: AsyncClient, internal_headers):
        await self.deliver_orphan(client)
        await signed_post(client, stripe_event("payment_intent.succeeded", payment_intent(), "evt_ok"))

        response = await client.get("/webhooks/internal/events", params={"needs_review": "true"},
                                    headers=internal_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["total_count"] == 1
        assert [e["event_id"] for e in body["events"]] == ["evt_orphan"]
        assert body["events"][0]["state"] == WebhookEventState.USER_RESOLUTION_FAILED.value

        everything = await client.get("/v1/webhooks/internal/events", headers=internal_headers)
        assert everything.json()["total_count"] == 2

    async def test_listing_requires_internal_key(self, client: AsyncClient):
        response = await client.get("/webhooks/internal/events")

        assert response.status_code == 403

    async def test_resolving_applies_event_to_chosen_user(
        self, client: AsyncClient, db: AsyncSession, fake_gateway, internal_headers
    ):
        payload = await self.deliver_orphan(client)
        fake_gateway.retrieve_event.return_value = stripe.Event.construct_from(payload, "sk_test")

        response = await client.post("/webhooks/internal/events/evt_orphan/resolve", json={"user_id": USER},
                                     headers=internal_headers)

        assert response.status_code == 200
        assert response.json()["outcome"] == "recharged"
        assert response.json()["match_confidence"] == "high"
        fake_gateway.retrieve_event.assert_awaited_once_with("evt_orphan")
        assert await balance_of(db) == 55

        row = await audit_row(db, "evt_orphan")
        assert row.needs_review is False
        assert row.user_id == USER
        assert row.delivery_count == 2
        mapping = (await db.execute(
            select(StripeCustomer)
            .where(StripeCustomer.stripe_customer_id == "cus_unknown")
            .execution_options(populate_existing=True)
        )).scalar_one()
        assert mapping.user_id == USER
        assert mapping.match_method == "manual"

    async def test_resolving_twice_applies_once(
        self, client: AsyncClient, db: AsyncSession, fake_gateway, internal_headers
    ):
        payload = await self.deliver_orphan(client)
        fake_gateway.retrieve_event.return_value = stripe.Event.construct_from(payload, "sk_test")

        await client.post("/webhooks/internal/events/evt_orphan/resolve", json={"user_id": USER},
                          headers=internal_headers)
        again = await client.post("/webhooks/internal/events/evt_orphan/resolve", json={"user_id": USER},
                                  headers=internal_headers)

        assert again.json()["status"] == "duplicate"
        assert await balance_of(db) == 55

    async def test_resolving_reassigns_conflicting_customer(
        self, client: AsyncClient, db: AsyncSession, fake_gateway, internal_headers
    ):
        await CreditService(db).assign_customer("cus_victim", "attacker-user", method="account_link")
        payload = stripe_event("payment_intent.succeeded", payment_intent(customer="cus_victim"), "evt_conflict")
        await signed_post(client, payload)
        fake_gateway.retrieve_event.return_value = stripe.Event.construct_from(payload, "sk_test")

        response = await client.post("/webhooks/internal/events/evt_conflict/resolve", json={"user_id": USER},
                                     headers=internal_headers)

        assert response.json()["user_id"] == USER
        assert await balance_of(db) == 55
        assert await balance_of(db, "attacker-user") is None
        later = await signed_post(
            client, stripe_event("payment_intent.succeeded", payment_intent("pi_test_2", customer="cus_victim"), "evt_later")
        )
        assert later.json()["outcome"] == "recharged"
        assert await balance_of(db) == 105

    async def test_unrecorded_event_is_404(self, client: AsyncClient, fake_gateway, internal_headers):
        response = await client.post("/webhooks/internal/events/evt_never/resolve", json={"user_id": USER},
                                     headers=internal_headers)

        assert response.status_code == 404
        fake_gateway.retrieve_event.assert_not_awaited()

    async def test_event_gone_from_stripe_is_404(self, client: AsyncClient, fake_gateway, internal_headers):
        await self.deliver_orphan(client)

        response = await client.post("/webhooks/internal/events/evt_orphan/resolve", json={"user_id": USER},
                                     headers=internal_headers)

        assert response.status_code == 404
