"""Helpers shared by test modules."""

import json
from datetime import timedelta
from typing import Any, Dict, Optional
from unittest.mock import AsyncMock

import stripe

from app.core.base_model import utcnow
from app.core.security import create_access_token


class FakeGateway:
    """Stands in for PaymentGateway: events are parsed without a signature check."""

    def __init__(self, webhook_secret: str = "whsec_test"):
        self.webhook_secret = webhook_secret
        self.retrieve_customer = AsyncMock(return_value=None)
        self.create_customer = AsyncMock()
        self.create_checkout_session = AsyncMock()
        self.retrieve_event = AsyncMock(return_value=None)

    def construct_event(self, payload: bytes, sig_header: str) -> stripe.Event:
        if sig_header != "valid":
            raise stripe.error.SignatureVerificationError("No signatures found", sig_header)
        return stripe.Event.construct_from(json.loads(payload), "sk_test")


def make_auth_header(user_id: str, email: Optional[str] = None, expires_delta: Optional[timedelta] = None) -> Dict[str, str]:
    token = create_access_token(user_id, email=email, expires_delta=expires_delta)
    return {"Authorization": f"Bearer {token}"}


def period(start_offset_days: int, end_offset_days: int):
    """A billing period relative to now, truncated to whole seconds like Stripe timestamps."""
    now = utcnow().replace(microsecond=0)
    return now + timedelta(days=start_offset_days), now + timedelta(days=end_offset_days)


def stripe_event(event_type: str, obj: Dict[str, Any], event_id: str = "evt_test_1") -> Dict[str, Any]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


def signed_post(client, payload: Dict[str, Any], path: str = "/webhooks/payments"):
    return client.post(
        path,
        content=json.dumps(payload),
        headers={"Stripe-Signature": "valid", "Content-Type": "application/json"}
    )
