"""Webhook response schemas."""

from datetime import datetime
from typing import List, Optional
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field


class WebhookStatus(str, Enum):
    """Webhook processing status."""
    SUCCESS = "success"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNHANDLED = "unhandled"
    USER_RESOLUTION_FAILED = "user_resolution_failed"
    ERROR = "error"


class WebhookResponse(BaseModel):
    """Standard webhook response. Every 2xx delivery is answered with this body."""
    status: WebhookStatus = Field(..., description="Processing status")
    message: str = Field(..., description="Status message")
    outcome: Optional[str] = Field(None, description="Machine readable outcome code")
    event_id: Optional[str] = Field(None, description="Stripe event ID")
    event_type: Optional[str] = Field(None, description="Stripe event type")
    user_id: Optional[str] = Field(None, description="User the event was applied to")
    match_confidence: Optional[str] = Field(None, description="Confidence of the user resolution")

    model_config = {
        "json_schema_extra": {
            "example": {
                "status": "success",
                "message": "Recharged 50 credits",
                "outcome": "recharged",
                "event_id": "evt_1234567890",
                "event_type": "payment_intent.succeeded",
                "user_id": "0b1c7a3e-5d2f-4c1e-9a8b-2f6d3e4c5b6a",
                "match_confidence": "high"
            }
        }
    }


class WebhookErrorResponse(BaseModel):
    """Webhook error response."""
    status: WebhookStatus = Field(default=WebhookStatus.ERROR, description="Error status")
    message: str = Field(..., description="Error message")
    event_id: Optional[str] = Field(None, description="Stripe event ID if available")
    event_type: Optional[str] = Field(None, description="Stripe event type if available")
    retry: bool = Field(default=True, description="Whether Stripe should retry this event")

    model_config = {
        "json_schema_extra": {
            "example": {
                "status": "error",
                "message": "Database connection failed",
                "event_id": "evt_1234567890",
                "event_type": "invoice.payment_succeeded",
                "retry": True
            }
        }
    }


class WebhookEventRecord(BaseModel):
    """One recorded delivery, as kept for reconciliation."""
    event_id: str
    event_type: str
    state: str
    outcome: Optional[str] = None
    user_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    match_confidence: Optional[str] = None
    needs_review: bool
    delivery_count: int
    last_error: Optional[str] = None
    first_received_at: datetime
    last_received_at: datetime

    model_config = ConfigDict(from_attributes=True)


class WebhookEventListResponse(BaseModel):
    events: List[WebhookEventRecord]
    total_count: int


class WebhookEventResolveRequest(BaseModel):
    """Assign a recorded event to a user and apply it again."""
    user_id: str = Field(..., min_length=1, max_length=64, description="User the event belongs to")


SUPPORTED_WEBHOOK_EVENTS = [
    "payment_intent.succeeded",
    "checkout.session.completed",
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "invoice.payment_succeeded",
    "invoice.paid",
]

WEBHOOK_EVENTS_DESCRIPTION = """
## Supported Stripe Webhook Events

| Event Type | Effect |
|------------|--------|
| `payment_intent.succeeded` | Recharge `metadata.credits`, keyed on the payment intent id |
| `checkout.session.completed` | One-time checkout: same recharge, keyed on the session's payment intent |
| `customer.subscription.created` | Grant the current period's credits when active or trialing |
| `customer.subscription.updated` | Grant the current period, or cancel credits when canceled/unpaid |
| `customer.subscription.deleted` | Cancel the subscription's remaining credits |
| `invoice.payment_succeeded` / `invoice.paid` | Grant the billed period's credits |

### Idempotency

Events are not deduplicated by event id. Every effect carries its own
idempotency key (payment intent id, or subscription id plus billing period),
so redelivered and out-of-order events never apply twice.

### Retry Behavior

- **2xx responses**: applied, or permanently not applicable (see `outcome`)
- **400 responses**: invalid signature or payload, no retry
- **5xx responses**: storage failure while applying, Stripe retries

### Security

All webhook requests must include a valid `Stripe-Signature` header.
The signature is verified against the configured webhook secret.
"""
