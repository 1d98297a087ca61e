"""Billing account schemas."""

from datetime import datetime
from enum import Enum
from typing import Optional, Literal
from pydantic import BaseModel, ConfigDict, Field, EmailStr, model_validator


class CustomerLinkRequest(BaseModel):
    """Link the current user to a Stripe customer, creating one when needed."""
    stripe_customer_id: Optional[str] = Field(
        None, max_length=255, description="Existing Stripe customer; omitted to create a new one"
    )
    email: Optional[EmailStr] = Field(None, description="Email for a newly created customer")


class CustomerLinkResponse(BaseModel):
    stripe_customer_id: str
    user_id: str
    match_method: str
    confidence: str
    created: bool = Field(..., description="A new Stripe customer was created")
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CheckoutMode(str, Enum):
    SUBSCRIPTION = "subscription"
    PAYMENT = "payment"


class CheckoutRequest(BaseModel):
    """Start a hosted checkout for a subscription plan or a credit pack."""
    price_id: str = Field(..., min_length=1, max_length=255, description="Stripe price id")
    mode: CheckoutMode = CheckoutMode.SUBSCRIPTION
    credits: Optional[int] = Field(None, gt=0, description="Credits bought; required for one-time payments")
    interval: Optional[Literal["month", "year"]] = Field(None, description="Billing interval of the plan")

    @model_validator(mode="after")
    def credits_for_one_time_payments(self):
        if self.mode == CheckoutMode.PAYMENT and self.credits is None:
            raise ValueError("credits is required for one-time payments")
        return self

    model_config = {
        "json_schema_extra": {
            "example": {"price_id": "price_1PmonthlyXYZ", "mode": "subscription", "interval": "month"}
        }
    }


class CheckoutResponse(BaseModel):
    session_id: str
    url: Optional[str] = Field(None, description="Hosted checkout page to redirect the user to")
    stripe_customer_id: str
