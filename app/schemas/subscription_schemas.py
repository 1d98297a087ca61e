"""Schemas for subscription credit periods."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SubscriptionCreditResponse(BaseModel):
    id: int
    user_id: str
    subscription_id: str
    credits: int
    remaining_credits: int
    start_date: datetime
    end_date: datetime
    status: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SubscriptionPeriodRequest(BaseModel):
    """Grant the credits of one billing period."""
    user_id: str = Field(..., min_length=1, max_length=64)
    subscription_id: str = Field(..., min_length=1, max_length=255)
    credits: int = Field(..., gt=0)
    start_date: datetime
    end_date: datetime

    @model_validator(mode="after")
    def check_period(self) -> "SubscriptionPeriodRequest":
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class SubscriptionGrantResult(BaseModel):
    period: SubscriptionCreditResponse
    created: bool = Field(..., description="False when this billing period had already been granted")
    balance_after: int
    cancelled_periods: int = Field(0, description="Active periods of other subscriptions that were cancelled")


class SubscriptionCancellationSummary(BaseModel):
    subscription_id: str
    cancelled_count: int
    forfeited_credits: int
    affected_users: List[str]


class SubscriptionStatusResponse(BaseModel):
    has_active_subscription: bool
    status: Optional[str] = Field(None, description="Status of the most recent period, if any")
    active_credits: int
    periods: List[SubscriptionCreditResponse]
