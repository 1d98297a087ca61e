"""Pydantic schemas for credit ledger operations.

Ledger operations return tagged results: a success model with
``success=True`` or a ``CreditFailure`` with ``success=False`` and a
``reason`` code. Expected refusals never raise.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class CreditFailureReason(str, Enum):
    INVALID_AMOUNT = "invalid_amount"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    NOT_REFUNDABLE = "not_refundable"


class BalanceResponse(BaseModel):
    """Schema for credit balance response."""
    user_id: str
    balance: int = Field(..., description="Total spendable credits")
    wallet_balance: int = Field(..., description="Non-expiring part of the balance")
    subscription_balance: int = Field(..., description="Credits left in active subscription periods")
    total_recharged: int
    total_consumed: int
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TransactionResponse(BaseModel):
    """Schema for a ledger entry."""
    id: int
    user_id: str
    amount: int = Field(..., description="Signed amount: positive credits, negative debits")
    transaction_type: str
    description: Optional[str] = None
    balance_after: int
    related_subscription_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("metadata_", "metadata")
    )
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TransactionHistoryResponse(BaseModel):
    """Schema for transaction history response."""
    transactions: List[TransactionResponse]
    total_count: int
    limit: int
    offset: int


class ConsumeRequest(BaseModel):
    """Schema for spending credits. Non-positive amounts are answered with 400."""
    amount: int = Field(1, description="Credits to consume")
    description: Optional[str] = Field(None, max_length=500)


class RechargeRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    amount: int
    idempotency_key: Optional[str] = Field(
        None, max_length=255, description="External payment reference; repeats are answered as duplicates"
    )
    description: Optional[str] = Field(None, max_length=500)


class BonusRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    amount: int
    reason: str = Field(..., min_length=1, max_length=100)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = Field(None, max_length=255)


class CreditFailure(BaseModel):
    """Expected refusal; nothing was written."""
    success: Literal[False] = False
    reason: CreditFailureReason
    message: str
    balance: Optional[int] = Field(None, description="Balance at the time of the refusal")
    required: Optional[int] = Field(None, description="Credits the operation needed")


class ConsumeSuccess(BaseModel):
    success: Literal[True] = True
    balance_after: int
    amount_consumed: int
    transaction_id: int
    subscription_amount: int = Field(..., description="Part drawn from subscription periods")
    wallet_amount: int = Field(..., description="Part drawn from the wallet")


class GrantSuccess(BaseModel):
    """Result of a recharge or bonus grant."""
    success: Literal[True] = True
    duplicate: bool = Field(False, description="The idempotency key was already applied; nothing changed")
    balance_after: int
    amount_added: int
    transaction_id: int


class RefundSuccess(BaseModel):
    success: Literal[True] = True
    duplicate: bool = False
    balance_after: int
    amount_refunded: int
    transaction_id: int


ConsumeResult = Union[ConsumeSuccess, CreditFailure]
GrantResult = Union[GrantSuccess, CreditFailure]
RefundResult = Union[RefundSuccess, CreditFailure]


class InsufficientCreditsResponse(BaseModel):
    """402 body returned when a paid action cannot be afforded."""
    error: str = "Insufficient credits"
    message: str
    current_balance: int
    required: int


class ExpirySummary(BaseModel):
    expired_count: int = Field(..., description="Subscription periods transitioned to expired")
    expired_credits: int = Field(..., description="Credits removed from balances")
    affected_users: List[str]
    failed_users: List[str] = Field(default_factory=list, description="Users left for the next run")
