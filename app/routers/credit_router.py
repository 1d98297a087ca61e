"""Router for credit-related endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.auth import AuthenticatedUser, get_internal_service, get_current_user
from app.schemas.credit_schemas import (
    BalanceResponse,
    BonusRequest,
    ConsumeRequest,
    ConsumeSuccess,
    CreditFailure,
    CreditFailureReason,
    ExpirySummary,
    GrantSuccess,
    InsufficientCreditsResponse,
    RechargeRequest,
    TransactionHistoryResponse,
)
from app.schemas.subscription_schemas import (
    SubscriptionGrantResult,
    SubscriptionPeriodRequest,
    SubscriptionStatusResponse,
)
from app.schemas.error_schemas import AuthErrorResponse, DatabaseErrorResponse, ErrorResponse
from app.services.credit import CreditService
from app.log.logging import logger


router = APIRouter(prefix="/credits", tags=["credits"])


def get_credit_service(db: AsyncSession = Depends(get_db)) -> CreditService:
    return CreditService(db)


def raise_for_failure(failure: CreditFailure) -> None:
    """Map an expected ledger refusal to its HTTP answer."""
    if failure.reason == CreditFailureReason.INSUFFICIENT_FUNDS:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=InsufficientCreditsResponse(
                message=failure.message,
                current_balance=failure.balance or 0,
                required=failure.required
            ).model_dump()
        )
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=failure.message)


@router.get(
    "/balance",
    response_model=BalanceResponse,
    responses={401: {"model": AuthErrorResponse}}
)
async def get_credit_balance(
    current_user: AuthenticatedUser = Depends(get_current_user),
    credit_service: CreditService = Depends(get_credit_service)
):
    """
    Get the current user's credit balance.

    The balance row is created with the welcome grant on first access.
    """
    return await credit_service.get_balance(current_user.user_id)


@router.get(
    "/transactions",
    response_model=TransactionHistoryResponse,
    responses={401: {"model": AuthErrorResponse}}
)
async def get_transactions(
    limit: int = Query(20, ge=1, le=100, description="Page size"),
    offset: int = Query(0, ge=0, description="Number of transactions to skip"),
    current_user: AuthenticatedUser = Depends(get_current_user),
    credit_service: CreditService = Depends(get_credit_service)
):
    """Get the current user's transaction history, newest first."""
    return await credit_service.get_transactions(current_user.user_id, limit=limit, offset=offset)


@router.get(
    "/subscription",
    response_model=SubscriptionStatusResponse,
    responses={401: {"model": AuthErrorResponse}}
)
async def get_subscription_status(
    current_user: AuthenticatedUser = Depends(get_current_user),
    credit_service: CreditService = Depends(get_credit_service)
):
    """Running subscription periods and the status of the latest one."""
    return await credit_service.get_subscription_status(current_user.user_id)


@router.post(
    "/consume",
    response_model=ConsumeSuccess,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid amount"},
        401: {"model": AuthErrorResponse},
        402: {"model": InsufficientCreditsResponse, "description": "Not enough credits"},
        503: {"model": DatabaseErrorResponse, "description": "Balance locked by another operation; retry"},
    }
)
async def consume_credits(
    request: ConsumeRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
    credit_service: CreditService = Depends(get_credit_service)
):
    """Spend credits from the current user's balance."""
    result = await credit_service.consume(
        current_user.user_id,
        request.amount,
        description=request.description or "Credit consumption"
    )
    if not result.success:
        raise_for_failure(result)
    return result


@router.post("/internal/recharge", response_model=GrantSuccess, tags=["internal"])
async def internal_recharge(
    request: RechargeRequest,
    _: str = Depends(get_internal_service),
    credit_service: CreditService = Depends(get_credit_service)
):
    """
    Recharge a user's wallet.

    This endpoint is restricted to internal service access only. A repeated
    ``idempotency_key`` is answered with the original result and
    ``duplicate: true``.
    """
    result = await credit_service.recharge(
        request.user_id,
        request.amount,
        idempotency_key=request.idempotency_key,
        description=request.description
    )
    if not result.success:
        raise_for_failure(result)
    return result


@router.post("/internal/bonus", response_model=GrantSuccess, tags=["internal"])
async def internal_bonus(
    request: BonusRequest,
    _: str = Depends(get_internal_service),
    credit_service: CreditService = Depends(get_credit_service)
):
    """Grant promotional credits. Internal service access only."""
    result = await credit_service.grant_bonus(
        request.user_id,
        request.amount,
        request.reason,
        metadata=request.metadata,
        idempotency_key=request.idempotency_key
    )
    if not result.success:
        raise_for_failure(result)
    return result


@router.post("/internal/subscription-periods", response_model=SubscriptionGrantResult, tags=["internal"])
async def internal_grant_subscription_period(
    request: SubscriptionPeriodRequest,
    _: str = Depends(get_internal_service),
    credit_service: CreditService = Depends(get_credit_service)
):
    """Grant the credits of one subscription billing period. Internal service access only."""
    return await credit_service.grant_subscription_period(
        request.user_id,
        request.subscription_id,
        request.credits,
        request.start_date,
        request.end_date
    )


@router.post("/internal/expire", response_model=ExpirySummary, tags=["internal"])
async def internal_expire_subscription_credits(
    _: str = Depends(get_internal_service),
    credit_service: CreditService = Depends(get_credit_service)
):
    """Run the subscription credit expiry sweep once. Safe to call on any cadence."""
    summary = await credit_service.expire_subscription_credits()
    logger.info("Expiry sweep triggered over HTTP",
                event_type="expiry_sweep_http",
                expired_count=summary.expired_count)
    return summary


@router.post("/internal/recalculate/{user_id}", response_model=BalanceResponse, tags=["internal"])
async def internal_recalculate_balance(
    user_id: str,
    _: str = Depends(get_internal_service),
    credit_service: CreditService = Depends(get_credit_service)
):
    """Recompute a user's balance from wallet and active subscription periods."""
    await credit_service.recalculate_balance(user_id)
    return await credit_service.get_balance(user_id)
