"""Router linking users to their Stripe customer and starting checkouts."""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import AuthenticatedUser, get_current_user
from app.core.database import get_db
from app.log.logging import logger
from app.schemas.billing_schemas import (
    CheckoutRequest, CheckoutResponse, CustomerLinkRequest, CustomerLinkResponse
)
from app.schemas.error_schemas import AuthErrorResponse, ErrorResponse
from app.services.credit import CreditService
from app.services.stripe_async import PaymentGateway, PaymentProviderError, get_payment_gateway

router = APIRouter(prefix="/billing", tags=["Billing"])


def get_billing_service(
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway)
) -> CreditService:
    return CreditService(db, gateway=gateway)


@router.post(
    "/customer",
    response_model=CustomerLinkResponse,
    responses={
        401: {"model": AuthErrorResponse},
        403: {"model": ErrorResponse, "description": "Nothing ties the Stripe customer to this account"},
        404: {"model": ErrorResponse, "description": "Stripe customer not found"},
        409: {"model": ErrorResponse, "description": "Stripe customer belongs to another user"},
        503: {"model": ErrorResponse, "description": "Stripe unavailable"},
    }
)
async def link_stripe_customer(
    request: CustomerLinkRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
    credit_service: CreditService = Depends(get_billing_service)
):
    """
    Link the current user to a Stripe customer.

    Without ``stripe_customer_id`` the user's existing customer is returned,
    or one is created carrying ``metadata.userId``. An existing customer must
    carry the user's id in its metadata or the email of the access token.
    """
    try:
        return await credit_service.link_customer(
            current_user.user_id,
            stripe_customer_id=request.stripe_customer_id,
            email=request.email or current_user.email,
            verified_email=current_user.email
        )
    except PaymentProviderError as e:
        logger.error(f"Stripe unavailable while linking customer: {e}",
                     event_type="stripe_customer_link_failed",
                     user_id=current_user.user_id)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                            detail="Payment provider unavailable, please retry later")


@router.post(
    "/checkout",
    response_model=CheckoutResponse,
    responses={
        401: {"model": AuthErrorResponse},
        422: {"model": ErrorResponse, "description": "Missing price, or credits missing for a one-time payment"},
        503: {"model": ErrorResponse, "description": "Stripe unavailable"},
    }
)
async def create_checkout_session(
    request: CheckoutRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
    credit_service: CreditService = Depends(get_billing_service)
):
    """
    Start a hosted checkout for a subscription plan or a credit pack.

    The session and the subscription or payment it creates carry the
    user's id, so their webhooks credit this user.
    """
    try:
        return await credit_service.create_checkout_session(
            current_user.user_id, request, email=current_user.email
        )
    except PaymentProviderError as e:
        logger.error(f"Stripe unavailable while creating checkout session: {e}",
                     event_type="checkout_session_failed",
                     user_id=current_user.user_id)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                            detail="Payment provider unavailable, please retry later")
