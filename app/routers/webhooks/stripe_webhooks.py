from typing import Optional

import stripe
from fastapi import APIRouter, Request, HTTPException, Header, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import get_internal_service
from app.core.database import get_db
from app.core.db_exceptions import DatabaseException
from app.log.logging import logger
from app.services.stripe_async import PaymentGateway, PaymentProviderError, get_payment_gateway
from app.services.webhook_service import WebhookService
from app.schemas.webhook_schemas import (
    WebhookEventListResponse, WebhookEventResolveRequest, WebhookResponse, WebhookErrorResponse,
    WebhookStatus, WEBHOOK_EVENTS_DESCRIPTION
)
from app.schemas.error_schemas import ErrorResponse

router = APIRouter()


async def verify_stripe_signature(
    request: Request,
    stripe_signature: str = Header(None),  # Stripe-Signature
    gateway: PaymentGateway = Depends(get_payment_gateway)
) -> stripe.Event:
    """
    Verifies the Stripe webhook signature.
    Raises HTTPException 400 if signature is missing or invalid.
    """
    if not stripe_signature:
        logger.error("Stripe-Signature header missing from webhook request.", event_type="webhook_signature_missing")
        raise HTTPException(status_code=400, detail="Stripe-Signature header missing.")

    if not gateway.webhook_secret:
        logger.error("Stripe webhook secret is not configured on the server.", event_type="webhook_secret_missing")
        raise HTTPException(status_code=500, detail="Webhook secret not configured.")

    payload = await request.body()
    try:
        return gateway.construct_event(payload, stripe_signature)
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}", event_type="webhook_invalid_payload")
        raise HTTPException(status_code=400, detail=f"Invalid payload: {e}")
    except stripe.error.SignatureVerificationError as e:
        logger.error(f"Invalid Stripe webhook signature: {e}", event_type="webhook_signature_invalid")
        raise HTTPException(status_code=400, detail=f"Error verifying webhook signature: {e}")


def get_webhook_service(
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway)
) -> WebhookService:
    """Dependency to provide WebhookService instance."""
    return WebhookService(db, gateway)


@router.post(
    "/payments",
    summary="Handle payment provider webhooks",
    description=WEBHOOK_EVENTS_DESCRIPTION,
    response_model=WebhookResponse,
    responses={
        200: {"model": WebhookResponse, "description": "Event applied, or acknowledged as not applicable"},
        400: {"model": ErrorResponse, "description": "Invalid request or signature"},
        500: {"model": WebhookErrorResponse, "description": "Server error (Stripe will retry)"}
    },
    tags=["Webhooks"]
)
@router.post("/stripe", response_model=WebhookResponse, include_in_schema=False)
async def payment_webhook_endpoint(
    event: stripe.Event = Depends(verify_stripe_signature),
    webhook_service: WebhookService = Depends(get_webhook_service)
):
    """
    Endpoint to receive and process Stripe webhooks.

    Signature is verified by the `verify_stripe_signature` dependency.
    Anything that cannot be applied now answers 500 so Stripe redelivers;
    events that can never apply are acknowledged with their outcome.
    """
    logger.info(
        f"Received Stripe event: ID={event.id}, Type={event.type}",
        event_type="webhook_received",
        event_id=event.id,
        stripe_event_type=event.type
    )

    try:
        return await webhook_service.process_event(event)
    except (DatabaseException, PaymentProviderError) as e:
        error = e
    except HTTPException:
        raise
    except Exception as e:
        error = e

    logger.error(
        f"Error processing event {event.id} ({event.type}): {error}",
        event_type="webhook_apply_failed",
        event_id=event.id,
        stripe_event_type=event.type,
        error_type=type(error).__name__
    )
    await webhook_service.record_failure(event, error)

    raise HTTPException(
        status_code=500,
        detail=WebhookErrorResponse(
            status=WebhookStatus.ERROR,
            message=f"Error processing event: {type(error).__name__}",
            event_id=event.id,
            event_type=event.type,
            retry=True
        ).model_dump(mode="json")
    )


@router.get(
    "/internal/events",
    response_model=WebhookEventListResponse,
    summary="List recorded webhook deliveries",
    tags=["internal"]
)
async def list_webhook_events(
    needs_review: Optional[bool] = Query(None, description="Only events flagged, or not flagged, for review"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    _: str = Depends(get_internal_service),
    webhook_service: WebhookService = Depends(get_webhook_service)
):
    """Recorded deliveries, most recent first. Internal service access only."""
    return await webhook_service.list_events(needs_review=needs_review, limit=limit, offset=offset)


@router.post(
    "/internal/events/{event_id}/resolve",
    response_model=WebhookResponse,
    summary="Assign a recorded event to a user and apply it",
    responses={
        404: {"model": ErrorResponse, "description": "Event not recorded, or no longer kept by Stripe"},
        503: {"model": ErrorResponse, "description": "Stripe unavailable"},
    },
    tags=["internal"]
)
async def resolve_webhook_event(
    event_id: str,
    request: WebhookEventResolveRequest,
    _: str = Depends(get_internal_service),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    webhook_service: WebhookService = Depends(get_webhook_service)
):
    """
    Manual reconciliation of an event no user could be resolved for.

    The event is fetched again from Stripe, its customer is mapped to
    ``user_id`` and it is applied as if it had just been delivered.
    Internal service access only.
    """
    if await webhook_service.get_recorded_event(event_id) is None:
        raise HTTPException(status_code=404, detail="Webhook event not recorded")

    try:
        event = await gateway.retrieve_event(event_id)
        if event is None:
            raise HTTPException(status_code=404, detail="Event no longer available from Stripe")
        response = await webhook_service.reapply_event(event, request.user_id)
    except PaymentProviderError as e:
        logger.error(f"Stripe unavailable while resolving event {event_id}: {e}",
                     event_type="webhook_resolve_failed",
                     event_id=event_id)
        raise HTTPException(status_code=503, detail="Payment provider unavailable, please retry later")

    logger.info(f"Event {event_id} resolved to user {request.user_id}: {response.outcome}",
                event_type="webhook_event_resolved",
                event_id=event_id,
                user_id=request.user_id,
                outcome=response.outcome)
    return response
