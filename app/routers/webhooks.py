"""
Webhooks router: POST /v1/webhooks/stripe
"""
import logging

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.schemas.schemas import WebhookAck
from app.services.payment import PSPError, verify_webhook
from app.services.payment_events import (
    BookingNotFoundError, MalformedEventError, parse_event, process_payment_event,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/webhooks", tags=["Webhooks"])


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
):
    """
    Payment provider events. Redeliveries are expected: an already-applied
    event is acknowledged as a no-op so the provider stops retrying.
    """
    payload = await request.body()
    try:
        raw = verify_webhook(payload, stripe_signature)
    except PSPError as exc:
        logger.error("Webhook rejected: %s", exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    except (stripe.SignatureVerificationError, ValueError) as exc:
        logger.warning("Webhook signature verification failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    try:
        event = parse_event(raw)
        logger.info("Received payment event %s id=%s booking=%s", event.event_type, event.event_id, event.booking_id)
        outcome = await process_payment_event(db, event)
    except MalformedEventError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except BookingNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Booking {exc} not found")

    return WebhookAck(event_type=event.event_type, outcome=outcome.outcome, booking_id=outcome.booking_id)
