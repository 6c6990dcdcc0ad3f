"""
Stripe payment adapter: checkout session creation and webhook verification.
"""
import asyncio
import json
import logging
from decimal import Decimal
from typing import Optional

import stripe

from app.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()


class PSPError(Exception):
    pass


def is_chargeable(amount: Decimal) -> bool:
    """Amounts below the provider minimum are never sent for checkout."""
    return Decimal(amount) >= Decimal(settings.min_charge_amount)


async def create_checkout_session(
    booking_id: str,
    amount: Decimal,
    *,
    product_name: str,
    description: Optional[str] = None,
    customer_email: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> dict:
    """
    Creates a Stripe Checkout session with up to ``psp_max_retries`` attempts
    (exponential backoff). The booking id travels in the session metadata so
    the webhook can find the booking again.
    Returns: {"session_id": str, "url": str}
    """
    if not settings.stripe_secret_key:
        raise PSPError("Payment provider not configured")
    if not is_chargeable(amount):
        raise PSPError(f"Amount {amount} is below the minimum charge of {settings.min_charge_amount}")

    unit_amount = int((Decimal(amount) * 100).to_integral_value())
    params = dict(
        api_key=settings.stripe_secret_key,
        payment_method_types=["card"],
        mode="payment",
        line_items=[
            {
                "price_data": {
                    "currency": settings.payment_currency,
                    "product_data": {"name": product_name[:100], **({"description": description} if description else {})},
                    "unit_amount": unit_amount,
                },
                "quantity": 1,
            }
        ],
        success_url=settings.checkout_success_url,
        cancel_url=settings.checkout_cancel_url,
        customer_email=customer_email or None,
        metadata={"booking_id": booking_id, **(metadata or {})},
        payment_intent_data={"metadata": {"booking_id": booking_id}},
        idempotency_key=f"checkout-{booking_id}-{unit_amount}",
    )

    attempts = settings.psp_max_retries
    for attempt in range(1, attempts + 1):
        try:
            session = await asyncio.to_thread(stripe.checkout.Session.create, **params)
            logger.info("Created checkout session %s for booking %s", session.id, booking_id)
            return {"session_id": session.id, "url": session.url}
        except stripe.StripeError as e:
            if attempt == attempts:
                logger.error("Checkout creation failed after %d attempts: %s", attempts, e)
                raise PSPError(str(e)) from e
            await asyncio.sleep(2 ** attempt)

    raise PSPError("Checkout creation failed")


def verify_webhook(payload: bytes, signature: Optional[str]) -> dict:
    """
    Verifies the ``Stripe-Signature`` header and returns the decoded event.
    Raises stripe.SignatureVerificationError or PSPError.
    """
    if not settings.stripe_webhook_secret:
        raise PSPError("Webhook secret not configured")
    if not signature:
        raise stripe.SignatureVerificationError("No signature found", signature, payload)
    stripe.WebhookSignature.verify_header(
        payload.decode("utf-8"), signature, settings.stripe_webhook_secret
    )
    return json.loads(payload)
