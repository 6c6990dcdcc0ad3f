"""
Payment event processor.

Drives booking state from (possibly redelivered) payment-provider events.
Every transition is a single conditional UPDATE checked by affected-row
count, so duplicate or concurrent deliveries for the same booking apply at
most once and a stale expiry/failure can never regress a paid booking.
Side effects (notifications, dispatch) run only for the delivery that won
the update, after commit.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.booking import Booking
from app.services.bookings import generate_reference
from app.services.dispatch import schedule_auto_dispatch
from app.services.notifications import notify

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_EXPIRED = "checkout.session.expired"
PAYMENT_FAILED = "payment_intent.payment_failed"
HANDLED_EVENTS = (CHECKOUT_COMPLETED, CHECKOUT_EXPIRED, PAYMENT_FAILED)

# Completion never overwrites these
SETTLED_PAYMENT_STATUSES = ("paid", "refunded")


class MalformedEventError(Exception):
    pass


class BookingNotFoundError(Exception):
    pass


@dataclass(frozen=True)
class PaymentEvent:
    event_id: Optional[str]
    event_type: str
    booking_id: Optional[str]
    payment_status: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    session_id: Optional[str] = None
    failure_message: Optional[str] = None


@dataclass(frozen=True)
class EventOutcome:
    outcome: str  # confirmed | expired | failed | skipped | ignored
    booking_id: Optional[str] = None


def parse_event(raw: dict) -> PaymentEvent:
    """Flattens a Stripe event envelope into the fields the processor needs."""
    if not isinstance(raw, dict) or not raw.get("type"):
        raise MalformedEventError("Event has no type")

    event_type = raw["type"]
    obj = (raw.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}

    if event_type == PAYMENT_FAILED:
        minor_units = obj.get("amount")
        return PaymentEvent(
            event_id=raw.get("id"),
            event_type=event_type,
            booking_id=metadata.get("booking_id"),
            payment_status=obj.get("status"),
            amount=Decimal(minor_units) / 100 if minor_units is not None else None,
            currency=obj.get("currency"),
            provider_transaction_id=obj.get("id"),
            failure_message=(obj.get("last_payment_error") or {}).get("message"),
        )

    minor_units = obj.get("amount_total")
    return PaymentEvent(
        event_id=raw.get("id"),
        event_type=event_type,
        booking_id=metadata.get("booking_id"),
        payment_status=obj.get("payment_status"),
        amount=Decimal(minor_units) / 100 if minor_units is not None else None,
        currency=obj.get("currency"),
        provider_transaction_id=obj.get("payment_intent"),
        session_id=obj.get("id"),
    )


async def process_payment_event(db: AsyncSession, event: PaymentEvent) -> EventOutcome:
    if event.event_type not in HANDLED_EVENTS:
        logger.info("Ignoring event type %s (%s)", event.event_type, event.event_id)
        return EventOutcome("ignored", event.booking_id)
    if not event.booking_id:
        logger.warning("Rejecting %s event %s: no booking_id in metadata", event.event_type, event.event_id)
        raise MalformedEventError("No booking_id in event metadata")

    if event.event_type == CHECKOUT_COMPLETED:
        return await apply_payment_completed(db, event)
    if event.event_type == CHECKOUT_EXPIRED:
        return await _apply_unpaid_outcome(
            db, event, status="payment_expired", payment_status="expired", payment_details=None
        )
    return await _apply_unpaid_outcome(
        db,
        event,
        status="payment_failed",
        payment_status="failed",
        payment_details={
            "stripe_payment_intent": event.provider_transaction_id,
            "failure_message": event.failure_message,
            "failed_at": datetime.now(timezone.utc).isoformat(),
        },
    )


async def apply_payment_completed(db: AsyncSession, event: PaymentEvent) -> EventOutcome:
    booking_id = event.booking_id
    if event.payment_status != "paid":
        logger.info("Checkout for booking %s not yet paid (%s), skipping", booking_id, event.payment_status)
        return EventOutcome("ignored", booking_id)

    result = await db.execute(
        update(Booking)
        .where(
            Booking.id == booking_id,
            Booking.payment_status.not_in(SETTLED_PAYMENT_STATUSES),
            Booking.status != "cancelled",
        )
        .values(
            status="confirmed",
            payment_status="paid",
            workflow_status="pending_dispatch",
            reference=func.coalesce(Booking.reference, generate_reference()),
            payment_details={
                "stripe_session_id": event.session_id,
                "stripe_payment_intent": event.provider_transaction_id,
                "paid_amount": float(event.amount) if event.amount is not None else None,
                "currency": event.currency,
                "paid_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    if result.rowcount == 0:
        current = (
            await db.execute(select(Booking.payment_status, Booking.status).where(Booking.id == booking_id))
        ).first()
        if current is None:
            logger.error("Booking %s not found for event %s", booking_id, event.event_id)
            raise BookingNotFoundError(booking_id)
        logger.info(
            "Booking %s already %s/%s, skipping (idempotent) event=%s",
            booking_id, current.payment_status, current.status, event.event_id,
        )
        return EventOutcome("skipped", booking_id)

    booking = await db.get(Booking, booking_id, populate_existing=True)
    logger.info("Confirmed booking %s (%s) - payment complete", booking_id, booking.reference)

    summary = {
        "email": booking.customer_email,
        "phone": booking.customer_phone,
        "reference": booking.reference,
        "pickup_location": booking.pickup_location,
        "dropoff_location": booking.dropoff_location,
        "pickup_datetime": booking.pickup_datetime.isoformat(),
        "total_price": float(booking.total_price),
    }
    notify("customer", ("email", "sms"), booking_id=booking_id, notification_type="confirmation", payload=summary)
    notify("admin", ("email",), booking_id=booking_id, notification_type="admin_notification", payload=summary)
    schedule_auto_dispatch(booking_id)
    return EventOutcome("confirmed", booking_id)


async def _apply_unpaid_outcome(
    db: AsyncSession,
    event: PaymentEvent,
    *,
    status: str,
    payment_status: str,
    payment_details: Optional[dict],
) -> EventOutcome:
    """Expiry/failure only lands on a booking whose payment is still pending."""
    values: dict = {"status": status, "payment_status": payment_status}
    if payment_details is not None:
        values["payment_details"] = payment_details

    result = await db.execute(
        update(Booking)
        .where(Booking.id == event.booking_id, Booking.payment_status == "pending")
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    if result.rowcount == 0:
        exists = (await db.execute(select(Booking.id).where(Booking.id == event.booking_id))).first()
        if exists is None:
            logger.error("Booking %s not found for event %s", event.booking_id, event.event_id)
            raise BookingNotFoundError(event.booking_id)
        logger.info(
            "Stale %s for booking %s ignored: payment no longer pending", event.event_type, event.booking_id
        )
        return EventOutcome("skipped", event.booking_id)

    logger.info("Booking %s → %s/%s", event.booking_id, status, payment_status)
    return EventOutcome(status.removeprefix("payment_"), event.booking_id)
