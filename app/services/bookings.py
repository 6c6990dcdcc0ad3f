"""
Booking creation, checkout, cancellation and no-show release.
"""
import logging
import secrets
import string
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.models.booking import Booking
from app.models.driver import Driver
from app.schemas.schemas import BookingCreateRequest
from app.services.dispatch import active_assignment_for_booking, release_booking_assignments
from app.services.notifications import notify
from app.services.payment import PSPError, create_checkout_session, is_chargeable
from app.services.pricing import FareQuote, compute_fare, load_pricing_snapshot

logger = logging.getLogger(__name__)
settings = get_settings()

_B36 = string.digits + string.ascii_uppercase
CANCELLABLE_STATUSES = ("pending", "confirmed")


class BookingError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _base36(n: int) -> str:
    out = ""
    while n:
        n, r = divmod(n, 36)
        out = _B36[r] + out
    return out or "0"


def generate_reference() -> str:
    """TRF-<base36 epoch ms>-<4 random chars>."""
    suffix = "".join(secrets.choice(_B36) for _ in range(4))
    return f"TRF-{_base36(int(time.time() * 1000))}-{suffix}"


async def create_booking(
    db: AsyncSession,
    payload: BookingCreateRequest,
    idempotency_key: Optional[str] = None,
) -> tuple[Booking, FareQuote]:
    """Price the trip server-side and persist a pending booking."""
    snapshot = await load_pricing_snapshot(db)
    quote = compute_fare(
        snapshot,
        payload.pickup_location,
        payload.dropoff_location,
        payload.vehicle_type,
        payload.trip_type.value,
        vehicle_type_id=payload.vehicle_type_id,
    )

    if idempotency_key:
        existing = (
            await db.execute(select(Booking).where(Booking.idempotency_key == idempotency_key))
        ).scalar_one_or_none()
        if existing is not None:
            logger.info("Idempotency-Key %s already used by booking %s", idempotency_key, existing.id)
            return existing, quote

    booking = Booking(
        reference=generate_reference(),
        customer_name=payload.customer_name,
        customer_email=payload.customer_email,
        customer_phone=payload.customer_phone,
        pickup_location=payload.pickup_location,
        dropoff_location=payload.dropoff_location,
        pickup_datetime=payload.pickup_datetime,
        passengers=payload.passengers,
        vehicle_type=quote.vehicle_type.lower(),
        vehicle_type_id=quote.vehicle_type_id,
        total_price=quote.total_price,
        currency=settings.payment_currency,
        status="pending",
        payment_status="pending",
        source=payload.source,
        details=quote.as_details(),
        idempotency_key=idempotency_key,
    )
    db.add(booking)
    await db.commit()
    await db.refresh(booking)
    logger.info(
        "Created booking %s (%s) total=%s source=%s",
        booking.id, booking.reference, booking.total_price, quote.price_source,
    )
    return booking, quote


async def start_checkout(db: AsyncSession, booking: Booking) -> tuple[Optional[dict], list[str]]:
    """
    Opens a checkout session for a pending booking.
    Never raises for provider problems: they come back as warnings and the
    booking stays pending.
    """
    warnings: list[str] = []
    if booking.payment_status != "pending":
        raise BookingError(f"Booking payment is already {booking.payment_status}", 409)

    if not is_chargeable(Decimal(booking.total_price)):
        booking.details = {**(booking.details or {}), "payment_blocked_reason": "below_minimum_charge"}
        await db.commit()
        logger.warning("Booking %s total %s below minimum charge", booking.id, booking.total_price)
        warnings.append(
            f"Total {booking.total_price} is below the minimum chargeable amount of {settings.min_charge_amount}; "
            "booking left unpaid"
        )
        return None, warnings

    try:
        session = await create_checkout_session(
            booking.id,
            Decimal(booking.total_price),
            product_name=f"Transfer - {booking.vehicle_type}",
            description=f"{booking.pickup_location} → {booking.dropoff_location}",
            customer_email=booking.customer_email,
            metadata={"booking_reference": booking.reference or "", "trip_type": booking.details.get("trip_type", "")},
        )
    except PSPError as exc:
        logger.warning("Checkout session not created for booking %s: %s", booking.id, exc)
        warnings.append(f"Checkout session could not be created: {exc}")
        return None, warnings

    booking.payment_details = {
        "stripe_session_id": session["session_id"],
        "checkout_url": session["url"],
        "amount": float(booking.total_price),
        "currency": booking.currency,
    }
    await db.commit()
    return session, warnings


async def cancel_booking(db: AsyncSession, booking_id: str, reason: Optional[str] = None) -> Booking:
    result = await db.execute(
        update(Booking)
        .where(Booking.id == booking_id, Booking.status.in_(CANCELLABLE_STATUSES))
        .values(status="cancelled", workflow_status="cancelled")
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        booking = await db.get(Booking, booking_id)
        if booking is None:
            raise BookingError("Booking not found", 404)
        raise BookingError(f"Booking cannot be cancelled from status {booking.status}", 409)

    released = await release_booking_assignments(db, booking_id)
    await db.commit()

    booking = await db.get(Booking, booking_id, populate_existing=True)
    if reason:
        booking.details = {**(booking.details or {}), "cancellation_reason": reason}
        await db.commit()
    logger.info("Cancelled booking %s, released drivers=%s", booking_id, released)

    notify(
        "customer",
        ("email",),
        booking_id=booking_id,
        notification_type="cancellation",
        payload={"email": booking.customer_email, "reference": booking.reference},
    )
    if released:
        drivers = (await db.execute(select(Driver).where(Driver.id.in_(released)))).scalars()
        for driver in drivers:
            notify(
                "driver",
                ("sms", "email"),
                booking_id=booking_id,
                notification_type="cancellation",
                payload={"phone": driver.phone, "email": driver.email, "reference": booking.reference},
            )
    return booking


# Driver reached the customer: the trip is not a no-show even if it started late
_SHOWED_UP = ("arrived", "in_progress")
_AWAITING_PICKUP = ("pending_dispatch", "assigned")


async def release_no_shows(db: AsyncSession, now: Optional[datetime] = None) -> list[str]:
    """
    Writes off paid, confirmed bookings whose pickup passed more than
    ``no_show_grace_minutes`` ago without the driver reaching the customer.
    Their assignments are cancelled and the drivers freed. Returns the booking ids.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=settings.no_show_grace_minutes)
    candidates = (
        await db.execute(
            select(Booking.id).where(
                Booking.status == "confirmed",
                Booking.payment_status == "paid",
                Booking.workflow_status.in_(_AWAITING_PICKUP),
                Booking.pickup_datetime < cutoff,
            )
        )
    ).scalars().all()

    released_ids: list[str] = []
    for booking_id in candidates:
        assignment = await active_assignment_for_booking(db, booking_id)
        if assignment is not None and assignment.status in _SHOWED_UP:
            continue

        result = await db.execute(
            update(Booking)
            .where(
                Booking.id == booking_id,
                Booking.status == "confirmed",
                Booking.workflow_status.in_(_AWAITING_PICKUP),
            )
            .values(workflow_status="no_show")
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            continue
        drivers = await release_booking_assignments(db, booking_id, reason="Customer no-show")
        await db.commit()
        released_ids.append(booking_id)

        booking = await db.get(Booking, booking_id, populate_existing=True)
        logger.warning("No-show booking %s (%s), released drivers=%s", booking_id, booking.reference, drivers)
        notify(
            "admin",
            ("email",),
            booking_id=booking_id,
            notification_type="no_show",
            payload={
                "reference": booking.reference,
                "pickup_location": booking.pickup_location,
                "pickup_datetime": booking.pickup_datetime.isoformat(),
                "customer_name": booking.customer_name,
                "released_drivers": drivers,
            },
        )

    if released_ids:
        logger.info("Released %d no-show bookings", len(released_ids))
    return released_ids
