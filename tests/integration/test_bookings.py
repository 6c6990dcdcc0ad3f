"""
Booking creation, checkout, cancellation and no-show services.
"""
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from app.models.booking import Booking
from app.models.trip_assignment import TripAssignment
from app.schemas.schemas import BookingCreateRequest
from app.services.bookings import (
    BookingError,
    cancel_booking,
    create_booking,
    generate_reference,
    release_no_shows,
    start_checkout,
)
from app.services.dispatch import advance_assignment, assign_booking
from app.services.payment import PSPError


def booking_request(**overrides) -> BookingCreateRequest:
    data = dict(
        customer_name="Ana Perez",
        customer_email="Ana@Example.com",
        pickup_location="PUJ Airport",
        dropoff_location="Hard Rock Hotel",
        pickup_datetime="2026-12-01T10:00:00Z",
        passengers=2,
        vehicle_type="sedan",
        trip_type="round-trip",
    )
    data.update(overrides)
    return BookingCreateRequest(**data)


class TestReference:
    def test_format(self):
        ref = generate_reference()
        prefix, stamp, suffix = ref.split("-")
        assert prefix == "TRF"
        assert stamp.isalnum() and stamp.isupper()
        assert len(suffix) == 4

    def test_unique(self):
        assert len({generate_reference() for _ in range(200)}) == 200


@pytest.mark.asyncio
class TestCreateBooking:
    async def test_server_side_price(self, db, catalog):
        booking, quote = await create_booking(db, booking_request(), idempotency_key="key-1")

        assert booking.total_price == Decimal("48")
        assert booking.vehicle_type == "sedan"
        assert booking.vehicle_type_id == "vt-sedan"
        assert booking.customer_email == "ana@example.com"
        assert booking.status == "pending"
        assert booking.payment_status == "pending"
        assert booking.details["trip_type"] == "round_trip"
        assert booking.details["price_source"] == "pricing_rules"
        assert booking.reference.startswith("TRF-")
        assert quote.pricing_rule_id == "rule-sedan"


@pytest.mark.asyncio
class TestStartCheckout:
    async def test_provider_not_configured_is_warning(self, db, make_booking):
        booking = await make_booking()
        session, warnings = await start_checkout(db, booking)
        assert session is None
        assert warnings and "could not be created" in warnings[0]

    async def test_success_stores_session(self, db, make_booking):
        booking = await make_booking()
        fake = AsyncMock(return_value={"session_id": "cs_1", "url": "https://checkout.stripe.com/c/cs_1"})
        with patch("app.services.bookings.create_checkout_session", fake):
            session, warnings = await start_checkout(db, booking)

        assert session["session_id"] == "cs_1"
        assert warnings == []
        assert booking.payment_details["stripe_session_id"] == "cs_1"
        assert fake.await_args.args[0] == booking.id

    async def test_provider_error_is_warning(self, db, make_booking):
        booking = await make_booking()
        with patch("app.services.bookings.create_checkout_session", AsyncMock(side_effect=PSPError("card network down"))):
            session, warnings = await start_checkout(db, booking)
        assert session is None
        assert "card network down" in warnings[0]
        assert booking.status == "pending"

    async def test_below_minimum_charge(self, db, make_booking):
        booking = await make_booking(total_price=Decimal("0.50"))
        fake = AsyncMock()
        with patch("app.services.bookings.create_checkout_session", fake):
            session, warnings = await start_checkout(db, booking)

        assert session is None
        fake.assert_not_awaited()
        assert "below the minimum" in warnings[0]
        booking = await db.get(Booking, booking.id, populate_existing=True)
        assert booking.details["payment_blocked_reason"] == "below_minimum_charge"
        assert booking.status == "pending"

    async def test_paid_booking_rejected(self, db, make_booking):
        booking = await make_booking(status="confirmed", payment_status="paid")
        with pytest.raises(BookingError) as exc:
            await start_checkout(db, booking)
        assert exc.value.status_code == 409


@pytest.mark.asyncio
class TestCancelBooking:
    async def test_releases_assignment(self, db, make_vehicle, make_driver, make_booking, side_effects):
        await make_vehicle("veh-1")
        await make_driver("drv-a")
        booking = await make_booking(status="confirmed", payment_status="paid")
        other = await make_booking(status="confirmed", payment_status="paid")
        assignment = (await assign_booking(db, booking.id)).assignment

        cancelled = await cancel_booking(db, booking.id, "Flight cancelled")

        assert cancelled.status == "cancelled"
        assert cancelled.workflow_status == "cancelled"
        assert cancelled.details["cancellation_reason"] == "Flight cancelled"
        row = (await db.execute(select(TripAssignment.status).where(TripAssignment.id == assignment.id))).scalar_one()
        assert row == "cancelled"
        kinds = [c.args[0] for c in side_effects.notify_bookings.call_args_list]
        assert kinds == ["customer", "driver"]
        # Driver is free again
        assert (await assign_booking(db, other.id)).driver.id == "drv-a"

    async def test_completed_cannot_cancel(self, db, make_booking):
        booking = await make_booking(status="completed", payment_status="paid")
        with pytest.raises(BookingError) as exc:
            await cancel_booking(db, booking.id)
        assert exc.value.status_code == 409

    async def test_unknown_booking(self, db):
        with pytest.raises(BookingError) as exc:
            await cancel_booking(db, "nope")
        assert exc.value.status_code == 404


# Default factory pickup is 2026-12-01 10:00 UTC; the grace window is 30 minutes
PAST_GRACE = datetime(2026, 12, 1, 10, 45, tzinfo=timezone.utc)
WITHIN_GRACE = datetime(2026, 12, 1, 10, 20, tzinfo=timezone.utc)


@pytest.mark.asyncio
class TestReleaseNoShows:
    async def _assigned(self, db, make_vehicle, make_driver, make_booking):
        await make_vehicle("veh-1")
        await make_driver("drv-a")
        booking = await make_booking(status="confirmed", payment_status="paid", workflow_status="pending_dispatch")
        assignment = (await assign_booking(db, booking.id)).assignment
        return booking, assignment

    async def test_stale_assignment_released(self, db, make_vehicle, make_driver, make_booking, side_effects):
        booking, assignment = await self._assigned(db, make_vehicle, make_driver, make_booking)

        released = await release_no_shows(db, now=PAST_GRACE)

        assert released == [booking.id]
        booking = await db.get(Booking, booking.id, populate_existing=True)
        assert booking.workflow_status == "no_show"
        assert booking.status == "confirmed"
        assignment = await db.get(TripAssignment, assignment.id, populate_existing=True)
        assert assignment.status == "cancelled"
        assert assignment.notes == "Customer no-show"
        side_effects.notify_bookings.assert_called_once()
        kwargs = side_effects.notify_bookings.call_args.kwargs
        assert kwargs["notification_type"] == "no_show"
        assert kwargs["payload"]["released_drivers"] == ["drv-a"]

        # The driver is free for the next booking
        other = await make_booking(status="confirmed", payment_status="paid", customer_email="bo@example.com")
        assert (await assign_booking(db, other.id)).driver.id == "drv-a"

    async def test_driver_en_route_still_no_show(self, db, make_vehicle, make_driver, make_booking):
        booking, assignment = await self._assigned(db, make_vehicle, make_driver, make_booking)
        for step in ("accepted", "en_route_pickup"):
            await advance_assignment(db, assignment.id, step)

        assert await release_no_shows(db, now=PAST_GRACE) == [booking.id]

    async def test_arrived_driver_untouched(self, db, make_vehicle, make_driver, make_booking, side_effects):
        booking, assignment = await self._assigned(db, make_vehicle, make_driver, make_booking)
        for step in ("accepted", "en_route_pickup", "arrived"):
            await advance_assignment(db, assignment.id, step)

        assert await release_no_shows(db, now=PAST_GRACE) == []

        booking = await db.get(Booking, booking.id, populate_existing=True)
        assert booking.workflow_status == "assigned"
        assignment = await db.get(TripAssignment, assignment.id, populate_existing=True)
        assert assignment.status == "arrived"
        side_effects.notify_bookings.assert_not_called()

    async def test_undispatched_booking_released(self, db, make_booking):
        booking = await make_booking(status="confirmed", payment_status="paid", workflow_status="pending_dispatch")

        assert await release_no_shows(db, now=PAST_GRACE) == [booking.id]

    async def test_within_grace_untouched(self, db, make_vehicle, make_driver, make_booking):
        await self._assigned(db, make_vehicle, make_driver, make_booking)

        assert await release_no_shows(db, now=WITHIN_GRACE) == []

    async def test_unpaid_and_cancelled_ignored(self, db, make_booking):
        await make_booking()
        await make_booking(status="cancelled", payment_status="refunded", workflow_status="cancelled")

        assert await release_no_shows(db, now=PAST_GRACE) == []

    async def test_second_sweep_is_noop(self, db, make_booking):
        await make_booking(status="confirmed", payment_status="paid", workflow_status="pending_dispatch")
        await release_no_shows(db, now=PAST_GRACE)

        assert await release_no_shows(db, now=PAST_GRACE) == []
