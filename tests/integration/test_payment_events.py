"""
Payment event processing against a real (SQLite) database.
Redelivered and out-of-order events must apply at most once.
"""
import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from app.models.booking import Booking
from app.services.payment_events import (
    BookingNotFoundError, MalformedEventError, parse_event, process_payment_event,
)


async def reload(db, booking_id) -> Booking:
    return await db.get(Booking, booking_id, populate_existing=True)


class TestParseEvent:
    def test_checkout_completed(self, make_checkout_event):
        event = parse_event(make_checkout_event("bk-1"))
        assert event.booking_id == "bk-1"
        assert event.payment_status == "paid"
        assert event.provider_transaction_id == "pi_test_123"
        assert str(event.amount) == "25"

    def test_payment_failed(self):
        event = parse_event({
            "id": "evt_2",
            "type": "payment_intent.payment_failed",
            "data": {"object": {
                "id": "pi_9", "amount": 4800, "currency": "usd", "status": "requires_payment_method",
                "metadata": {"booking_id": "bk-2"},
                "last_payment_error": {"message": "Card declined"},
            }},
        })
        assert event.booking_id == "bk-2"
        assert event.provider_transaction_id == "pi_9"
        assert event.failure_message == "Card declined"

    def test_missing_type(self):
        with pytest.raises(MalformedEventError):
            parse_event({"data": {}})


@pytest.mark.asyncio
class TestPaymentCompleted:
    async def test_confirms_pending_booking(self, db, make_booking, make_checkout_event, side_effects):
        booking = await make_booking()
        outcome = await process_payment_event(db, parse_event(make_checkout_event(booking.id)))

        assert outcome.outcome == "confirmed"
        booking = await reload(db, booking.id)
        assert booking.status == "confirmed"
        assert booking.payment_status == "paid"
        assert booking.workflow_status == "pending_dispatch"
        assert booking.reference.startswith("TRF-")
        assert booking.payment_details["stripe_payment_intent"] == "pi_test_123"
        assert booking.payment_details["paid_amount"] == 25.0
        side_effects.auto_dispatch.assert_called_once_with(booking.id)

    async def test_redelivery_applies_once(self, db, make_booking, make_checkout_event, side_effects):
        booking = await make_booking()
        event = parse_event(make_checkout_event(booking.id))

        outcomes = [(await process_payment_event(db, event)).outcome for _ in range(5)]

        assert outcomes == ["confirmed"] + ["skipped"] * 4
        assert side_effects.auto_dispatch.call_count == 1
        kinds = [c.args[0] for c in side_effects.notify_payment.call_args_list]
        assert sorted(kinds) == ["admin", "customer"]

    async def test_existing_reference_kept(self, db, make_booking, make_checkout_event):
        booking = await make_booking(reference="TRF-KEEP-0001")
        await process_payment_event(db, parse_event(make_checkout_event(booking.id)))
        assert (await reload(db, booking.id)).reference == "TRF-KEEP-0001"

    async def test_unpaid_session_ignored(self, db, make_booking, make_checkout_event, side_effects):
        booking = await make_booking()
        outcome = await process_payment_event(db, parse_event(make_checkout_event(booking.id, payment_status="unpaid")))
        assert outcome.outcome == "ignored"
        assert (await reload(db, booking.id)).status == "pending"
        side_effects.auto_dispatch.assert_not_called()

    async def test_cancelled_booking_not_confirmed(self, db, make_booking, make_checkout_event, side_effects):
        booking = await make_booking(status="cancelled")
        outcome = await process_payment_event(db, parse_event(make_checkout_event(booking.id)))
        assert outcome.outcome == "skipped"
        assert (await reload(db, booking.id)).payment_status == "pending"
        side_effects.notify_payment.assert_not_called()

    async def test_late_success_after_failure_confirms(self, db, make_booking, make_checkout_event):
        booking = await make_booking(status="payment_failed", payment_status="failed")
        outcome = await process_payment_event(db, parse_event(make_checkout_event(booking.id)))
        assert outcome.outcome == "confirmed"

    async def test_missing_booking_id(self, db, make_checkout_event):
        with pytest.raises(MalformedEventError):
            await process_payment_event(db, parse_event(make_checkout_event(None)))

    async def test_unknown_booking(self, db, make_checkout_event):
        with pytest.raises(BookingNotFoundError):
            await process_payment_event(db, parse_event(make_checkout_event("does-not-exist")))

    async def test_unhandled_event_type(self, db, make_checkout_event):
        outcome = await process_payment_event(db, parse_event(make_checkout_event("bk", event_type="charge.refunded")))
        assert outcome.outcome == "ignored"


@pytest.mark.asyncio
class TestUnpaidOutcomes:
    async def test_expired(self, db, make_booking, make_checkout_event):
        booking = await make_booking()
        outcome = await process_payment_event(
            db, parse_event(make_checkout_event(booking.id, event_type="checkout.session.expired", payment_status="unpaid"))
        )
        assert outcome.outcome == "expired"
        booking = await reload(db, booking.id)
        assert (booking.status, booking.payment_status) == ("payment_expired", "expired")

    async def test_expiry_after_payment_is_noop(self, db, make_booking, make_checkout_event):
        booking = await make_booking()
        await process_payment_event(db, parse_event(make_checkout_event(booking.id)))
        outcome = await process_payment_event(
            db, parse_event(make_checkout_event(booking.id, event_type="checkout.session.expired", payment_status="unpaid"))
        )
        assert outcome.outcome == "skipped"
        booking = await reload(db, booking.id)
        assert (booking.status, booking.payment_status) == ("confirmed", "paid")

    async def test_failed_then_redelivered(self, db, make_booking):
        booking = await make_booking()
        raw = {
            "id": "evt_f",
            "type": "payment_intent.payment_failed",
            "data": {"object": {
                "id": "pi_f", "amount": 2500, "currency": "usd",
                "metadata": {"booking_id": booking.id},
                "last_payment_error": {"message": "Insufficient funds"},
            }},
        }
        first = await process_payment_event(db, parse_event(raw))
        second = await process_payment_event(db, parse_event(raw))

        assert (first.outcome, second.outcome) == ("failed", "skipped")
        booking = await reload(db, booking.id)
        assert (booking.status, booking.payment_status) == ("payment_failed", "failed")
        assert booking.payment_details["failure_message"] == "Insufficient funds"

    async def test_unknown_booking(self, db, make_checkout_event):
        with pytest.raises(BookingNotFoundError):
            await process_payment_event(
                db, parse_event(make_checkout_event("missing", event_type="checkout.session.expired"))
            )


@pytest.mark.asyncio
class TestConcurrentDelivery:
    """Two webhook deliveries processed at once, each on its own session and connection."""

    async def _seed(self, session_factory) -> str:
        async with session_factory() as session:
            booking = Booking(
                customer_name="Ana Perez",
                customer_email="ana@example.com",
                pickup_location="PUJ Airport",
                dropoff_location="Hard Rock Hotel Punta Cana",
                pickup_datetime=datetime(2026, 12, 1, 10, 0, tzinfo=timezone.utc),
                vehicle_type="sedan",
                total_price=Decimal("25"),
                currency="usd",
                status="pending",
                payment_status="pending",
                details={"trip_type": "one_way"},
            )
            session.add(booking)
            await session.commit()
            return booking.id

    async def _deliver(self, session_factory, raw: dict):
        async with session_factory() as session:
            return await process_payment_event(session, parse_event(raw))

    async def test_duplicate_success_confirms_once(self, file_session_factory, make_checkout_event, side_effects):
        booking_id = await self._seed(file_session_factory)
        raw = make_checkout_event(booking_id)

        outcomes = await asyncio.gather(
            self._deliver(file_session_factory, raw),
            self._deliver(file_session_factory, raw),
        )

        assert sorted(o.outcome for o in outcomes) == ["confirmed", "skipped"]
        side_effects.auto_dispatch.assert_called_once_with(booking_id)
        assert sorted(c.args[0] for c in side_effects.notify_payment.call_args_list) == ["admin", "customer"]
        async with file_session_factory() as session:
            booking = await session.get(Booking, booking_id)
            assert (booking.status, booking.payment_status) == ("confirmed", "paid")

    async def test_success_racing_expiry_ends_paid(self, file_session_factory, make_checkout_event, side_effects):
        booking_id = await self._seed(file_session_factory)
        paid = make_checkout_event(booking_id)
        expired = make_checkout_event(booking_id, event_type="checkout.session.expired", payment_status="unpaid")

        outcomes = await asyncio.gather(
            self._deliver(file_session_factory, paid),
            self._deliver(file_session_factory, expired),
        )

        # Either order is legal; a late success still confirms after an expiry
        assert outcomes[0].outcome == "confirmed"
        assert outcomes[1].outcome in ("expired", "skipped")
        side_effects.auto_dispatch.assert_called_once_with(booking_id)
        async with file_session_factory() as session:
            booking = await session.get(Booking, booking_id)
            assert (booking.status, booking.payment_status) == ("confirmed", "paid")
