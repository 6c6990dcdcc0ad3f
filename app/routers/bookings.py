"""
Bookings router: POST /v1/bookings, GET /v1/bookings/{id},
                  POST /v1/bookings/{id}/checkout, POST /v1/bookings/{id}/cancel
"""
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.middleware.auth import get_current_dispatcher
from app.middleware.idempotency import check_idempotency, store_idempotency_result
from app.models.booking import Booking
from app.schemas.schemas import (
    AssignmentBrief, BookingCreateRequest, BookingCreateResponse, BookingResponse,
    CancelRequest, CheckoutResponse,
)
from app.services.bookings import BookingError, cancel_booking, create_booking, start_checkout
from app.services.dispatch import active_assignment_for_booking
from app.services.pricing import FareError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/bookings", tags=["Bookings"])


async def _booking_response(db: AsyncSession, booking: Booking) -> BookingResponse:
    assignment = await active_assignment_for_booking(db, booking.id)
    resp = BookingResponse.model_validate(booking)
    if assignment is not None:
        resp.assignment = AssignmentBrief.model_validate(assignment)
    return resp


@router.post("", status_code=status.HTTP_201_CREATED, response_model=BookingCreateResponse)
async def create_booking_endpoint(
    payload: BookingCreateRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    """
    Create a booking with a server-computed fare and open a checkout session.
    Checkout problems are reported as warnings; the booking is kept either way.
    """
    # 1. Idempotency check
    if idempotency_key:
        cached = await check_idempotency(request)
        if cached:
            return cached

    # 2. Price + persist
    try:
        booking, _ = await create_booking(db, payload, idempotency_key)
    except FareError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    # 3. Checkout (soft-fail)
    session, warnings = None, []
    if booking.payment_status == "pending":
        session, warnings = await start_checkout(db, booking)

    response = BookingCreateResponse(
        booking=await _booking_response(db, booking),
        payment_required=session is not None,
        checkout_url=session["url"] if session else None,
        warnings=warnings,
    )

    # 4. Store idempotency result
    if idempotency_key:
        await store_idempotency_result(request, idempotency_key, 201, response.model_dump(mode="json"))

    return response


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(booking_id: str, db: AsyncSession = Depends(get_db)):
    booking = await db.get(Booking, booking_id)
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    return await _booking_response(db, booking)


@router.post("/{booking_id}/checkout", response_model=CheckoutResponse)
async def retry_checkout(booking_id: str, db: AsyncSession = Depends(get_db)):
    """Open a fresh checkout session for a booking that is still unpaid."""
    booking = await db.get(Booking, booking_id)
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    try:
        session, warnings = await start_checkout(db, booking)
    except BookingError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)
    return CheckoutResponse(
        booking_id=booking.id,
        session_id=session["session_id"] if session else None,
        checkout_url=session["url"] if session else None,
        warnings=warnings,
    )


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking_endpoint(
    booking_id: str,
    payload: CancelRequest,
    db: AsyncSession = Depends(get_db),
    dispatcher_id: str = Depends(get_current_dispatcher),
):
    try:
        booking = await cancel_booking(db, booking_id, payload.reason)
    except BookingError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)
    logger.info("Booking %s cancelled by %s", booking_id, dispatcher_id)
    return await _booking_response(db, booking)
