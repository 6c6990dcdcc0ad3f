"""
Dispatch router: POST /v1/dispatch, POST /v1/dispatch/no-shows
"""
import logging

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.middleware.auth import get_current_dispatcher
from app.redis_client import get_redis
from app.schemas.schemas import (
    AssignmentBrief,
    DispatchRequest,
    DispatchResponse,
    DriverBrief,
    NoShowResponse,
    VehicleBrief,
)
from app.services.bookings import release_no_shows
from app.services.dispatch import assign_booking

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/dispatch", tags=["Dispatch"])


@router.post("", response_model=DispatchResponse)
async def dispatch_booking(
    payload: DispatchRequest,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
    dispatcher_id: str = Depends(get_current_dispatcher),
):
    """
    Bind a driver and vehicle to a booking. Failures come back as
    {"error": ..., "code": ...} through the DispatchError handler.
    """
    result = await assign_booking(
        db,
        payload.booking_id,
        preferred_driver_id=payload.preferred_driver_id,
        vehicle_type=payload.vehicle_type,
        redis=redis,
        assigned_by=dispatcher_id,
        pickup_datetime=payload.pickup_datetime,
    )
    return DispatchResponse(
        assignment=AssignmentBrief.model_validate(result.assignment),
        driver=DriverBrief.model_validate(result.driver),
        vehicle=VehicleBrief.model_validate(result.vehicle),
        message=result.message,
    )


@router.post("/no-shows", response_model=NoShowResponse)
async def sweep_no_shows(
    db: AsyncSession = Depends(get_db),
    dispatcher_id: str = Depends(get_current_dispatcher),
):
    """Release bookings whose pickup window lapsed without the driver reaching the customer."""
    booking_ids = await release_no_shows(db)
    logger.info("No-show sweep by %s released %d bookings", dispatcher_id, len(booking_ids))
    return NoShowResponse(no_shows_detected=len(booking_ids), booking_ids=booking_ids)
