"""
Dispatch assignment engine.

Flow:
  1. Load booking; reject unless confirmed, or if it already has an active assignment
  2. Load available vehicles of the target class
  3. Preferred driver (if free) short-circuits scoring → method "manual"
  4. Otherwise pick the highest-rated free active driver (ties: lowest id)
  5. Claim the driver with a Redis NX key, insert the assignment, flip the
     booking to "assigned" only while it is still confirmed, commit
  6. A unique-index violation means another dispatch won the driver:
     roll back and retry without that driver
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Sequence

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import AsyncSessionLocal
from app.models.booking import Booking
from app.models.driver import Driver
from app.models.trip_assignment import ACTIVE_ASSIGNMENT_STATUSES, ASSIGNMENT_FLOW, TripAssignment
from app.models.trip_log import TripLog
from app.models.vehicle import Vehicle
from app.redis_client import acquire_driver_lock, get_redis, release_driver_lock
from app.services.notifications import notify

logger = logging.getLogger(__name__)
settings = get_settings()

_background: set[asyncio.Task] = set()


class DispatchError(Exception):
    def __init__(self, code: str, message: str, status_code: int = 409, **extra):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.extra = extra


class _DriverTaken(Exception):
    def __init__(self, driver_id: str):
        super().__init__(driver_id)
        self.driver_id = driver_id


@dataclass
class DispatchResult:
    assignment: TripAssignment
    driver: Driver
    vehicle: Vehicle
    message: str


# ---------------------------------------------------------------------------
# Selection policy
# ---------------------------------------------------------------------------

def is_dispatchable(status: Optional[str], workflow_status: Optional[str]) -> bool:
    """Only paid, confirmed bookings that were not written off as a no-show take a driver."""
    return status == "confirmed" and workflow_status != "no_show"


def dispatchable_clause():
    return (
        Booking.status == "confirmed",
        func.coalesce(Booking.workflow_status, "") != "no_show",
    )


def select_best_driver(drivers: Sequence[Driver]) -> Driver:
    """Highest rating wins; ties go to the lowest driver id."""
    return min(drivers, key=lambda d: (-(d.rating or 0.0), d.id))


def pick_vehicle(driver: Driver, vehicles: Sequence[Vehicle]) -> Vehicle:
    """The driver's own vehicle when it is available, else the first available one."""
    for vehicle in vehicles:
        if vehicle.id == driver.vehicle_id:
            return vehicle
    return vehicles[0]


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def active_assignment_for_booking(db: AsyncSession, booking_id: str) -> Optional[TripAssignment]:
    result = await db.execute(
        select(TripAssignment).where(
            TripAssignment.booking_id == booking_id,
            TripAssignment.status.in_(ACTIVE_ASSIGNMENT_STATUSES),
        )
    )
    return result.scalars().first()


async def busy_driver_ids(db: AsyncSession) -> set[str]:
    result = await db.execute(
        select(TripAssignment.driver_id).where(TripAssignment.status.in_(ACTIVE_ASSIGNMENT_STATUSES))
    )
    return set(result.scalars())


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------

async def assign_booking(
    db: AsyncSession,
    booking_id: str,
    *,
    preferred_driver_id: Optional[str] = None,
    vehicle_type: Optional[str] = None,
    redis: Optional[aioredis.Redis] = None,
    assigned_by: str = "auto-dispatch-system",
    pickup_datetime: Optional[datetime] = None,
) -> DispatchResult:
    """
    Binds a driver and vehicle to a confirmed booking.
    ``pickup_datetime`` is informational: the booking's stored pickup time is
    authoritative, a differing requested time is only recorded in the trip log.
    """
    if not booking_id:
        raise DispatchError("validation_error", "Missing required field: booking_id", 400)

    excluded: set[str] = set()
    for _ in range(settings.dispatch_max_attempts):
        try:
            result = await _try_assign(
                db, booking_id, preferred_driver_id, vehicle_type, redis, excluded, assigned_by, pickup_datetime
            )
        except _DriverTaken as taken:
            logger.info("Driver %s taken concurrently, retrying booking=%s", taken.driver_id, booking_id)
            excluded.add(taken.driver_id)
            continue

        a, d, v = result.assignment, result.driver, result.vehicle
        logger.info(
            "Dispatch booking=%s → driver=%s (%s, rating %.2f) vehicle=%s method=%s",
            booking_id, d.id, d.full_name, d.rating, v.plate_number, a.assignment_method,
        )
        booking = await db.get(Booking, booking_id)
        notify(
            "driver",
            ("sms", "email"),
            booking_id=booking_id,
            notification_type="new_assignment",
            payload={
                "phone": d.phone,
                "email": d.email,
                "assignment_id": a.id,
                "reference": booking.reference if booking else None,
                "pickup_location": booking.pickup_location if booking else None,
                "pickup_datetime": booking.pickup_datetime.isoformat() if booking else None,
            },
        )
        return result

    raise DispatchError("drivers_busy", "All drivers are currently busy", 409)


async def _try_assign(
    db: AsyncSession,
    booking_id: str,
    preferred_driver_id: Optional[str],
    vehicle_type: Optional[str],
    redis: Optional[aioredis.Redis],
    excluded: set[str],
    assigned_by: str,
    pickup_datetime: Optional[datetime] = None,
) -> DispatchResult:
    booking = await db.get(Booking, booking_id)
    if booking is None:
        raise DispatchError("not_found", "Booking not found", 404)
    if not is_dispatchable(booking.status, booking.workflow_status):
        raise DispatchError(
            "invalid_state",
            f"Booking is {booking.status}/{booking.workflow_status}; only confirmed bookings can be dispatched",
            409,
            status=booking.status,
        )

    existing = await active_assignment_for_booking(db, booking_id)
    if existing is not None:
        raise DispatchError(
            "already_assigned", "Booking already has an active assignment", 409, assignment_id=existing.id
        )

    target_type = vehicle_type or booking.vehicle_type or settings.default_vehicle_type
    vehicles = list(
        (
            await db.execute(
                select(Vehicle)
                .where(func.lower(Vehicle.vehicle_type) == target_type.lower(), Vehicle.status == "available")
                .order_by(Vehicle.id)
            )
        ).scalars()
    )
    if not vehicles:
        raise DispatchError(
            "no_vehicle", f"No available vehicles of type {target_type}", 404, vehicle_type=target_type
        )

    busy = await busy_driver_ids(db) | excluded

    driver: Optional[Driver] = None
    method = "auto"
    if preferred_driver_id and preferred_driver_id not in busy:
        driver = (
            await db.execute(select(Driver).where(Driver.id == preferred_driver_id, Driver.status == "active"))
        ).scalar_one_or_none()
        if driver is not None:
            method = "manual"

    if driver is None:
        active = list((await db.execute(select(Driver).where(Driver.status == "active"))).scalars())
        if not active:
            raise DispatchError("no_driver", "No available drivers", 404)
        free = [d for d in active if d.id not in busy]
        if not free:
            raise DispatchError("drivers_busy", "All drivers are currently busy", 409)
        driver = select_best_driver(free)

    vehicle = pick_vehicle(driver, vehicles)
    driver_id = driver.id

    locked = False
    if redis is not None:
        try:
            locked = await acquire_driver_lock(redis, driver_id, booking_id, settings.driver_lock_ttl_seconds)
        except RedisError as exc:
            logger.warning("Driver lock unavailable, relying on unique index: %s", exc)
        else:
            if not locked:
                await db.rollback()
                raise _DriverTaken(driver_id)

    try:
        assignment = TripAssignment(
            booking_id=booking_id,
            driver_id=driver_id,
            vehicle_id=vehicle.id,
            assignment_method=method,
            assigned_by=assigned_by,
            status="assigned",
            notes=(
                "Assigned to preferred driver"
                if method == "manual"
                else f"Auto-assigned to highest-rated available driver ({driver.rating}/5)"
            ),
        )
        db.add(assignment)
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            if await active_assignment_for_booking(db, booking_id) is not None:
                raise DispatchError("already_assigned", "Booking already has an active assignment", 409)
            raise _DriverTaken(driver_id)

        db.add(
            TripLog(
                assignment_id=assignment.id,
                event_type="status_change",
                event_data={
                    "status": "assigned",
                    "driver_name": driver.full_name,
                    "driver_rating": driver.rating,
                    "vehicle_id": vehicle.id,
                    "plate_number": vehicle.plate_number,
                    "assignment_method": method,
                    **({"requested_pickup_datetime": pickup_datetime.isoformat()} if pickup_datetime else {}),
                },
            )
        )
        # Cancellation may have landed since the booking was read
        claimed = await db.execute(
            update(Booking)
            .where(Booking.id == booking_id, *dispatchable_clause())
            .values(workflow_status="assigned")
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            await db.rollback()
            raise DispatchError("invalid_state", "Booking is no longer confirmed", 409)
        await db.commit()
    finally:
        if locked:
            try:
                await release_driver_lock(redis, driver_id, booking_id)
            except RedisError as exc:
                logger.warning("Failed to release driver lock %s: %s", driver_id, exc)

    return DispatchResult(
        assignment=assignment,
        driver=driver,
        vehicle=vehicle,
        message="Booking assigned to preferred driver" if method == "manual" else "Booking auto-assigned successfully",
    )


def schedule_auto_dispatch(booking_id: str) -> None:
    """Run auto-dispatch in the background with its own session (fire-and-forget)."""
    task = asyncio.create_task(_run_auto_dispatch(booking_id))
    _background.add(task)
    task.add_done_callback(_background.discard)


async def _run_auto_dispatch(booking_id: str) -> None:
    try:
        async with AsyncSessionLocal() as db:
            await assign_booking(db, booking_id, redis=await get_redis())
    except DispatchError as exc:
        logger.warning("Auto-dispatch left booking %s pending: %s", booking_id, exc.message)
    except Exception as exc:
        logger.error("Auto-dispatch failed for booking %s: %s", booking_id, exc, exc_info=True)


# ---------------------------------------------------------------------------
# Driver-facing lifecycle
# ---------------------------------------------------------------------------

_STAMPS = {"accepted": "accepted_at", "in_progress": "started_at", "completed": "completed_at"}


async def advance_assignment(
    db: AsyncSession,
    assignment_id: str,
    new_status: str,
    *,
    driver_id: Optional[str] = None,
) -> tuple[TripAssignment, str]:
    """
    Moves an assignment exactly one step along ASSIGNMENT_FLOW.
    Returns (assignment, booking_status).
    """
    assignment = await db.get(TripAssignment, assignment_id)
    if assignment is None:
        raise DispatchError("not_found", "Assignment not found", 404)
    if driver_id is not None and assignment.driver_id != driver_id:
        raise DispatchError("forbidden", "Assignment belongs to another driver", 403)

    current = assignment.status
    if (
        current not in ASSIGNMENT_FLOW
        or new_status not in ASSIGNMENT_FLOW
        or ASSIGNMENT_FLOW.index(new_status) != ASSIGNMENT_FLOW.index(current) + 1
    ):
        raise DispatchError(
            "invalid_transition", f"Cannot move assignment from {current} to {new_status}", 409
        )

    values: dict = {"status": new_status}
    if new_status in _STAMPS:
        values[_STAMPS[new_status]] = datetime.now(timezone.utc)

    result = await db.execute(
        update(TripAssignment)
        .where(TripAssignment.id == assignment_id, TripAssignment.status == current)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        raise DispatchError("invalid_transition", "Assignment status changed concurrently", 409)

    booking_values: dict = {}
    if new_status == "in_progress":
        booking_values = {"status": "in_progress"}
    elif new_status == "completed":
        booking_values = {"status": "completed", "workflow_status": "completed"}
    if booking_values:
        await db.execute(
            update(Booking)
            .where(Booking.id == assignment.booking_id, Booking.status.in_(("confirmed", "in_progress")))
            .values(**booking_values)
            .execution_options(synchronize_session=False)
        )

    db.add(
        TripLog(
            assignment_id=assignment_id,
            event_type="status_change",
            event_data={"from": current, "status": new_status},
        )
    )
    await db.commit()

    await db.refresh(assignment)
    booking = await db.get(Booking, assignment.booking_id, populate_existing=True)
    logger.info("Assignment %s: %s → %s", assignment_id, current, new_status)
    return assignment, booking.status


async def release_booking_assignments(
    db: AsyncSession, booking_id: str, reason: Optional[str] = None
) -> list[str]:
    """Cancel active assignments of a booking. Caller commits. Returns freed driver ids."""
    result = await db.execute(
        select(TripAssignment).where(
            TripAssignment.booking_id == booking_id,
            TripAssignment.status.in_(ACTIVE_ASSIGNMENT_STATUSES),
        )
    )
    released = []
    for assignment in result.scalars():
        previous = assignment.status
        assignment.status = "cancelled"
        if reason:
            assignment.notes = reason
        db.add(
            TripLog(
                assignment_id=assignment.id,
                event_type="status_change",
                event_data={"from": previous, "status": "cancelled", **({"reason": reason} if reason else {})},
            )
        )
        released.append(assignment.driver_id)
    return released
