import uuid
from datetime import datetime
from sqlalchemy import String, Text, DateTime, ForeignKey, Index, func, text
from sqlalchemy.orm import Mapped, mapped_column
from app.database import Base

# Linear driver-facing lifecycle; "cancelled" is reachable only through booking cancellation.
ASSIGNMENT_FLOW = ("assigned", "accepted", "en_route_pickup", "arrived", "in_progress", "completed")
ACTIVE_ASSIGNMENT_STATUSES = ("assigned", "accepted", "en_route_pickup", "arrived", "in_progress")

_ACTIVE_CLAUSE = text(
    "status IN ('assigned', 'accepted', 'en_route_pickup', 'arrived', 'in_progress')"
)


class TripAssignment(Base):
    __tablename__ = "trip_assignments"
    __table_args__ = (
        # At most one active assignment per booking and per driver
        Index(
            "uq_trip_assignments_active_booking",
            "booking_id",
            unique=True,
            postgresql_where=_ACTIVE_CLAUSE,
            sqlite_where=_ACTIVE_CLAUSE,
        ),
        Index(
            "uq_trip_assignments_active_driver",
            "driver_id",
            unique=True,
            postgresql_where=_ACTIVE_CLAUSE,
            sqlite_where=_ACTIVE_CLAUSE,
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id: Mapped[str] = mapped_column(String, ForeignKey("bookings.id"), nullable=False, index=True)
    driver_id: Mapped[str] = mapped_column(String, ForeignKey("drivers.id"), nullable=False, index=True)
    vehicle_id: Mapped[str] = mapped_column(String, ForeignKey("vehicles.id"), nullable=False)

    # auto | manual
    assignment_method: Mapped[str] = mapped_column(String(20), nullable=False, default="auto")
    assigned_by: Mapped[str] = mapped_column(String(100), nullable=False, default="auto-dispatch-system")
    # assigned | accepted | en_route_pickup | arrived | in_progress | completed | cancelled
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="assigned", index=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
