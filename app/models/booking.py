import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import String, Integer, Numeric, DateTime, JSON, func
from sqlalchemy.orm import Mapped, mapped_column
from app.database import Base


class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    reference: Mapped[str | None] = mapped_column(String(40), unique=True, nullable=True)

    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    customer_phone: Mapped[str | None] = mapped_column(String(30), nullable=True)

    pickup_location: Mapped[str] = mapped_column(String(500), nullable=False)
    dropoff_location: Mapped[str] = mapped_column(String(500), nullable=False)
    pickup_datetime: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    passengers: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    vehicle_type: Mapped[str] = mapped_column(String(50), nullable=False, default="sedan")
    vehicle_type_id: Mapped[str | None] = mapped_column(String, nullable=True)
    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(5), default="usd")

    # pending | confirmed | in_progress | completed | cancelled | payment_failed | payment_expired
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="pending", index=True)
    # pending | paid | failed | expired | refunded
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    # pending_dispatch | assigned | completed | cancelled
    workflow_status: Mapped[str | None] = mapped_column(String(30), nullable=True, index=True)

    source: Mapped[str] = mapped_column(String(30), nullable=False, default="web")
    # trip_type, price_source, pricing_rule_id, discount_percentage, original_price, zones
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    payment_details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
