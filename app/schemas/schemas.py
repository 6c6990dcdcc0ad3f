from datetime import datetime
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TripTypeEnum(str, Enum):
    one_way = "one_way"
    round_trip = "round_trip"


class BookingStatusEnum(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"
    payment_failed = "payment_failed"
    payment_expired = "payment_expired"


class PaymentStatusEnum(str, Enum):
    pending = "pending"
    paid = "paid"
    failed = "failed"
    expired = "expired"
    refunded = "refunded"


class AssignmentStatusEnum(str, Enum):
    assigned = "assigned"
    accepted = "accepted"
    en_route_pickup = "en_route_pickup"
    arrived = "arrived"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


def _normalize_trip_type(value: Any) -> Any:
    if isinstance(value, str) and value.lower().replace("-", "_") in ("round_trip", "roundtrip"):
        return TripTypeEnum.round_trip
    if value in (None, ""):
        return TripTypeEnum.one_way
    return value


# ---------------------------------------------------------------------------
# Quote schemas
# ---------------------------------------------------------------------------

class FareRequest(BaseModel):
    origin: str = Field(..., min_length=1, max_length=500)
    destination: str = Field(..., min_length=1, max_length=500)
    vehicle_type: str = Field(..., min_length=1, max_length=50)
    vehicle_type_id: Optional[str] = None
    trip_type: TripTypeEnum = TripTypeEnum.one_way

    @field_validator("trip_type", mode="before")
    @classmethod
    def normalize_trip_type(cls, v):
        return _normalize_trip_type(v)


class FareResponse(BaseModel):
    vehicle_type: str
    vehicle_type_id: str
    trip_type: TripTypeEnum
    total_price: float
    original_price: float
    base_price: float
    discount_percentage: float
    origin_zone: Optional[str] = None
    destination_zone: Optional[str] = None
    price_source: str
    currency: str = "usd"


class MultiQuoteRequest(BaseModel):
    origin: str = Field(..., min_length=1, max_length=500)
    destination: str = Field(..., min_length=1, max_length=500)
    trip_type: TripTypeEnum = TripTypeEnum.one_way
    passengers: Optional[int] = Field(default=None, ge=1, le=60)
    luggage: Optional[int] = Field(default=None, ge=0, le=60)

    @field_validator("trip_type", mode="before")
    @classmethod
    def normalize_trip_type(cls, v):
        return _normalize_trip_type(v)


class MultiQuoteResponse(BaseModel):
    origin: str
    destination: str
    trip_type: TripTypeEnum
    quotes: list[FareResponse]


# ---------------------------------------------------------------------------
# Booking schemas
# ---------------------------------------------------------------------------

class BookingCreateRequest(BaseModel):
    customer_name: str = Field(..., min_length=1, max_length=255)
    customer_email: str = Field(..., min_length=3, max_length=255)
    customer_phone: Optional[str] = Field(default=None, max_length=30)
    pickup_location: str = Field(..., min_length=1, max_length=500)
    dropoff_location: str = Field(..., min_length=1, max_length=500)
    pickup_datetime: datetime
    passengers: int = Field(default=1, ge=1, le=60)
    vehicle_type: str = Field(default="sedan", min_length=1, max_length=50)
    vehicle_type_id: Optional[str] = None
    trip_type: TripTypeEnum = TripTypeEnum.one_way
    source: str = Field(default="web", max_length=30)

    @field_validator("trip_type", mode="before")
    @classmethod
    def normalize_trip_type(cls, v):
        return _normalize_trip_type(v)

    @field_validator("customer_email")
    @classmethod
    def email_has_at(cls, v: str) -> str:
        if "@" not in v:
            raise ValueError("customer_email must be an email address")
        return v.strip().lower()


class AssignmentBrief(BaseModel):
    id: str
    driver_id: str
    vehicle_id: str
    assignment_method: str
    status: AssignmentStatusEnum

    model_config = {"from_attributes": True}


class BookingResponse(BaseModel):
    id: str
    reference: Optional[str] = None
    customer_name: str
    customer_email: str
    pickup_location: str
    dropoff_location: str
    pickup_datetime: datetime
    passengers: int
    vehicle_type: str
    total_price: float
    currency: str
    status: BookingStatusEnum
    payment_status: PaymentStatusEnum
    workflow_status: Optional[str] = None
    details: dict = Field(default_factory=dict)
    assignment: Optional[AssignmentBrief] = None

    model_config = {"from_attributes": True}


class BookingCreateResponse(BaseModel):
    booking: BookingResponse
    payment_required: bool
    checkout_url: Optional[str] = None
    warnings: list[str] = Field(default_factory=list)


class CheckoutResponse(BaseModel):
    booking_id: str
    session_id: Optional[str] = None
    checkout_url: Optional[str] = None
    warnings: list[str] = Field(default_factory=list)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


# ---------------------------------------------------------------------------
# Dispatch schemas
# ---------------------------------------------------------------------------

class DispatchRequest(BaseModel):
    booking_id: str = Field(..., min_length=1)
    preferred_driver_id: Optional[str] = None
    vehicle_type: Optional[str] = None
    pickup_datetime: Optional[datetime] = None


class NoShowResponse(BaseModel):
    no_shows_detected: int
    booking_ids: list[str]


class DriverBrief(BaseModel):
    id: str
    first_name: str
    last_name: str
    rating: float
    phone: Optional[str] = None

    model_config = {"from_attributes": True}


class VehicleBrief(BaseModel):
    id: str
    vehicle_type: str
    plate_number: str
    capacity: int

    model_config = {"from_attributes": True}


class DispatchResponse(BaseModel):
    success: bool = True
    assignment: AssignmentBrief
    driver: DriverBrief
    vehicle: VehicleBrief
    message: str


class AssignmentStatusUpdate(BaseModel):
    status: AssignmentStatusEnum


class AssignmentStatusResponse(BaseModel):
    assignment_id: str
    booking_id: str
    status: AssignmentStatusEnum
    booking_status: BookingStatusEnum


# ---------------------------------------------------------------------------
# Webhook schemas
# ---------------------------------------------------------------------------

class WebhookAck(BaseModel):
    received: bool = True
    event_type: str
    outcome: str
    booking_id: Optional[str] = None
