from app.models.booking import Booking
from app.models.driver import Driver
from app.models.global_discount import GlobalDiscount
from app.models.hotel_zone import HotelZone
from app.models.pricing_rule import PricingRule
from app.models.trip_assignment import TripAssignment
from app.models.trip_log import TripLog
from app.models.vehicle import Vehicle
from app.models.vehicle_type import VehicleType

__all__ = [
    "Booking",
    "Driver",
    "GlobalDiscount",
    "HotelZone",
    "PricingRule",
    "TripAssignment",
    "TripLog",
    "Vehicle",
    "VehicleType",
]
