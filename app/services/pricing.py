"""
Fare calculation service.

``compute_fare`` is a pure function of a ``PricingSnapshot`` (vehicle classes,
pricing rules, hotel zones and the discount active at load time). The snapshot
is loaded once per request by ``load_pricing_snapshot``.

Rounding is ROUND_HALF_UP to whole currency units, applied in this order:
discount → round → round-trip multiplier → round.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.models.global_discount import GlobalDiscount
from app.models.hotel_zone import HotelZone
from app.models.pricing_rule import PricingRule
from app.models.vehicle_type import VehicleType
from app.services.zones import HotelZoneEntry, SubstringZoneResolver, ZoneResolver

settings = get_settings()

ROUNDTRIP_MULTIPLIER = Decimal(settings.roundtrip_multiplier)
FALLBACK_BASE_PRICE = Decimal(settings.fallback_base_price)

ONE_WAY = "one_way"
ROUND_TRIP = "round_trip"


class FareError(Exception):
    pass


# ---------------------------------------------------------------------------
# Snapshot types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ActiveDiscount:
    percent: Decimal
    valid_from: datetime
    valid_to: Optional[datetime] = None
    version: Optional[str] = None


@dataclass(frozen=True)
class VehicleClass:
    id: str
    name: str
    passenger_capacity: int = 4
    luggage_capacity: int = 4
    minimum_fare: Optional[Decimal] = None


@dataclass(frozen=True)
class FareRule:
    id: str
    vehicle_type_id: str
    origin: str
    destination: str
    base_price: Decimal
    no_discount_allowed: bool = False


@dataclass(frozen=True)
class PricingSnapshot:
    vehicle_classes: tuple[VehicleClass, ...]
    rules: tuple[FareRule, ...]  # already in rule order
    hotel_zones: tuple[HotelZoneEntry, ...] = ()
    discount: Optional[ActiveDiscount] = None

    def zone_resolver(self) -> ZoneResolver:
        return SubstringZoneResolver(self.hotel_zones)


@dataclass(frozen=True)
class FareQuote:
    vehicle_type: str
    vehicle_type_id: str
    trip_type: str
    total_price: Decimal
    original_price: Decimal
    base_price: Decimal
    discount_percentage: Decimal
    origin_zone: Optional[str]
    destination_zone: Optional[str]
    price_source: str  # "pricing_rules" | "fallback"
    pricing_rule_id: Optional[str] = None
    passenger_capacity: int = field(default=4, compare=False)
    luggage_capacity: int = field(default=4, compare=False)

    def as_details(self) -> dict:
        """Pricing provenance stored on the booking's details blob."""
        return {
            "trip_type": self.trip_type,
            "price_source": self.price_source,
            "pricing_rule_id": self.pricing_rule_id,
            "base_price": float(self.base_price),
            "original_price": float(self.original_price),
            "discount_percentage": float(self.discount_percentage),
            "discount_applied": self.discount_percentage > 0,
            "origin_zone": self.origin_zone,
            "destination_zone": self.destination_zone,
        }


# ---------------------------------------------------------------------------
# Fare calculation
# ---------------------------------------------------------------------------

def round_half_up(value: Decimal) -> Decimal:
    return value.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def normalize_trip_type(trip_type: Optional[str]) -> str:
    if trip_type and trip_type.lower().replace("-", "_") in ("round_trip", "roundtrip"):
        return ROUND_TRIP
    return ONE_WAY


def select_vehicle_class(
    classes: tuple[VehicleClass, ...],
    vehicle_type: Optional[str],
    vehicle_type_id: Optional[str] = None,
) -> VehicleClass:
    """Explicit id wins, then case-insensitive name, then the first active class."""
    if not classes:
        raise FareError("No active vehicle types configured")
    if vehicle_type_id:
        for vc in classes:
            if vc.id == vehicle_type_id:
                return vc
    if vehicle_type:
        wanted = vehicle_type.strip().lower()
        for vc in classes:
            if vc.name.lower() == wanted:
                return vc
    return classes[0]


def _destination_matches(rule: FareRule, destination: str, destination_zone: Optional[str]) -> bool:
    rule_dest = rule.destination.lower()
    dest = destination.strip().lower()
    return (
        rule_dest == dest
        or rule_dest in dest
        or dest in rule_dest
        or (destination_zone is not None and rule.destination == destination_zone)
    )


def find_pricing_rule(
    rules: tuple[FareRule, ...],
    vehicle_type_id: str,
    origin_zone: Optional[str],
    destination: str,
    destination_zone: Optional[str],
) -> Optional[FareRule]:
    """
    First rule, in catalog order, for this class and origin zone whose
    destination matches the raw text or equals the resolved destination zone.
    A single pass: the text and zone checks are alternatives of one predicate.
    """
    if origin_zone is None:
        return None

    for rule in rules:
        if rule.vehicle_type_id != vehicle_type_id or rule.origin != origin_zone:
            continue
        if _destination_matches(rule, destination, destination_zone):
            return rule
    return None


def compute_fare(
    snapshot: PricingSnapshot,
    origin: str,
    destination: str,
    vehicle_type: Optional[str],
    trip_type: Optional[str] = ONE_WAY,
    *,
    vehicle_type_id: Optional[str] = None,
    resolver: Optional[ZoneResolver] = None,
) -> FareQuote:
    if not origin or not origin.strip():
        raise FareError("origin is required")
    if not destination or not destination.strip():
        raise FareError("destination is required")

    resolver = resolver or snapshot.zone_resolver()
    origin_zone = resolver.resolve(origin)
    destination_zone = resolver.resolve(destination)

    vehicle = select_vehicle_class(snapshot.vehicle_classes, vehicle_type, vehicle_type_id)
    rule = find_pricing_rule(snapshot.rules, vehicle.id, origin_zone, destination, destination_zone)

    if rule is not None:
        base_price = Decimal(rule.base_price)
        price_source = "pricing_rules"
    else:
        base_price = Decimal(vehicle.minimum_fare) if vehicle.minimum_fare else FALLBACK_BASE_PRICE
        price_source = "fallback"

    discount_pct = Decimal("0")
    if snapshot.discount is not None and snapshot.discount.percent > 0:
        if rule is None or not rule.no_discount_allowed:
            discount_pct = Decimal(snapshot.discount.percent)

    one_way = round_half_up(base_price * (Decimal("1") - discount_pct / Decimal("100")))

    trip = normalize_trip_type(trip_type)
    if trip == ROUND_TRIP:
        total = round_half_up(one_way * ROUNDTRIP_MULTIPLIER)
        original = round_half_up(base_price * ROUNDTRIP_MULTIPLIER)
    else:
        total = one_way
        original = round_half_up(base_price)

    return FareQuote(
        vehicle_type=vehicle.name,
        vehicle_type_id=vehicle.id,
        trip_type=trip,
        total_price=total,
        original_price=original,
        base_price=base_price,
        discount_percentage=discount_pct,
        origin_zone=origin_zone,
        destination_zone=destination_zone,
        price_source=price_source,
        pricing_rule_id=rule.id if rule else None,
        passenger_capacity=vehicle.passenger_capacity,
        luggage_capacity=vehicle.luggage_capacity,
    )


def quote_all_vehicles(
    snapshot: PricingSnapshot,
    origin: str,
    destination: str,
    trip_type: Optional[str] = ONE_WAY,
    passengers: Optional[int] = None,
    luggage: Optional[int] = None,
) -> list[FareQuote]:
    """One quote per vehicle class that fits the party, cheapest first."""
    resolver = snapshot.zone_resolver()
    quotes = []
    for vc in snapshot.vehicle_classes:
        if passengers and vc.passenger_capacity < passengers:
            continue
        if luggage and vc.luggage_capacity < luggage:
            continue
        quotes.append(
            compute_fare(
                snapshot, origin, destination, vc.name, trip_type,
                vehicle_type_id=vc.id, resolver=resolver,
            )
        )
    quotes.sort(key=lambda q: q.total_price)
    return quotes


# ---------------------------------------------------------------------------
# Snapshot loading
# ---------------------------------------------------------------------------

async def load_active_discount(db: AsyncSession, now: Optional[datetime] = None) -> Optional[ActiveDiscount]:
    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        select(GlobalDiscount)
        .where(
            GlobalDiscount.is_active.is_(True),
            GlobalDiscount.start_date <= now,
            or_(GlobalDiscount.end_date.is_(None), GlobalDiscount.end_date > now),
        )
        .order_by(GlobalDiscount.created_at.desc(), GlobalDiscount.id.desc())
        .limit(1)
    )
    row = result.scalar_one_or_none()
    if row is None:
        return None
    return ActiveDiscount(
        percent=Decimal(row.discount_percentage),
        valid_from=row.start_date,
        valid_to=row.end_date,
        version=row.id,
    )


async def load_pricing_snapshot(db: AsyncSession, now: Optional[datetime] = None) -> PricingSnapshot:
    vt_result = await db.execute(
        select(VehicleType)
        .where(VehicleType.is_active.is_(True))
        .order_by(VehicleType.display_order, VehicleType.name)
    )
    rule_result = await db.execute(
        select(PricingRule)
        .where(PricingRule.is_active.is_(True))
        .order_by(PricingRule.priority.desc(), PricingRule.id)
    )
    zone_result = await db.execute(select(HotelZone).where(HotelZone.is_active.is_(True)).order_by(HotelZone.id))

    return PricingSnapshot(
        vehicle_classes=tuple(
            VehicleClass(
                id=v.id,
                name=v.name,
                passenger_capacity=v.passenger_capacity,
                luggage_capacity=v.luggage_capacity,
                minimum_fare=Decimal(v.minimum_fare) if v.minimum_fare is not None else None,
            )
            for v in vt_result.scalars()
        ),
        rules=tuple(
            FareRule(
                id=r.id,
                vehicle_type_id=r.vehicle_type_id,
                origin=r.origin,
                destination=r.destination,
                base_price=Decimal(r.base_price),
                no_discount_allowed=r.no_discount_allowed,
            )
            for r in rule_result.scalars()
        ),
        hotel_zones=tuple(
            HotelZoneEntry(z.hotel_name, z.zone_code, tuple(z.search_terms or ()))
            for z in zone_result.scalars()
        ),
        discount=await load_active_discount(db, now),
    )
