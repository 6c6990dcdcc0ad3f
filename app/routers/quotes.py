"""
Quotes router: POST /v1/quotes, POST /v1/quotes/all
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import get_db
from app.schemas.schemas import FareRequest, FareResponse, MultiQuoteRequest, MultiQuoteResponse
from app.services.pricing import FareError, FareQuote, compute_fare, load_pricing_snapshot, quote_all_vehicles

logger = logging.getLogger(__name__)
settings = get_settings()
router = APIRouter(prefix="/v1/quotes", tags=["Quotes"])


def _to_response(quote: FareQuote) -> FareResponse:
    return FareResponse(
        vehicle_type=quote.vehicle_type,
        vehicle_type_id=quote.vehicle_type_id,
        trip_type=quote.trip_type,
        total_price=float(quote.total_price),
        original_price=float(quote.original_price),
        base_price=float(quote.base_price),
        discount_percentage=float(quote.discount_percentage),
        origin_zone=quote.origin_zone,
        destination_zone=quote.destination_zone,
        price_source=quote.price_source,
        currency=settings.payment_currency,
    )


@router.post("", response_model=FareResponse)
async def create_quote(payload: FareRequest, db: AsyncSession = Depends(get_db)):
    snapshot = await load_pricing_snapshot(db)
    try:
        quote = compute_fare(
            snapshot,
            payload.origin,
            payload.destination,
            payload.vehicle_type,
            payload.trip_type.value,
            vehicle_type_id=payload.vehicle_type_id,
        )
    except FareError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    logger.info(
        "Quote %s → %s (%s/%s): %s via %s",
        quote.origin_zone, quote.destination_zone, quote.vehicle_type, quote.trip_type,
        quote.total_price, quote.price_source,
    )
    return _to_response(quote)


@router.post("/all", response_model=MultiQuoteResponse)
async def quote_all(payload: MultiQuoteRequest, db: AsyncSession = Depends(get_db)):
    """Every vehicle class that fits the party, cheapest first."""
    snapshot = await load_pricing_snapshot(db)
    try:
        quotes = quote_all_vehicles(
            snapshot,
            payload.origin,
            payload.destination,
            payload.trip_type.value,
            passengers=payload.passengers,
            luggage=payload.luggage,
        )
    except FareError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return MultiQuoteResponse(
        origin=payload.origin,
        destination=payload.destination,
        trip_type=payload.trip_type,
        quotes=[_to_response(q) for q in quotes],
    )
