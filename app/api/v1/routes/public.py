from datetime import date, timedelta
from typing import Optional
from fastapi import APIRouter, Depends
from app.api.deps import get_availability_cache, get_store
from app.core.errors import ValidationError
from app.schemas.fleet import AvailabilityCheck, AvailabilityResult, Car
from app.schemas.promo import PromoValidateRequest
from app.services import availability_service, fleet_service, promo_service
from app.services.availability_cache import AvailabilityCache
from app.services.record_store import RecordStore
from app.services.rental_repository import calendar_rev

router = APIRouter(tags=["public"])

DEFAULT_CALENDAR_DAYS = 60


@router.get("/cars", response_model=list[Car])
def list_cars(homepage: bool = False, store: RecordStore = Depends(get_store)):
    return fleet_service.list_cars(store, homepage_only=homepage)


@router.get("/cars/{car_id}", response_model=Car)
def get_car(car_id: str, store: RecordStore = Depends(get_store)):
    return fleet_service.require_car(store, car_id)


@router.get("/cars/{car_id}/availability")
def car_calendar(
    car_id: str,
    startDate: Optional[date] = None,
    endDate: Optional[date] = None,
    store: RecordStore = Depends(get_store),
    cache: AvailabilityCache = Depends(get_availability_cache),
):
    """Per-day availability for the booking calendar. Defaults to the next 60 days."""
    start = startDate or date.today()
    end = endDate or (start + timedelta(days=DEFAULT_CALENDAR_DAYS - 1))
    rev = calendar_rev(store, car_id)
    days = cache.get(car_id, rev, start, end)
    if days is None:
        computed = availability_service.calendar(store, car_id, start, end)
        days = {k: v.model_dump() for k, v in computed.items()}
        cache.set(car_id, rev, start, end, days)
    return {"carId": car_id, "startDate": start.isoformat(), "endDate": end.isoformat(), "days": days}


@router.post("/cars/{car_id}/availability-check", response_model=AvailabilityResult)
def availability_check(car_id: str, payload: AvailabilityCheck, store: RecordStore = Depends(get_store)):
    if payload.endDate < payload.startDate:
        raise ValidationError("End date must not be before start date")
    return availability_service.is_available(store, car_id, payload.startDate, payload.endDate)


@router.post("/promo/validate")
def validate_promo(payload: PromoValidateRequest, store: RecordStore = Depends(get_store)):
    rec = promo_service.validate_promo(store, payload.code)
    return {
        "valid": True,
        "code": rec.code,
        "percentOff": rec.percentOff,
        "amountOff": rec.amountOff,
        "currency": rec.currency,
        "partnerId": rec.partnerId,
        "partnerName": rec.partnerName,
        "maxRedemptions": rec.maxRedemptions,
        "expiresAt": rec.expiresAt.isoformat() if rec.expiresAt else None,
    }
