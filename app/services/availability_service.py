from datetime import date, timedelta
from typing import Optional

from app.core.errors import ValidationError
from app.schemas.booking import BLOCKING_STATUSES
from app.schemas.fleet import AvailabilityConflicts, AvailabilityResult, DateRange, DayAvailability
from app.services import fleet_service
from app.services.record_store import RecordStore
from app.services.rental_repository import bookings_for_car

MAX_CALENDAR_DAYS = 90


def overlaps(a_start: date, a_end: date, b_start: date, b_end: date) -> bool:
    """Inclusive on both ends: a rental ending on day X blocks a rental starting on X."""
    return a_start <= b_end and b_start <= a_end


def collapse_ranges(days: list[date]) -> list[DateRange]:
    out: list[DateRange] = []
    for d in sorted(set(days)):
        if out and out[-1].endDate + timedelta(days=1) == d:
            out[-1].endDate = d
        else:
            out.append(DateRange(startDate=d, endDate=d))
    return out


def is_available(
    store: RecordStore,
    car_id: str,
    start: date,
    end: date,
    exclude_booking_id: Optional[str] = None,
) -> AvailabilityResult:
    car = fleet_service.require_car(store, car_id)
    if not car.available:
        return AvailabilityResult(available=False)

    booking_conflict = any(
        b.id != exclude_booking_id
        and b.status in BLOCKING_STATUSES
        and overlaps(start, end, b.rentalDates.startDate, b.rentalDates.endDate)
        for b in bookings_for_car(store, car_id)
    )
    blocked = [d for d in fleet_service.get_unavailable_dates(store, car_id) if start <= d <= end]

    return AvailabilityResult(
        available=not booking_conflict and not blocked,
        conflicts=AvailabilityConflicts(bookingConflicts=booking_conflict, customBlocks=collapse_ranges(blocked)),
    )


def calendar(store: RecordStore, car_id: str, start: date, end: date) -> dict[str, DayAvailability]:
    """Per-day availability for browsing, ``start`` to ``end`` inclusive."""
    if end < start:
        raise ValidationError("End date must not be before start date")
    if (end - start).days + 1 > MAX_CALENDAR_DAYS:
        raise ValidationError(f"Calendar range cannot exceed {MAX_CALENDAR_DAYS} days")

    car = fleet_service.require_car(store, car_id)
    booked: set[date] = set()
    for b in bookings_for_car(store, car_id):
        if b.status not in BLOCKING_STATUSES:
            continue
        d = max(start, b.rentalDates.startDate)
        while d <= min(end, b.rentalDates.endDate):
            booked.add(d)
            d += timedelta(days=1)
    blocked = set(fleet_service.get_unavailable_dates(store, car_id))

    out: dict[str, DayAvailability] = {}
    d = start
    while d <= end:
        if not car.available:
            day = DayAvailability(available=False, reason="unavailable")
        elif d in booked:
            day = DayAvailability(available=False, reason="booked")
        elif d in blocked:
            day = DayAvailability(available=False, reason="blocked")
        else:
            day = DayAvailability(available=True, price=car.price.daily)
        out[d.isoformat()] = day
        d += timedelta(days=1)
    return out
