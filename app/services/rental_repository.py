"""Booking records and their indexes in the record store.

Keys:
  rental:<id>                 booking document (versioned)
  rentals:all                 set of every booking id
  car_rentals:<carId>         set of booking ids per car
  customer_rentals:<email>    set of booking ids per customer
  payment:<intentId>          booking id owning a processor intent
"""
import logging
from typing import Callable, Optional

from app.core.errors import ConflictError, NotFoundError
from app.schemas.booking import Booking, BookingStatus, utcnow
from app.services.record_store import RecordStore

logger = logging.getLogger(__name__)

ALL_RENTALS = "rentals:all"
MAX_WRITE_RETRIES = 3


def rental_key(booking_id: str) -> str:
    return f"rental:{booking_id}"


def car_rentals_key(car_id: str) -> str:
    return f"car_rentals:{car_id}"


def customer_rentals_key(email: str) -> str:
    return f"customer_rentals:{email.lower()}"


def intent_key(intent_id: str) -> str:
    return f"payment:{intent_id}"


def calendar_rev_key(car_id: str) -> str:
    return f"calendar_rev:{car_id}"


def touch_calendar(store: RecordStore, car_id: str) -> int:
    """Bump the car's calendar revision; cached calendars keyed on the old one go stale."""
    return store.set(calendar_rev_key(car_id), utcnow().isoformat())


def calendar_rev(store: RecordStore, car_id: str) -> int:
    found = store.get_versioned(calendar_rev_key(car_id))
    return found[1] if found else 0


def _dump(b: Booking) -> dict:
    return b.model_dump(mode="json")


def insert_booking(store: RecordStore, booking: Booking) -> None:
    """Write a new booking with all its indexes. Caller commits."""
    store.set(rental_key(booking.id), _dump(booking))
    store.sadd(ALL_RENTALS, booking.id)
    store.sadd(car_rentals_key(booking.carId), booking.id)
    store.sadd(customer_rentals_key(booking.customer.email), booking.id)
    touch_calendar(store, booking.carId)
    if booking.payment.depositPaymentIntentId:
        link_intent(store, booking.payment.depositPaymentIntentId, booking.id)


def load_booking(store: RecordStore, booking_id: str) -> tuple[Booking, int]:
    found = store.get_versioned(rental_key(booking_id))
    if found is None:
        raise NotFoundError("Booking not found", cause=f"no record for rental:{booking_id}")
    data, version = found
    return Booking.model_validate(data), version


def get_booking(store: RecordStore, booking_id: str) -> Booking:
    return load_booking(store, booking_id)[0]


def save_booking(store: RecordStore, booking: Booking, expected_version: int) -> bool:
    booking.updatedAt = utcnow()
    if not store.set_if_version(rental_key(booking.id), _dump(booking), expected_version):
        return False
    touch_calendar(store, booking.carId)
    return True


def link_intent(store: RecordStore, intent_id: str, booking_id: str) -> None:
    store.set(intent_key(intent_id), booking_id)


def booking_for_intent(store: RecordStore, intent_id: str) -> Optional[str]:
    return store.get(intent_key(intent_id))


def _load_many(store: RecordStore, ids) -> list[Booking]:
    out = []
    for bid in ids:
        data = store.get(rental_key(bid))
        if data is None:
            # index points at a deleted record
            logger.warning("stale rental index entry %s", bid)
            continue
        out.append(Booking.model_validate(data))
    return out


def list_bookings(store: RecordStore, status: Optional[BookingStatus] = None) -> list[Booking]:
    items = _load_many(store, store.smembers(ALL_RENTALS))
    if status is not None:
        items = [b for b in items if b.status == status]
    items.sort(key=lambda b: b.createdAt, reverse=True)
    return items


def bookings_for_car(store: RecordStore, car_id: str) -> list[Booking]:
    return _load_many(store, store.smembers(car_rentals_key(car_id)))


def bookings_for_customer(store: RecordStore, email: str) -> list[Booking]:
    items = _load_many(store, store.smembers(customer_rentals_key(email)))
    items.sort(key=lambda b: b.createdAt, reverse=True)
    return items


def _intent_ids(b: Booking) -> set[str]:
    p = b.payment
    ids = set(p.previousDepositPaymentIntentIds) | set(p.previousFinalPaymentIntentIds)
    ids.update(x.paymentIntentId for x in p.additionalPayments if x.paymentIntentId)
    for x in (p.depositPaymentIntentId, p.finalPaymentIntentId):
        if x:
            ids.add(x)
    return ids


def delete_booking(store: RecordStore, booking_id: str) -> Booking:
    """Hard delete: the record, its set memberships and every intent cross-reference."""
    booking = get_booking(store, booking_id)
    for intent_id in _intent_ids(booking):
        store.delete(intent_key(intent_id))
    store.srem(ALL_RENTALS, booking_id)
    store.srem(car_rentals_key(booking.carId), booking_id)
    store.srem(customer_rentals_key(booking.customer.email), booking_id)
    store.delete(rental_key(booking_id))
    touch_calendar(store, booking.carId)
    store.commit()
    return booking


def mutate_booking(
    store: RecordStore,
    booking_id: str,
    fn: Callable[[Booking], object],
    extra_writes: Optional[Callable[[Booking], None]] = None,
    retries: int = MAX_WRITE_RETRIES,
):
    """Read-modify-write a booking with a version check.

    ``fn`` mutates the booking in place (raising to abort) and returns a result
    that is passed back to the caller. ``extra_writes`` runs in the same
    transaction after the booking write (cross-references, dedup markers).
    If ``fn`` leaves the booking as it found it, nothing is written for the
    booking itself: version, ``updatedAt`` and the calendar revision stay put.
    On a lost update the booking is re-read and ``fn`` re-applied, so its
    state guards see the winner's write.
    """
    for attempt in range(retries):
        booking, version = load_booking(store, booking_id)
        before = _dump(booking)
        try:
            result = fn(booking)
        except Exception:
            store.rollback()
            raise
        if _dump(booking) == before or save_booking(store, booking, version):
            if extra_writes is not None:
                extra_writes(booking)
            store.commit()
            return booking, result
        store.rollback()
        logger.info("lost update on booking %s (attempt %d), retrying", booking_id, attempt + 1)
    raise ConflictError(
        "Booking was modified concurrently, please retry",
        cause=f"version check failed {retries} times for rental:{booking_id}",
    )
