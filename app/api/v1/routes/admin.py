import logging
from fastapi import APIRouter, Depends
from app.api.deps import get_current_admin, get_store
from app.schemas.booking import AdminActor, Booking, BookingStatus
from app.schemas.fleet import Car, CarUpsert, UnavailableDates
from app.schemas.promo import PromoCreate, PromoRecord, PromoUpdate
from app.services import fleet_service, promo_service, webhook_service
from app.services.record_store import RecordStore
from app.services.rental_repository import bookings_for_car, bookings_for_customer, delete_booking, get_booking, list_bookings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["admin"])


# -- bookings ---------------------------------------------------------------------

@router.get("/admin/bookings")
def admin_list_bookings(status: BookingStatus | None = None, carId: str | None = None, limit: int = 50, offset: int = 0,
                        store: RecordStore = Depends(get_store),
                        admin: AdminActor = Depends(get_current_admin)):
    if carId:
        items = [b for b in bookings_for_car(store, carId) if status is None or b.status == status]
        items.sort(key=lambda b: b.createdAt, reverse=True)
    else:
        items = list_bookings(store, status)
    offset = max(offset, 0)
    page = items[offset:offset + min(max(limit, 1), 200)]
    return {"total": len(items), "items": [b.model_dump(mode="json") for b in page]}


@router.get("/admin/bookings/{booking_id}", response_model=Booking)
def admin_get_booking(booking_id: str,
                      store: RecordStore = Depends(get_store),
                      admin: AdminActor = Depends(get_current_admin)):
    return get_booking(store, booking_id)


@router.delete("/admin/bookings/{booking_id}")
def admin_delete_booking(booking_id: str,
                         store: RecordStore = Depends(get_store),
                         admin: AdminActor = Depends(get_current_admin)):
    booking = delete_booking(store, booking_id)
    logger.warning("booking %s (%s) hard-deleted by %s", booking.id, booking.status.value, admin.label)
    return {"ok": True, "id": booking.id}


@router.get("/admin/customers/{email}/bookings", response_model=list[Booking])
def admin_customer_bookings(email: str,
                            store: RecordStore = Depends(get_store),
                            admin: AdminActor = Depends(get_current_admin)):
    return bookings_for_customer(store, email)


# -- fleet ------------------------------------------------------------------------

@router.get("/admin/fleet", response_model=list[Car])
def admin_list_fleet(store: RecordStore = Depends(get_store),
                     admin: AdminActor = Depends(get_current_admin)):
    return fleet_service.list_cars(store)


@router.put("/admin/fleet/{car_id}", response_model=Car)
def admin_upsert_car(car_id: str, payload: CarUpsert,
                     store: RecordStore = Depends(get_store),
                     admin: AdminActor = Depends(get_current_admin)):
    return fleet_service.upsert_car(store, car_id, payload)


@router.get("/admin/fleet/{car_id}/unavailable-dates", response_model=UnavailableDates)
def admin_get_unavailable_dates(car_id: str,
                                store: RecordStore = Depends(get_store),
                                admin: AdminActor = Depends(get_current_admin)):
    fleet_service.require_car(store, car_id)
    return UnavailableDates(unavailableDates=fleet_service.get_unavailable_dates(store, car_id))


@router.put("/admin/fleet/{car_id}/unavailable-dates", response_model=UnavailableDates)
def admin_set_unavailable_dates(car_id: str, payload: UnavailableDates,
                                store: RecordStore = Depends(get_store),
                                admin: AdminActor = Depends(get_current_admin)):
    dates = fleet_service.set_unavailable_dates(store, car_id, payload.unavailableDates)
    return UnavailableDates(unavailableDates=dates)


# -- promo codes -------------------------------------------------------------------

@router.get("/admin/promo-codes")
def admin_list_promos(store: RecordStore = Depends(get_store),
                      admin: AdminActor = Depends(get_current_admin)):
    return [
        {**p.model_dump(mode="json"), "stats": promo_service.get_stats(store, p.code).model_dump(mode="json")}
        for p in promo_service.list_promos(store)
    ]


@router.post("/admin/promo-codes", response_model=PromoRecord, status_code=201)
def admin_create_promo(payload: PromoCreate,
                       store: RecordStore = Depends(get_store),
                       admin: AdminActor = Depends(get_current_admin)):
    return promo_service.create_promo(store, payload)


@router.patch("/admin/promo-codes/{code}", response_model=PromoRecord)
def admin_update_promo(code: str, payload: PromoUpdate,
                       store: RecordStore = Depends(get_store),
                       admin: AdminActor = Depends(get_current_admin)):
    return promo_service.update_promo(store, code, payload)


@router.delete("/admin/promo-codes/{code}")
def admin_delete_promo(code: str,
                       store: RecordStore = Depends(get_store),
                       admin: AdminActor = Depends(get_current_admin)):
    promo_service.delete_promo(store, code)
    return {"ok": True}


# -- webhook failures ------------------------------------------------------------

@router.get("/admin/webhooks/failed")
def admin_failed_webhooks(store: RecordStore = Depends(get_store),
                          admin: AdminActor = Depends(get_current_admin)):
    return webhook_service.list_failed_events(store)


@router.delete("/admin/webhooks/failed/{event_id}")
def admin_dismiss_failed_webhook(event_id: str,
                                 store: RecordStore = Depends(get_store),
                                 admin: AdminActor = Depends(get_current_admin)):
    webhook_service.dismiss_failed_event(store, event_id)
    logger.info("failed webhook %s dismissed by %s", event_id, admin.label)
    return {"ok": True}
