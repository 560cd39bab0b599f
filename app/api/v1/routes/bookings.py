from fastapi import APIRouter, Depends
from app.api.deps import get_current_admin, get_gateway, get_store, idempotency_key
from app.schemas.booking import (
    AdminActor,
    Booking,
    BookingCreate,
    BookingCreated,
    CancelRequest,
    DepositIntentOut,
    RescheduleRequest,
)
from app.services import booking_service
from app.services.record_store import RecordStore
from app.services.stripe_gateway import StripeGateway

router = APIRouter(tags=["bookings"])


@router.post("/bookings", response_model=BookingCreated, status_code=201)
def create_booking(
    payload: BookingCreate,
    store: RecordStore = Depends(get_store),
    gateway: StripeGateway = Depends(get_gateway),
    idem: str | None = Depends(idempotency_key),
):
    """Reserve the car and open a deposit authorization. The client confirms the returned intent."""
    booking, intent = booking_service.create_booking(store, gateway, payload, idempotency_key=idem)
    return BookingCreated(
        booking=booking,
        paymentIntent=DepositIntentOut(
            id=intent.id,
            clientSecret=intent.client_secret,
            amount=booking.pricing.depositAmount,
            currency=gateway.cfg.currency,
        ),
    )


@router.post("/bookings/{booking_id}/confirm", response_model=Booking)
def confirm_booking(
    booking_id: str,
    store: RecordStore = Depends(get_store),
    admin: AdminActor = Depends(get_current_admin),
):
    booking, _ = booking_service.confirm_booking(store, booking_id, admin)
    return booking


@router.post("/bookings/{booking_id}/cancel", response_model=Booking)
def cancel_booking(
    booking_id: str,
    payload: CancelRequest,
    store: RecordStore = Depends(get_store),
    admin: AdminActor = Depends(get_current_admin),
):
    return booking_service.cancel_booking(store, booking_id, admin, payload.reason, payload.refundAmount)


@router.post("/bookings/{booking_id}/reschedule", response_model=Booking)
def reschedule_booking(
    booking_id: str,
    payload: RescheduleRequest,
    store: RecordStore = Depends(get_store),
    admin: AdminActor = Depends(get_current_admin),
):
    return booking_service.reschedule_booking(store, booking_id, admin, payload.startDate, payload.endDate, payload.reason)


@router.post("/bookings/{booking_id}/complete", response_model=Booking)
def complete_booking(
    booking_id: str,
    store: RecordStore = Depends(get_store),
    admin: AdminActor = Depends(get_current_admin),
):
    booking, _ = booking_service.complete_booking(store, booking_id, admin)
    return booking
