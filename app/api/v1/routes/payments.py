from fastapi import APIRouter, Depends, Request
from app.api.deps import get_current_admin, get_gateway, get_store, idempotency_key
from app.schemas.booking import AdminActor, Booking
from app.schemas.payments import CaptureDepositRequest, ChargeAdditionalRequest, ChargeFinalRequest
from app.services import payment_service, webhook_service
from app.services.record_store import RecordStore
from app.services.stripe_gateway import StripeGateway

router = APIRouter(tags=["payments"])


@router.post("/bookings/{booking_id}/capture-deposit", response_model=Booking)
def capture_deposit(
    booking_id: str,
    payload: CaptureDepositRequest | None = None,
    store: RecordStore = Depends(get_store),
    gateway: StripeGateway = Depends(get_gateway),
    admin: AdminActor = Depends(get_current_admin),
    idem: str | None = Depends(idempotency_key),
):
    amount = payload.captureAmount if payload else None
    return payment_service.capture_deposit(store, gateway, booking_id, admin, amount, idempotency_key=idem)


@router.post("/bookings/{booking_id}/reauthorize-deposit", response_model=Booking)
def reauthorize_deposit(
    booking_id: str,
    store: RecordStore = Depends(get_store),
    gateway: StripeGateway = Depends(get_gateway),
    admin: AdminActor = Depends(get_current_admin),
    idem: str | None = Depends(idempotency_key),
):
    return payment_service.reauthorize_deposit(store, gateway, booking_id, admin, idempotency_key=idem)


@router.post("/bookings/{booking_id}/charge-additional")
def charge_additional(
    booking_id: str,
    payload: ChargeAdditionalRequest,
    store: RecordStore = Depends(get_store),
    gateway: StripeGateway = Depends(get_gateway),
    admin: AdminActor = Depends(get_current_admin),
    idem: str | None = Depends(idempotency_key),
):
    booking, record = payment_service.charge_additional(
        store, gateway, booking_id, admin,
        amount=payload.amount,
        memo=payload.memo,
        charge_now=payload.chargeNow,
        record_refund=payload.recordRefund,
        idempotency_key=idem,
    )
    return {
        "booking": booking.model_dump(mode="json"),
        "additionalPayment": record.model_dump(mode="json") if record else None,
    }


@router.post("/bookings/{booking_id}/charge-final", response_model=Booking)
def charge_final(
    booking_id: str,
    payload: ChargeFinalRequest | None = None,
    store: RecordStore = Depends(get_store),
    gateway: StripeGateway = Depends(get_gateway),
    admin: AdminActor = Depends(get_current_admin),
    idem: str | None = Depends(idempotency_key),
):
    payload = payload or ChargeFinalRequest()
    return payment_service.charge_final(
        store, gateway, booking_id, admin,
        additional_charges=payload.additionalCharges,
        memo=payload.memo,
        idempotency_key=idem,
    )


@router.post("/webhooks/payments")
async def payments_webhook(
    request: Request,
    store: RecordStore = Depends(get_store),
    gateway: StripeGateway = Depends(get_gateway),
):
    """Stripe webhook. Signature failures are 401; everything verified is acknowledged with 200."""
    body = await request.body()
    event = gateway.verify_event(body, request.headers.get("stripe-signature"))
    outcome = webhook_service.handle_event(store, event)
    return {"received": True, "outcome": outcome}
