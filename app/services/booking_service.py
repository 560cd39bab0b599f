import logging
import uuid
from datetime import date
from typing import Optional

from app.core.errors import ConflictError, RentalError, ValidationError
from app.schemas.booking import (
    PUBLIC_BOOKING,
    TERMINAL_STATUSES,
    AdminActor,
    Adjustment,
    Booking,
    BookingCreate,
    BookingStatus,
    Cancellation,
    CarSnapshot,
    ChargeStatus,
    DepositStatus,
    PaymentInfo,
    PromoApplied,
    RentalDates,
    RescheduleEntry,
    SystemActor,
)
from app.services import fleet_service, pricing_service, promo_service
from app.services.audit_service import log_history
from app.services.availability_service import is_available
from app.services.record_store import RecordStore
from app.services.rental_repository import insert_booking, mutate_booking
from app.services.stripe_gateway import IntentResult, StripeGateway

logger = logging.getLogger(__name__)

# target status <- statuses it may be entered from
ALLOWED_SOURCES = {
    BookingStatus.CONFIRMED: {BookingStatus.PENDING},
    BookingStatus.ACTIVE: {BookingStatus.CONFIRMED},
    BookingStatus.COMPLETED: {BookingStatus.CONFIRMED, BookingStatus.ACTIVE},
    BookingStatus.CANCELLED: {BookingStatus.PENDING, BookingStatus.CONFIRMED, BookingStatus.ACTIVE},
}

TRANSITION_ACTIONS = {
    BookingStatus.CONFIRMED: "confirmed",
    BookingStatus.ACTIVE: "activated",
    BookingStatus.COMPLETED: "completed",
    BookingStatus.CANCELLED: "cancelled",
}

UNAVAILABLE_MESSAGE = "Selected dates are not available"


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return current in ALLOWED_SOURCES.get(target, set())


def apply_transition(
    b: Booking,
    target: BookingStatus,
    actor: AdminActor | SystemActor,
    description: str = "",
    metadata: dict | None = None,
) -> bool:
    """Move ``b`` to ``target`` and record it. False if it was already there."""
    if b.status == target:
        return False
    if not can_transition(b.status, target):
        raise ConflictError(
            f"Cannot change booking from {b.status.value} to {target.value}",
            cause=f"booking {b.id}: {b.status.value} -> {target.value} not allowed",
        )
    previous = b.status
    b.status = target
    log_history(
        b, actor, TRANSITION_ACTIONS[target],
        description or f"Booking {TRANSITION_ACTIONS[target]}",
        {"from": previous.value, "to": target.value, **(metadata or {})},
    )
    return True


def confirm_in_place(store: RecordStore, b: Booking, actor: AdminActor | SystemActor, description: str = "") -> bool:
    """pending -> confirmed; a booking already confirmed or active is left alone."""
    if b.status == BookingStatus.ACTIVE:
        return False
    changed = apply_transition(b, BookingStatus.CONFIRMED, actor, description or "Booking confirmed")
    if changed and b.promo:
        promo_service.increment_stats(store, b.promo.code)
    return changed


def recompute_total_paid(b: Booking) -> float:
    p = b.payment
    total = 0.0
    if p.depositStatus == DepositStatus.CAPTURED:
        total += p.depositCapturedAmount
    if p.finalPaymentStatus == ChargeStatus.SUCCEEDED:
        total += p.finalPaymentAmount
    total += sum(x.amount for x in p.additionalPayments if x.status == "succeeded")
    p.totalPaid = pricing_service.money(total)
    return p.totalPaid


def make_booking_id() -> str:
    return f"rental_{uuid.uuid4().hex}"


def _release_intent(gateway: StripeGateway, intent_id: str) -> None:
    try:
        gateway.cancel(intent_id)
    except RentalError as e:
        logger.warning("could not cancel orphan deposit intent %s: %s (%s)", intent_id, e.message, e.cause)


def create_booking(
    store: RecordStore,
    gateway: StripeGateway,
    payload: BookingCreate,
    today: Optional[date] = None,
    idempotency_key: Optional[str] = None,
) -> tuple[Booking, IntentResult]:
    today = today or date.today()
    start, end = payload.startDate, payload.endDate
    pricing_service.validate_rental_dates(start, end, today)

    car = fleet_service.require_car(store, payload.carId)
    pre = is_available(store, car.id, start, end)
    if not pre.available:
        raise ConflictError(UNAVAILABLE_MESSAGE, cause=f"car {car.id} {start}..{end}: {pre.conflicts.model_dump(mode='json')}")

    booking_id = make_booking_id()
    pricing = pricing_service.price(car.price.daily, start, end)
    payment = PaymentInfo()
    promo = None
    if payload.promoCode:
        rec = promo_service.validate_promo(store, payload.promoCode)
        discount = pricing_service.promo_discount(rec, pricing.subtotal)
        if discount > 0:
            pricing_service.apply_adjustment(pricing, -discount)
            payment.additionalCharges.append(Adjustment(
                id=str(uuid.uuid4()), amount=-discount, memo=f"Promo code {rec.code}",
                type="credit", createdBy=PUBLIC_BOOKING.label,
            ))
        promo = PromoApplied(code=rec.code, discount=discount, partnerId=rec.partnerId, partnerName=rec.partnerName)

    # Processor calls happen before any lock is taken.
    customer = payload.customer
    customer_id = gateway.ensure_customer(customer.email, f"{customer.firstName} {customer.lastName}", customer.phone)
    intent = gateway.create_deposit_intent(
        amount=pricing.depositAmount,
        customer_id=customer_id,
        metadata={"rental_id": booking_id, "car_id": car.id, "customer_email": customer.email},
        idempotency_key=idempotency_key or f"deposit:{booking_id}",
    )
    payment.depositPaymentIntentId = intent.id
    payment.stripeCustomerId = customer_id

    booking = Booking(
        id=booking_id,
        carId=car.id,
        car=CarSnapshot(id=car.id, brand=car.brand, model=car.model, year=car.year, dailyPrice=car.price.daily),
        customer=customer,
        rentalDates=RentalDates(startDate=start, endDate=end),
        pricing=pricing,
        payment=payment,
        promo=promo,
    )
    log_history(booking, PUBLIC_BOOKING, "created", "Booking created, awaiting deposit authorization", {
        "depositPaymentIntentId": intent.id,
        "depositAmount": pricing.depositAmount,
        "promoCode": promo.code if promo else None,
    })

    # Guarded write: the car row lock serializes check-and-insert per car.
    try:
        fleet_service.lock_car(store, car.id)
        recheck = is_available(store, car.id, start, end)
        if not recheck.available:
            logger.info("lost booking race for car %s %s..%s; releasing intent %s", car.id, start, end, intent.id)
            raise ConflictError("Selected dates are no longer available", cause=f"car {car.id} booked concurrently")
        insert_booking(store, booking)
        store.commit()
    except Exception:
        store.rollback()
        _release_intent(gateway, intent.id)
        raise
    logger.info("booking %s created for car %s (%s..%s)", booking.id, car.id, start, end)
    return booking, intent


def confirm_booking(store: RecordStore, booking_id: str, actor: AdminActor | SystemActor) -> tuple[Booking, bool]:
    def apply(b: Booking) -> bool:
        return confirm_in_place(store, b, actor)
    return mutate_booking(store, booking_id, apply)


def complete_booking(store: RecordStore, booking_id: str, actor: AdminActor | SystemActor) -> tuple[Booking, bool]:
    def apply(b: Booking) -> bool:
        return apply_transition(b, BookingStatus.COMPLETED, actor, "Rental completed")
    return mutate_booking(store, booking_id, apply)


def cancel_in_place(b: Booking, actor: AdminActor | SystemActor, reason: str = "", refund_amount: float = 0.0) -> bool:
    recompute_total_paid(b)
    if refund_amount < 0 or refund_amount > b.payment.totalPaid:
        raise ValidationError(
            "Refund amount must be between 0 and the amount paid",
            cause=f"refundAmount {refund_amount}, totalPaid {b.payment.totalPaid}",
        )
    changed = apply_transition(b, BookingStatus.CANCELLED, actor, f"Booking cancelled{': ' + reason if reason else ''}", {
        "reason": reason,
        "refundAmount": refund_amount,
    })
    if changed:
        b.cancellation = Cancellation(
            cancelledBy=actor.label,
            reason=reason,
            refundAmount=pricing_service.money(refund_amount),
            refundProcessed=False,
        )
    return changed


def cancel_booking(
    store: RecordStore,
    booking_id: str,
    actor: AdminActor | SystemActor,
    reason: str = "",
    refund_amount: float = 0.0,
) -> Booking:
    def apply(b: Booking) -> bool:
        if b.status in TERMINAL_STATUSES:
            raise ConflictError(f"Booking is already {b.status.value}", cause=f"booking {b.id} is {b.status.value}")
        return cancel_in_place(b, actor, reason, refund_amount)
    return mutate_booking(store, booking_id, apply)[0]


def reschedule_booking(
    store: RecordStore,
    booking_id: str,
    actor: AdminActor | SystemActor,
    start: date,
    end: date,
    reason: str = "",
    today: Optional[date] = None,
) -> Booking:
    today = today or date.today()
    pricing_service.validate_rental_dates(start, end, today)

    def apply(b: Booking) -> None:
        if b.status in TERMINAL_STATUSES:
            raise ConflictError(f"Cannot reschedule a {b.status.value} booking", cause=f"booking {b.id} is {b.status.value}")
        fleet_service.lock_car(store, b.carId)
        res = is_available(store, b.carId, start, end, exclude_booking_id=b.id)
        if not res.available:
            raise ConflictError(UNAVAILABLE_MESSAGE, cause=f"car {b.carId} {start}..{end}: {res.conflicts.model_dump(mode='json')}")

        car = fleet_service.require_car(store, b.carId)
        old = b.rentalDates
        if b.originalDates is None:
            b.originalDates = old.model_copy()
        previous_status = b.status
        captured = b.payment.depositCapturedAmount if b.payment.depositStatus == DepositStatus.CAPTURED else 0.0
        b.pricing = pricing_service.reschedule(b.pricing, car.price.daily, start, end, captured)
        b.rentalDates = RentalDates(startDate=start, endDate=end)
        b.rescheduleHistory.append(RescheduleEntry(
            oldStartDate=old.startDate, oldEndDate=old.endDate,
            newStartDate=start, newEndDate=end,
            reason=reason, performedBy=actor.label,
        ))
        b.status = BookingStatus.CONFIRMED
        log_history(b, actor, "rescheduled", f"Rescheduled from {old.startDate}..{old.endDate} to {start}..{end}", {
            "reason": reason,
            "previousStatus": previous_status.value,
            "subtotal": b.pricing.subtotal,
            "finalAmount": b.pricing.finalAmount,
            "depositAmount": b.pricing.depositAmount,
        })

    booking, _ = mutate_booking(store, booking_id, apply)
    logger.info("booking %s rescheduled to %s..%s by %s", booking_id, start, end, actor.label)
    return booking
