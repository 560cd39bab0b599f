"""Admin-initiated money movement: deposit capture and re-authorization,
additional charges/credits and the final charge.

Processor calls are made outside any booking write. Whatever the processor
answers is then persisted with a version-checked write before the outcome is
reported, so a decline or a 3-D Secure request is never lost.
"""
import logging
import uuid
from typing import Optional

from app.core.errors import (
    ConflictError,
    PaymentAuthenticationRequired,
    PaymentDeclinedError,
    PaymentProviderUnavailable,
    RentalError,
    ValidationError,
)
from app.schemas.booking import (
    TERMINAL_STATUSES,
    AdditionalPayment,
    AdminActor,
    Adjustment,
    Booking,
    BookingStatus,
    ChargeStatus,
    DepositStatus,
    RefundRecord,
    SystemActor,
)
from app.services import pricing_service
from app.services.audit_service import log_history
from app.services.booking_service import apply_transition, can_transition, confirm_in_place, recompute_total_paid
from app.services.record_store import RecordStore
from app.services.rental_repository import get_booking, link_intent, mutate_booking
from app.services.stripe_gateway import IntentResult, StripeGateway

logger = logging.getLogger(__name__)

NO_SAVED_CARD = "No saved payment method on file. Ask customer to re-enter card to authorize the deposit."

Actor = AdminActor | SystemActor


def _needs_action(intent: IntentResult, message: str) -> PaymentAuthenticationRequired:
    return PaymentAuthenticationRequired(
        message,
        payment_intent_id=intent.id,
        client_secret=intent.client_secret,
        cause=f"intent {intent.id} is {intent.status}",
    )


def _link(store: RecordStore, intent_id: str):
    def writes(b: Booking) -> None:
        link_intent(store, intent_id, b.id)
    return writes


def succeeded_additional_total(b: Booking) -> float:
    return pricing_service.money(sum(x.amount for x in b.payment.additionalPayments if x.status == "succeeded"))


def _payment_method_for(gateway: StripeGateway, b: Booking) -> Optional[str]:
    """Customer's most recent card, else the card saved from the deposit, else the deposit intent's card."""
    pm = None
    if b.payment.stripeCustomerId:
        pm = gateway.latest_payment_method(b.payment.stripeCustomerId)
    if not pm:
        pm = b.payment.savedPaymentMethodId
    if not pm and b.payment.depositPaymentIntentId:
        pm = gateway.retrieve(b.payment.depositPaymentIntentId).payment_method
    return pm


# -- deposit -------------------------------------------------------------------

def capture_deposit(
    store: RecordStore,
    gateway: StripeGateway,
    booking_id: str,
    actor: Actor,
    capture_amount: Optional[float] = None,
    idempotency_key: Optional[str] = None,
) -> Booking:
    b = get_booking(store, booking_id)
    if b.status in TERMINAL_STATUSES:
        raise ConflictError(f"Cannot capture deposit on a {b.status.value} booking")
    if b.payment.depositStatus in (DepositStatus.CAPTURED, DepositStatus.FAILED):
        raise ConflictError(f"Deposit is already {b.payment.depositStatus.value}")
    intent_id = b.payment.depositPaymentIntentId
    if not intent_id:
        raise ValidationError("Booking has no deposit authorization")
    deposit = b.pricing.depositAmount
    amount = pricing_service.money(capture_amount if capture_amount is not None else deposit)
    if amount <= 0 or amount > deposit:
        raise ValidationError(
            "Capture amount must be greater than 0 and at most the deposit",
            cause=f"captureAmount {amount}, deposit {deposit}",
        )

    res = gateway.capture(intent_id, amount, idempotency_key or f"capture:{intent_id}:{pricing_service.to_cents(amount)}")
    captured = res.amount_received or amount

    def apply(b: Booking) -> None:
        if b.payment.depositStatus == DepositStatus.CAPTURED:
            return
        b.payment.depositStatus = DepositStatus.CAPTURED
        b.payment.depositCapturedAmount = captured
        if res.payment_method and not b.payment.savedPaymentMethodId:
            b.payment.savedPaymentMethodId = res.payment_method
        recompute_total_paid(b)
        log_history(b, actor, "payment_captured", f"Security deposit captured: ${captured:.2f}", {
            "paymentIntentId": intent_id,
            "amount": captured,
            "depositAmount": deposit,
        })
        # Money has moved; the status only follows if the booking is still live.
        if b.status == BookingStatus.PENDING:
            confirm_in_place(store, b, actor, "Booking confirmed on deposit capture")
        if b.status == BookingStatus.CONFIRMED:
            apply_transition(b, BookingStatus.ACTIVE, actor, "Rental started on deposit capture")

    booking, _ = mutate_booking(store, booking_id, apply)
    logger.info("deposit %s captured for booking %s: %.2f", intent_id, booking_id, captured)
    return booking


def reauthorize_deposit(
    store: RecordStore,
    gateway: StripeGateway,
    booking_id: str,
    actor: Actor,
    idempotency_key: Optional[str] = None,
) -> Booking:
    b = get_booking(store, booking_id)
    if b.status in TERMINAL_STATUSES:
        raise ConflictError(f"Cannot re-authorize deposit on a {b.status.value} booking")
    if b.payment.depositStatus == DepositStatus.CAPTURED:
        raise ConflictError("Deposit is already captured")
    pm = b.payment.savedPaymentMethodId
    if not pm:
        raise ValidationError(NO_SAVED_CARD, cause=f"booking {b.id} has no savedPaymentMethodId")

    try:
        res = gateway.charge_off_session(
            amount=b.pricing.depositAmount,
            customer_id=b.payment.stripeCustomerId or "",
            payment_method_id=pm,
            metadata={"rental_id": b.id, "car_id": b.carId, "type": "security_deposit_reauth"},
            idempotency_key=idempotency_key or f"reauth:{b.id}:{uuid.uuid4().hex}",
            description=f"Security deposit re-authorization for rental {b.id}",
            manual_capture=True,
        )
    except PaymentDeclinedError as e:
        def record_failure(b: Booking) -> None:
            log_history(b, actor, "deposit_reauthorization_failed", "Deposit re-authorization declined", {"error": e.cause})
        mutate_booking(store, booking_id, record_failure)
        logger.info("deposit re-authorization declined for booking %s: %s", booking_id, e.cause)
        raise

    def apply(b: Booking) -> None:
        old = b.payment.depositPaymentIntentId
        if old and old != res.id and old not in b.payment.previousDepositPaymentIntentIds:
            b.payment.previousDepositPaymentIntentIds.append(old)
        b.payment.depositPaymentIntentId = res.id
        b.payment.depositStatus = DepositStatus.AUTHORIZED if res.status == "requires_capture" else DepositStatus.PENDING
        log_history(b, actor, "deposit_reauthorized", f"Deposit re-authorized ({res.status})", {
            "paymentIntentId": res.id,
            "previousPaymentIntentId": old,
            "amount": b.pricing.depositAmount,
            "status": res.status,
        })

    booking, _ = mutate_booking(store, booking_id, apply, extra_writes=_link(store, res.id))
    if res.requires_action:
        raise _needs_action(res, "Customer action needed to authorize the deposit")
    return booking


# -- additional charges ---------------------------------------------------------

def post_adjustment(
    store: RecordStore,
    booking_id: str,
    actor: Actor,
    amount: float,
    memo: str,
    pending_charge: bool = False,
    record_refund: bool = False,
) -> tuple[Booking, Adjustment]:
    """Ledger step: adjustment record, pricing totals and history in one write."""
    amount = pricing_service.money(amount)
    if amount == 0:
        raise ValidationError("Amount must not be zero")
    adj_id = str(uuid.uuid4())

    def apply(b: Booking) -> Adjustment:
        captured = b.payment.depositCapturedAmount if b.payment.depositStatus == DepositStatus.CAPTURED else 0.0
        pricing_service.apply_adjustment(b.pricing, amount, captured, allow_below_deposit=record_refund)
        adj = Adjustment(
            id=adj_id,
            amount=amount,
            memo=memo or ("Additional charge" if amount > 0 else "Credit"),
            type="charge" if amount > 0 else "credit",
            status="pending" if pending_charge else "manual",
            createdBy=actor.label,
        )
        b.payment.additionalCharges.append(adj)
        if amount < 0 and b.pricing.finalAmount < captured:
            b.payment.refunds.append(RefundRecord(
                id=str(uuid.uuid4()),
                amount=pricing_service.money(captured - b.pricing.finalAmount),
                reason=adj.memo,
                createdBy=actor.label,
            ))
        action = "additional_charge" if amount > 0 else "credit_applied"
        log_history(b, actor, action, f"{adj.memo}: {'+' if amount > 0 else '-'}${abs(amount):.2f}", {
            "adjustmentId": adj_id,
            "amount": amount,
            "finalAmount": b.pricing.finalAmount,
        })
        return adj

    return mutate_booking(store, booking_id, apply)


def charge_additional(
    store: RecordStore,
    gateway: StripeGateway,
    booking_id: str,
    actor: Actor,
    amount: float,
    memo: str = "",
    charge_now: bool = False,
    record_refund: bool = False,
    idempotency_key: Optional[str] = None,
) -> tuple[Booking, Optional[AdditionalPayment]]:
    charge = charge_now and amount > 0
    booking, adj = post_adjustment(store, booking_id, actor, amount, memo, pending_charge=charge, record_refund=record_refund)
    if not charge:
        return booking, None

    payment_id = str(uuid.uuid4())
    res: Optional[IntentResult] = None
    error: Optional[RentalError] = None
    status = "failed"
    try:
        pm = _payment_method_for(gateway, booking)
        if not pm:
            raise ValidationError("No saved payment method on file", cause=f"booking {booking.id} has no card to charge")
        res = gateway.charge_off_session(
            amount=adj.amount,
            customer_id=booking.payment.stripeCustomerId or "",
            payment_method_id=pm,
            metadata={"rental_id": booking.id, "type": "additional_charge", "adjustment_id": adj.id},
            idempotency_key=idempotency_key or f"additional:{booking.id}:{adj.id}",
            description=adj.memo,
        )
        status = {"succeeded": "succeeded", "requires_action": "requires_action"}.get(res.status, "pending")
    except PaymentProviderUnavailable as e:
        # Outcome unknown; the ledger entry stays and the admin can check the processor.
        error, status = e, "pending"
    except RentalError as e:
        error, status = e, "failed"

    record = AdditionalPayment(
        id=payment_id,
        adjustmentId=adj.id,
        amount=adj.amount,
        description=adj.memo,
        paymentIntentId=res.id if res else None,
        status=status,
        error=(f"{error.message}: {error.cause}" if error and error.cause else (error.message if error else None)),
        processedBy=actor.label,
    )

    def apply(b: Booking) -> None:
        b.payment.additionalPayments.append(record)
        for a in b.payment.additionalCharges:
            if a.id == adj.id:
                a.status = record.status
                a.paymentIntentId = record.paymentIntentId
                a.error = record.error
        recompute_total_paid(b)
        log_history(b, actor, f"additional_payment_{record.status}", f"Charge for {adj.memo}: {record.status}", {
            "additionalPaymentId": record.id,
            "paymentIntentId": record.paymentIntentId,
            "amount": record.amount,
            "error": record.error,
        })

    booking, _ = mutate_booking(store, booking_id, apply, extra_writes=_link(store, res.id) if res else None)
    logger.info("additional charge %s for booking %s: %s", record.id, booking_id, record.status)

    if error is not None:
        raise error
    if res is not None and res.requires_action:
        raise _needs_action(res, "Customer action needed to complete the additional charge")
    return booking, record


# -- final payment --------------------------------------------------------------

# Intent states in which the processor may still move money on its own.
LIVE_INTENT_STATUSES = {"requires_action", "requires_confirmation", "requires_capture", "processing", "succeeded"}


def _retire_pending_final(store: RecordStore, gateway: StripeGateway, b: Booking, actor: Actor) -> Booking:
    """Clear an unpaid final intent before a new attempt, or refuse if it can still be paid."""
    intent_id = b.payment.finalPaymentIntentId
    pending = gateway.retrieve(intent_id)
    if pending.status == "succeeded":
        raise ConflictError("Final payment already collected", cause=f"intent {intent_id} succeeded; awaiting webhook")
    if pending.status in LIVE_INTENT_STATUSES:
        raise ConflictError(
            "Final payment is awaiting customer authentication",
            cause=f"intent {intent_id} is {pending.status}",
        )
    if pending.status != "canceled":
        gateway.cancel(intent_id)

    def retire(b: Booking) -> None:
        if b.payment.finalPaymentIntentId != intent_id:
            return
        b.payment.previousFinalPaymentIntentIds.append(intent_id)
        b.payment.finalPaymentIntentId = None
        b.payment.finalPaymentStatus = ChargeStatus.FAILED
        log_history(b, actor, "final_payment_superseded", "Abandoned final payment attempt canceled", {
            "paymentIntentId": intent_id,
            "status": pending.status,
        })

    booking, _ = mutate_booking(store, b.id, retire)
    logger.info("final intent %s (%s) on booking %s superseded", intent_id, pending.status, b.id)
    return booking


def charge_final(
    store: RecordStore,
    gateway: StripeGateway,
    booking_id: str,
    actor: Actor,
    additional_charges: float = 0.0,
    memo: str = "",
    idempotency_key: Optional[str] = None,
) -> Booking:
    b = get_booking(store, booking_id)
    if b.status not in (BookingStatus.CONFIRMED, BookingStatus.ACTIVE):
        raise ConflictError(f"Cannot charge final amount on a {b.status.value} booking")
    if b.payment.finalPaymentStatus == ChargeStatus.SUCCEEDED:
        raise ConflictError("Final payment already collected")
    if b.payment.finalPaymentIntentId:
        b = _retire_pending_final(store, gateway, b, actor)

    if additional_charges:
        b, _ = post_adjustment(store, booking_id, actor, additional_charges, memo or "Additional charges at return")

    due = pricing_service.money(b.pricing.finalAmount - succeeded_additional_total(b))
    if due <= 0:
        raise ValidationError("Nothing left to charge", cause=f"finalAmount {b.pricing.finalAmount}, already paid {succeeded_additional_total(b)}")
    pm = _payment_method_for(gateway, b)
    if not pm:
        raise ValidationError("No saved payment method found", cause=f"booking {b.id} has no card to charge")

    try:
        res = gateway.charge_off_session(
            amount=due,
            customer_id=b.payment.stripeCustomerId or "",
            payment_method_id=pm,
            metadata={"rental_id": b.id, "type": "final_payment", "final_amount": b.pricing.finalAmount},
            idempotency_key=idempotency_key or f"final:{b.id}:{uuid.uuid4().hex}",
            description=f"Final rental payment - {b.car.brand} {b.car.model} ({b.car.year}) {b.rentalDates.startDate}..{b.rentalDates.endDate}",
        )
    except PaymentDeclinedError as e:
        def record_decline(b: Booking) -> None:
            b.payment.finalPaymentStatus = ChargeStatus.FAILED
            b.payment.finalPaymentAmount = due
            log_history(b, actor, "final_payment_failed", "Final payment declined", {"amount": due, "error": e.cause})
        mutate_booking(store, booking_id, record_decline)
        logger.info("final payment declined for booking %s: %s", booking_id, e.cause)
        raise

    def apply(b: Booking) -> None:
        old = b.payment.finalPaymentIntentId
        if old and old != res.id and old not in b.payment.previousFinalPaymentIntentIds:
            b.payment.previousFinalPaymentIntentIds.append(old)
        b.payment.finalPaymentIntentId = res.id
        b.payment.finalPaymentAmount = due
        if res.status == "succeeded":
            b.payment.finalPaymentStatus = ChargeStatus.SUCCEEDED
            recompute_total_paid(b)
            log_history(b, actor, "final_payment_succeeded", f"Final payment collected: ${due:.2f}", {
                "paymentIntentId": res.id,
                "amount": due,
            })
            if can_transition(b.status, BookingStatus.COMPLETED):
                apply_transition(b, BookingStatus.COMPLETED, actor, "Rental completed on final payment")
        else:
            b.payment.finalPaymentStatus = ChargeStatus.PENDING
            log_history(b, actor, "final_payment_pending", f"Final payment {res.status}", {
                "paymentIntentId": res.id,
                "amount": due,
                "status": res.status,
            })

    booking, _ = mutate_booking(store, booking_id, apply, extra_writes=_link(store, res.id))
    if res.requires_action:
        raise _needs_action(res, "Customer action needed to complete the final payment")
    return booking
