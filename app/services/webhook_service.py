"""Reconcile Stripe payment_intent events into booking state.

Events reach a booking only through the ``payment:<intentId>`` cross-reference.
The processed-event marker is written in the same transaction as the booking
change, so a redelivered event is a no-op. Handler failures are recorded for
manual investigation and still acknowledged.
"""
import logging
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError

from app.core.errors import NotFoundError, RentalError
from app.schemas.booking import STRIPE_WEBHOOK, Booking, BookingStatus, ChargeStatus, DepositStatus, utcnow
from app.services import pricing_service
from app.services.audit_service import log_history
from app.services.booking_service import apply_transition, can_transition, cancel_in_place, confirm_in_place, recompute_total_paid
from app.services.record_store import RecordStore
from app.services.rental_repository import booking_for_intent, mutate_booking

logger = logging.getLogger(__name__)

FAILED_EVENTS = "webhook:failed"

DEPOSIT_AUTHORIZED = {"payment_intent.amount_capturable_updated", "payment_intent.succeeded"}


def event_key(event_id: str) -> str:
    return f"webhook:event:{event_id}"


def failed_key(event_id: str) -> str:
    return f"webhook:failed:{event_id}"


def _obj_id(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("id")
    return value


def _error_text(obj: dict) -> str:
    err = obj.get("last_payment_error") or {}
    return err.get("message") or err.get("code") or "payment failed"


# -- per-intent handlers -----------------------------------------------------------

def _on_deposit(store: RecordStore, b: Booking, etype: str, obj: dict) -> None:
    p = b.payment
    if etype in DEPOSIT_AUTHORIZED:
        if p.depositStatus in (DepositStatus.PENDING, DepositStatus.FAILED):
            p.depositStatus = DepositStatus.AUTHORIZED
            log_history(b, STRIPE_WEBHOOK, "deposit_authorized", "Security deposit authorized", {
                "paymentIntentId": obj["id"],
                "amountCapturable": pricing_service.from_cents(obj.get("amount_capturable") or obj.get("amount")),
            })
        pm, customer = _obj_id(obj.get("payment_method")), _obj_id(obj.get("customer"))
        if pm:
            p.savedPaymentMethodId = pm
        if customer:
            p.stripeCustomerId = customer
        if b.status == BookingStatus.PENDING:
            confirm_in_place(store, b, STRIPE_WEBHOOK, "Booking confirmed after deposit authorization")
    elif etype == "payment_intent.payment_failed":
        if p.depositStatus != DepositStatus.CAPTURED:
            p.depositStatus = DepositStatus.FAILED
            log_history(b, STRIPE_WEBHOOK, "deposit_failed", "Security deposit authorization failed", {
                "paymentIntentId": obj["id"],
                "error": _error_text(obj),
            })
        if can_transition(b.status, BookingStatus.CANCELLED):
            cancel_in_place(b, STRIPE_WEBHOOK, "Deposit authorization failed")
    elif etype == "payment_intent.canceled":
        if can_transition(b.status, BookingStatus.CANCELLED):
            cancel_in_place(b, STRIPE_WEBHOOK, "Deposit authorization canceled")


def _on_final(b: Booking, etype: str, obj: dict) -> None:
    p = b.payment
    if etype == "payment_intent.succeeded":
        if p.finalPaymentStatus != ChargeStatus.SUCCEEDED:
            p.finalPaymentStatus = ChargeStatus.SUCCEEDED
            received = pricing_service.from_cents(obj.get("amount_received") or obj.get("amount"))
            if received:
                p.finalPaymentAmount = received
            recompute_total_paid(b)
            log_history(b, STRIPE_WEBHOOK, "final_payment_succeeded", f"Final payment collected: ${p.finalPaymentAmount:.2f}", {
                "paymentIntentId": obj["id"],
            })
        if can_transition(b.status, BookingStatus.COMPLETED):
            apply_transition(b, BookingStatus.COMPLETED, STRIPE_WEBHOOK, "Rental completed on final payment")
    elif etype == "payment_intent.payment_failed":
        if p.finalPaymentStatus != ChargeStatus.SUCCEEDED:
            p.finalPaymentStatus = ChargeStatus.FAILED
            log_history(b, STRIPE_WEBHOOK, "final_payment_failed", "Final payment failed", {
                "paymentIntentId": obj["id"],
                "error": _error_text(obj),
            })
    elif etype == "payment_intent.canceled":
        if can_transition(b.status, BookingStatus.CANCELLED):
            cancel_in_place(b, STRIPE_WEBHOOK, "Final payment canceled")


def _on_additional(b: Booking, etype: str, obj: dict) -> bool:
    """Update the additional payment owning this intent. False if none does."""
    for rec in b.payment.additionalPayments:
        if rec.paymentIntentId != obj["id"]:
            continue
        if etype == "payment_intent.succeeded" and rec.status != "succeeded":
            rec.status, rec.error = "succeeded", None
        elif etype in ("payment_intent.payment_failed", "payment_intent.canceled") and rec.status != "succeeded":
            rec.status, rec.error = "failed", _error_text(obj)
        else:
            return True
        for adj in b.payment.additionalCharges:
            if adj.id == rec.adjustmentId:
                adj.status, adj.error = rec.status, rec.error
        recompute_total_paid(b)
        log_history(b, STRIPE_WEBHOOK, f"additional_payment_{rec.status}", f"Charge for {rec.description}: {rec.status}", {
            "additionalPaymentId": rec.id,
            "paymentIntentId": rec.paymentIntentId,
        })
        return True
    return False


def _handler_for(store: RecordStore, etype: str, obj: dict) -> Callable[[Booking], str]:
    intent_id = obj["id"]

    def apply(b: Booking) -> str:
        p = b.payment
        if intent_id == p.depositPaymentIntentId:
            _on_deposit(store, b, etype, obj)
            return "deposit"
        if intent_id == p.finalPaymentIntentId:
            _on_final(b, etype, obj)
            return "final"
        if _on_additional(b, etype, obj):
            return "additional"
        if intent_id in p.previousDepositPaymentIntentIds or intent_id in p.previousFinalPaymentIntentIds:
            return "superseded"
        return "unrelated"

    return apply


# -- entry point ----------------------------------------------------------------------

def _mark_processed(store: RecordStore, event: dict, outcome: str) -> None:
    store.set(event_key(event["id"]), {"type": event.get("type"), "outcome": outcome, "processedAt": utcnow().isoformat()})


def _record_failure(store: RecordStore, event: dict, error: Exception) -> None:
    store.rollback()
    detail = f"{error.message}: {error.cause}" if isinstance(error, RentalError) else repr(error)
    store.set(failed_key(event["id"]), {
        "type": event.get("type"),
        "error": detail,
        "event": event,
        "failedAt": utcnow().isoformat(),
    })
    store.sadd(FAILED_EVENTS, event["id"])
    store.commit()


def list_failed_events(store: RecordStore) -> list[dict]:
    """Recorded handler failures, oldest first, for manual investigation."""
    items = []
    for event_id in store.smembers(FAILED_EVENTS):
        rec = store.get(failed_key(event_id))
        if rec is not None:
            items.append({"id": event_id, **rec})
    items.sort(key=lambda r: r.get("failedAt") or "")
    return items


def dismiss_failed_event(store: RecordStore, event_id: str) -> None:
    if not store.sismember(FAILED_EVENTS, event_id):
        raise NotFoundError("Failed webhook event not found", cause=f"{event_id} is not in {FAILED_EVENTS}")
    store.srem(FAILED_EVENTS, event_id)
    store.delete(failed_key(event_id))
    store.commit()


def handle_event(store: RecordStore, event: dict) -> str:
    """Apply one verified event. Returns a short outcome label; never raises for handler errors."""
    event_id = event.get("id")
    etype = event.get("type") or ""
    if not event_id:
        logger.warning("webhook event without id dropped (%s)", etype)
        return "ignored"
    if store.exists(event_key(event_id)):
        logger.info("webhook event %s already processed", event_id)
        return "duplicate"
    if not etype.startswith("payment_intent."):
        logger.info("webhook event %s of type %s ignored", event_id, etype)
        return "ignored"

    obj = (event.get("data") or {}).get("object") or {}
    intent_id = obj.get("id")
    booking_id = booking_for_intent(store, intent_id) if intent_id else None
    if not booking_id:
        logger.info("webhook %s for unknown intent %s dropped", etype, intent_id)
        return "unmatched"

    if etype == "payment_intent.requires_action":
        # Notification trigger only; the booking does not change.
        logger.info("intent %s for booking %s requires customer action", intent_id, booking_id)
        _mark_processed(store, event, "requires_action")
        store.commit()
        return "requires_action"

    try:
        _, target = mutate_booking(
            store,
            booking_id,
            _handler_for(store, etype, obj),
            extra_writes=lambda b: _mark_processed(store, event, etype),
        )
    except IntegrityError:
        # A concurrent delivery of the same event committed first.
        store.rollback()
        logger.info("webhook event %s processed concurrently", event_id)
        return "duplicate"
    except Exception as e:
        logger.exception("webhook %s (%s) failed for booking %s", event_id, etype, booking_id)
        _record_failure(store, event, e)
        return "failed"

    if target in ("superseded", "unrelated"):
        logger.info("webhook %s for %s intent %s on booking %s ignored", etype, target, intent_id, booking_id)
    return target
