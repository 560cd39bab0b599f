"""
Stripe webhook reconciliation: signature checks over HTTP, then event
handling against the record store.
"""
import json

import pytest

from app.core.errors import NotFoundError, PaymentAuthenticationRequired, PaymentConfigurationError, UnauthorizedError
from app.schemas.booking import AdminActor, BookingCreate, BookingStatus, ChargeStatus, CustomerIn, DepositStatus
from app.services import booking_service, payment_service, webhook_service
from app.services.rental_repository import get_booking, mutate_booking
from app.services.stripe_gateway import IntentResult, StripeConfig, StripeGateway

from conftest import days_ahead, intent_event, post_event, sign_payload

ADMIN = AdminActor(id="admin-1", email="admin@dtexotics.test")


@pytest.fixture
def booking(store, gateway, cars):
    payload = BookingCreate(
        carId="car-a", startDate=days_ahead(10), endDate=days_ahead(13),
        customer=CustomerIn(firstName="Jane", lastName="Doe", email="jane@example.com"),
    )
    b, _ = booking_service.create_booking(store, gateway, payload)
    return b


def _authorized_event(event_id="evt_1", intent_id="pi_dep_1"):
    return intent_event(
        event_id, "payment_intent.amount_capturable_updated", intent_id,
        amount=50000, amount_capturable=50000, payment_method="pm_123", customer="cus_test", status="requires_capture",
    )


# =============================================================================
# Signature verification
# =============================================================================

def test_missing_signature_is_401(client):
    res = client.post("/api/v1/webhooks/payments", content=json.dumps(_authorized_event()))
    assert res.status_code == 401
    assert res.json()["kind"] == "unauthorized"


def test_bad_signature_is_401(client):
    res = post_event(client, _authorized_event(), secret="whsec_wrong")
    assert res.status_code == 401


def test_tampered_payload_is_401(client):
    payload = json.dumps(_authorized_event())
    header = sign_payload(payload)
    res = client.post("/api/v1/webhooks/payments", content=payload.replace("evt_1", "evt_2"), headers={"Stripe-Signature": header})
    assert res.status_code == 401


def test_test_mode_secret_is_accepted(client, booking):
    res = post_event(client, _authorized_event(), secret="whsec_test_test")
    assert res.status_code == 200
    assert res.json() == {"received": True, "outcome": "deposit"}


def test_unconfigured_secret_is_a_server_error(client, gateway):
    unconfigured = StripeGateway(StripeConfig(secret_key="sk_test_dummy"))
    with pytest.raises(PaymentConfigurationError):
        unconfigured.verify_event(b"{}", "t=1,v1=abc")
    gateway.verify_event.side_effect = unconfigured.verify_event
    res = post_event(client, _authorized_event())
    assert res.status_code == 500
    assert res.json()["kind"] == "payment_configuration_error"


def test_verify_event_returns_the_parsed_event():
    gw = StripeGateway(StripeConfig(secret_key="sk_test_dummy", webhook_secrets=["whsec_a"]))
    payload = json.dumps(_authorized_event())
    event = gw.verify_event(payload.encode("utf-8"), sign_payload(payload, "whsec_a"))
    assert event["data"]["object"]["id"] == "pi_dep_1"
    with pytest.raises(UnauthorizedError):
        gw.verify_event(payload.encode("utf-8"), None)


# =============================================================================
# Deposit events
# =============================================================================

def test_deposit_authorization_confirms_booking(store, booking):
    assert webhook_service.handle_event(store, _authorized_event()) == "deposit"
    b = get_booking(store, booking.id)
    assert b.status == BookingStatus.CONFIRMED
    assert b.payment.depositStatus == DepositStatus.AUTHORIZED
    assert b.payment.savedPaymentMethodId == "pm_123"
    assert b.history[-1].performedBy == "system:stripe-webhook"


def test_duplicate_delivery_applies_once(store, booking):
    event = _authorized_event()
    assert webhook_service.handle_event(store, event) == "deposit"
    assert webhook_service.handle_event(store, event) == "duplicate"
    actions = [h.action for h in get_booking(store, booking.id).history]
    assert actions.count("confirmed") == 1
    assert actions.count("deposit_authorized") == 1


def test_two_authorization_events_confirm_once(store, booking):
    webhook_service.handle_event(store, _authorized_event("evt_1"))
    succeeded = intent_event("evt_2", "payment_intent.succeeded", "pi_dep_1", amount=50000, amount_received=50000)
    assert webhook_service.handle_event(store, succeeded) == "deposit"
    actions = [h.action for h in get_booking(store, booking.id).history]
    assert actions.count("confirmed") == 1


def test_deposit_failure_cancels_pending_booking(store, booking):
    event = intent_event("evt_f", "payment_intent.payment_failed", "pi_dep_1",
                         last_payment_error={"code": "card_declined", "message": "Your card was declined."})
    assert webhook_service.handle_event(store, event) == "deposit"
    b = get_booking(store, booking.id)
    assert b.payment.depositStatus == DepositStatus.FAILED
    assert b.status == BookingStatus.CANCELLED
    assert b.cancellation.cancelledBy == "system:stripe-webhook"


def test_deposit_failure_after_completion_leaves_status(store, booking):
    booking_service.confirm_booking(store, booking.id, ADMIN)
    booking_service.complete_booking(store, booking.id, ADMIN)
    event = intent_event("evt_f", "payment_intent.payment_failed", "pi_dep_1")
    webhook_service.handle_event(store, event)
    assert get_booking(store, booking.id).status == BookingStatus.COMPLETED


def test_requires_action_does_not_change_booking(store, booking):
    event = intent_event("evt_a", "payment_intent.requires_action", "pi_dep_1")
    assert webhook_service.handle_event(store, event) == "requires_action"
    b = get_booking(store, booking.id)
    assert b.status == BookingStatus.PENDING
    assert [h.action for h in b.history] == ["created"]
    assert webhook_service.handle_event(store, event) == "duplicate"


# =============================================================================
# Final and additional payment events
# =============================================================================

def _pending_final(store, gateway, booking):
    def authorize(b):
        b.payment.depositStatus = DepositStatus.AUTHORIZED
        booking_service.confirm_in_place(store, b, ADMIN)
    mutate_booking(store, booking.id, authorize)
    gateway.charge_off_session.return_value = IntentResult(id="pi_final", status="requires_action", amount=1350, client_secret="s")
    with pytest.raises(PaymentAuthenticationRequired):
        payment_service.charge_final(store, gateway, booking.id, ADMIN)


def test_final_payment_success_completes_booking(store, gateway, booking):
    _pending_final(store, gateway, booking)
    event = intent_event("evt_p", "payment_intent.succeeded", "pi_final", amount=135000, amount_received=135000)
    assert webhook_service.handle_event(store, event) == "final"
    b = get_booking(store, booking.id)
    assert b.status == BookingStatus.COMPLETED
    assert b.payment.finalPaymentStatus == ChargeStatus.SUCCEEDED
    assert b.payment.totalPaid == 1350


def test_final_payment_failure_is_recorded(store, gateway, booking):
    _pending_final(store, gateway, booking)
    event = intent_event("evt_p", "payment_intent.payment_failed", "pi_final", last_payment_error={"message": "expired"})
    assert webhook_service.handle_event(store, event) == "final"
    b = get_booking(store, booking.id)
    assert b.payment.finalPaymentStatus == ChargeStatus.FAILED
    assert b.status == BookingStatus.CONFIRMED


def test_additional_payment_settles_via_webhook(store, gateway, booking):
    gateway.charge_off_session.return_value = IntentResult(id="pi_add", status="requires_action", amount=75, client_secret="s")
    with pytest.raises(PaymentAuthenticationRequired):
        payment_service.charge_additional(store, gateway, booking.id, ADMIN, amount=75, memo="Fuel", charge_now=True)
    event = intent_event("evt_add", "payment_intent.succeeded", "pi_add", amount=7500, amount_received=7500)
    assert webhook_service.handle_event(store, event) == "additional"
    b = get_booking(store, booking.id)
    assert b.payment.additionalPayments[-1].status == "succeeded"
    assert b.payment.additionalCharges[-1].status == "succeeded"
    assert b.payment.totalPaid == 75


# =============================================================================
# Dropped and failed events
# =============================================================================

def test_superseded_deposit_intent_is_ignored(store, gateway, booking):
    def authorize(b):
        b.payment.savedPaymentMethodId = "pm_saved"
    mutate_booking(store, booking.id, authorize)
    gateway.charge_off_session.return_value = IntentResult(id="pi_reauth", status="requires_capture", amount=500)
    payment_service.reauthorize_deposit(store, gateway, booking.id, ADMIN)

    event = intent_event("evt_old", "payment_intent.payment_failed", "pi_dep_1")
    assert webhook_service.handle_event(store, event) == "superseded"
    b = get_booking(store, booking.id)
    assert b.status == BookingStatus.PENDING
    assert b.payment.depositStatus == DepositStatus.AUTHORIZED


def test_unknown_intent_and_other_event_types_are_dropped(store, booking):
    assert webhook_service.handle_event(store, intent_event("evt_x", "payment_intent.succeeded", "pi_nobody")) == "unmatched"
    assert webhook_service.handle_event(store, {"id": "evt_c", "type": "charge.refunded", "data": {"object": {}}}) == "ignored"
    assert webhook_service.handle_event(store, {"type": "payment_intent.succeeded"}) == "ignored"


def test_handler_failure_is_recorded_and_acknowledged(client, store, booking, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("promo store unavailable")

    monkeypatch.setattr(webhook_service, "confirm_in_place", boom)
    res = post_event(client, _authorized_event("evt_boom"))
    assert res.status_code == 200
    assert res.json()["outcome"] == "failed"

    store.rollback()
    assert store.sismember(webhook_service.FAILED_EVENTS, "evt_boom")
    failed = store.get(webhook_service.failed_key("evt_boom"))
    assert "promo store unavailable" in failed["error"]
    assert failed["event"]["id"] == "evt_boom"
    # nothing was applied and the event is not marked processed
    assert get_booking(store, booking.id).status == BookingStatus.PENDING
    assert not store.exists(webhook_service.event_key("evt_boom"))


def test_events_for_a_replaced_final_intent_are_superseded(store, gateway, booking):
    _pending_final(store, gateway, booking)
    gateway.retrieve.return_value = IntentResult(id="pi_final", status="requires_payment_method", amount=1350)
    gateway.charge_off_session.return_value = IntentResult(id="pi_retry", status="succeeded", amount=1350, amount_received=1350)
    payment_service.charge_final(store, gateway, booking.id, ADMIN)

    event = intent_event("evt_late", "payment_intent.canceled", "pi_final")
    assert webhook_service.handle_event(store, event) == "superseded"
    b = get_booking(store, booking.id)
    assert b.status == BookingStatus.COMPLETED
    assert b.payment.totalPaid == 1350


def test_failed_events_can_be_listed_and_dismissed(store, booking, monkeypatch):
    monkeypatch.setattr(webhook_service, "confirm_in_place", lambda *a, **k: 1 / 0)
    assert webhook_service.handle_event(store, _authorized_event("evt_bad")) == "failed"

    failed = webhook_service.list_failed_events(store)
    assert [f["id"] for f in failed] == ["evt_bad"]
    assert "ZeroDivisionError" in failed[0]["error"]

    webhook_service.dismiss_failed_event(store, "evt_bad")
    assert webhook_service.list_failed_events(store) == []
    with pytest.raises(NotFoundError):
        webhook_service.dismiss_failed_event(store, "evt_bad")
