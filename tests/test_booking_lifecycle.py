"""
Booking lifecycle: guarded create, status transitions, cancel and reschedule.
"""
from datetime import timedelta

import pytest

from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.schemas.booking import AdminActor, BookingCreate, BookingStatus, CustomerIn
from app.schemas.promo import PromoCreate
from app.services import booking_service, payment_service, promo_service
from app.services.availability_service import is_available
from app.services.rental_repository import (
    booking_for_intent,
    bookings_for_customer,
    calendar_rev,
    get_booking,
    list_bookings,
    load_booking,
)

from conftest import days_ahead

ADMIN = AdminActor(id="admin-1", email="admin@dtexotics.test")


def _create(store, gateway, car_id="car-a", start=10, end=13, email="jane@example.com", promo=None):
    payload = BookingCreate(
        carId=car_id,
        startDate=days_ahead(start),
        endDate=days_ahead(end),
        customer=CustomerIn(firstName="Jane", lastName="Doe", email=email),
        promoCode=promo,
    )
    return booking_service.create_booking(store, gateway, payload)


# =============================================================================
# Create
# =============================================================================

def test_create_prices_and_links_deposit_intent(store, gateway, cars):
    booking, intent = _create(store, gateway)
    assert booking.status == BookingStatus.PENDING
    assert booking.pricing.totalDays == 3
    assert booking.pricing.subtotal == 1350
    assert booking.pricing.depositAmount == 500
    assert booking.payment.depositPaymentIntentId == intent.id
    assert booking.payment.depositStatus.value == "pending"
    assert booking.payment.stripeCustomerId == "cus_test"
    assert booking_for_intent(store, intent.id) == booking.id
    assert [h.action for h in booking.history] == ["created"]

    kwargs = gateway.create_deposit_intent.call_args.kwargs
    assert kwargs["amount"] == 500
    assert kwargs["metadata"]["rental_id"] == booking.id
    assert [b.id for b in bookings_for_customer(store, "JANE@example.com")] == [booking.id]


def test_create_unknown_car_is_not_found(store, gateway, cars):
    with pytest.raises(NotFoundError):
        _create(store, gateway, car_id="ghost")
    gateway.create_deposit_intent.assert_not_called()


def test_create_rejects_bad_dates_before_touching_processor(store, gateway, cars):
    with pytest.raises(ValidationError):
        _create(store, gateway, start=0, end=2)
    with pytest.raises(ValidationError):
        _create(store, gateway, start=5, end=40)
    gateway.ensure_customer.assert_not_called()


def test_overlapping_create_is_rejected_up_front(store, gateway, cars):
    _create(store, gateway, start=10, end=13)
    with pytest.raises(ConflictError):
        _create(store, gateway, start=13, end=15, email="bob@example.com")
    assert gateway.create_deposit_intent.call_count == 1


def test_lost_race_at_write_time_cancels_the_orphan_intent(store, gateway, cars, monkeypatch):
    """Both requests pass the pre-check; the second loses the guarded re-check."""
    real = booking_service.is_available
    calls = {"n": 0}

    def precheck_always_free(store_, car_id, start, end, exclude_booking_id=None):
        calls["n"] += 1
        # first call of each create is the pre-check
        if calls["n"] % 2 == 1:
            return real(store_, "car-b", start, end)
        return real(store_, car_id, start, end, exclude_booking_id)

    monkeypatch.setattr(booking_service, "is_available", precheck_always_free)
    first, _ = _create(store, gateway, start=10, end=13)
    with pytest.raises(ConflictError) as exc:
        _create(store, gateway, start=11, end=12, email="bob@example.com")
    assert "no longer available" in exc.value.message
    gateway.cancel.assert_called_once_with("pi_dep_2")
    assert [b.id for b in list_bookings(store)] == [first.id]
    assert booking_for_intent(store, "pi_dep_2") is None


def test_promo_is_posted_as_a_credit(store, gateway, cars):
    promo_service.create_promo(store, PromoCreate(code="VEGAS10", percentOff=10, partnerName="Bellagio"))
    booking, _ = _create(store, gateway, promo="vegas10")
    assert booking.promo.code == "VEGAS10"
    assert booking.promo.discount == 135
    assert booking.pricing.additionalCharges == -135
    assert booking.pricing.finalAmount == 1215
    assert booking.pricing.finalAmount == booking.pricing.subtotal + booking.pricing.additionalCharges
    assert booking.payment.additionalCharges[0].type == "credit"


# =============================================================================
# Transitions
# =============================================================================

def test_confirm_is_idempotent(store, gateway, cars):
    booking, _ = _create(store, gateway)
    b, changed = booking_service.confirm_booking(store, booking.id, ADMIN)
    assert changed and b.status == BookingStatus.CONFIRMED
    b, changed = booking_service.confirm_booking(store, booking.id, ADMIN)
    assert not changed
    assert [h.action for h in b.history] == ["created", "confirmed"]
    assert b.history[-1].performedBy == "admin:admin@dtexotics.test"


def test_confirm_counts_promo_use_once(store, gateway, cars):
    promo_service.create_promo(store, PromoCreate(code="VIP", amountOff=100))
    booking, _ = _create(store, gateway, promo="VIP")
    booking_service.confirm_booking(store, booking.id, ADMIN)
    booking_service.confirm_booking(store, booking.id, ADMIN)
    assert promo_service.get_stats(store, "VIP").totalUses == 1


@pytest.mark.parametrize("source, target, ok", [
    (BookingStatus.PENDING, BookingStatus.ACTIVE, False),
    (BookingStatus.PENDING, BookingStatus.COMPLETED, False),
    (BookingStatus.CONFIRMED, BookingStatus.ACTIVE, True),
    (BookingStatus.ACTIVE, BookingStatus.COMPLETED, True),
    (BookingStatus.COMPLETED, BookingStatus.CANCELLED, False),
    (BookingStatus.CANCELLED, BookingStatus.CONFIRMED, False),
])
def test_transition_table(source, target, ok):
    assert booking_service.can_transition(source, target) is ok


def test_complete_requires_confirmed_or_active(store, gateway, cars):
    booking, _ = _create(store, gateway)
    with pytest.raises(ConflictError):
        booking_service.complete_booking(store, booking.id, ADMIN)
    booking_service.confirm_booking(store, booking.id, ADMIN)
    b, changed = booking_service.complete_booking(store, booking.id, ADMIN)
    assert changed and b.status == BookingStatus.COMPLETED


def test_cancel_records_bookkeeping_refund(store, gateway, cars):
    booking, _ = _create(store, gateway)
    b = booking_service.cancel_booking(store, booking.id, ADMIN, reason="customer request", refund_amount=0)
    assert b.status == BookingStatus.CANCELLED
    assert b.cancellation.cancelledBy == "admin:admin@dtexotics.test"
    assert b.cancellation.refundProcessed is False
    assert b.history[-1].action == "cancelled"
    # cancelled bookings free the dates
    assert is_available(store, "car-a", b.rentalDates.startDate, b.rentalDates.endDate).available


def test_refund_cannot_exceed_total_paid(store, gateway, cars):
    booking, _ = _create(store, gateway)
    with pytest.raises(ValidationError):
        booking_service.cancel_booking(store, booking.id, ADMIN, refund_amount=10)
    assert get_booking(store, booking.id).status == BookingStatus.PENDING


def test_cancel_on_completed_is_conflict_and_leaves_booking_unchanged(store, gateway, cars):
    booking, _ = _create(store, gateway)
    booking_service.confirm_booking(store, booking.id, ADMIN)
    booking_service.complete_booking(store, booking.id, ADMIN)
    before, version = load_booking(store, booking.id)
    with pytest.raises(ConflictError):
        booking_service.cancel_booking(store, booking.id, ADMIN, reason="too late")
    after, version_after = load_booking(store, booking.id)
    assert version_after == version
    assert after.status == BookingStatus.COMPLETED
    assert len(after.history) == len(before.history)


def test_cancel_twice_is_conflict(store, gateway, cars):
    booking, _ = _create(store, gateway)
    booking_service.cancel_booking(store, booking.id, ADMIN)
    with pytest.raises(ConflictError):
        booking_service.cancel_booking(store, booking.id, ADMIN)


def test_lost_update_is_retried_against_fresh_state(store, gateway, cars, monkeypatch):
    booking, _ = _create(store, gateway)
    import app.services.rental_repository as repo
    real_save = repo.save_booking
    state = {"raced": False}

    def racing_save(store_, b, expected_version):
        if not state["raced"]:
            # another writer confirms the booking between our read and our write
            state["raced"] = True
            other, v = load_booking(store_, b.id)
            other.status = BookingStatus.CONFIRMED
            assert real_save(store_, other, v)
            store_.commit()
        return real_save(store_, b, expected_version)

    monkeypatch.setattr(repo, "save_booking", racing_save)
    b, changed = booking_service.confirm_booking(store, booking.id, ADMIN)
    assert b.status == BookingStatus.CONFIRMED
    assert changed is False  # re-evaluated after the retry: already confirmed


def test_persistent_version_conflict_gives_up(store, gateway, cars, monkeypatch):
    booking, _ = _create(store, gateway)
    import app.services.rental_repository as repo
    monkeypatch.setattr(repo, "save_booking", lambda *a, **k: False)
    with pytest.raises(ConflictError):
        booking_service.confirm_booking(store, booking.id, ADMIN)
    assert get_booking(store, booking.id).status == BookingStatus.PENDING


# =============================================================================
# Reschedule
# =============================================================================

def test_reschedule_recomputes_and_resets_to_confirmed(store, gateway, cars):
    booking, _ = _create(store, gateway, car_id="car-b", start=10, end=12)
    assert booking.pricing.subtotal == 1600
    b = booking_service.reschedule_booking(store, booking.id, ADMIN, days_ahead(10), days_ahead(15), reason="flight moved")
    assert b.status == BookingStatus.CONFIRMED
    assert b.pricing.totalDays == 5
    assert b.pricing.subtotal == 4000
    assert b.pricing.depositAmount == 1000
    assert b.originalDates.startDate == days_ahead(10)
    assert b.originalDates.endDate == days_ahead(12)
    assert len(b.rescheduleHistory) == 1
    assert b.rescheduleHistory[0].reason == "flight moved"
    assert [h.action for h in b.history].count("rescheduled") == 1


def test_reschedule_may_overlap_its_own_dates_but_not_others(store, gateway, cars):
    mine, _ = _create(store, gateway, start=10, end=13)
    _create(store, gateway, start=20, end=22, email="bob@example.com")
    b = booking_service.reschedule_booking(store, mine.id, ADMIN, days_ahead(11), days_ahead(14))
    assert b.rentalDates.startDate == days_ahead(11)
    with pytest.raises(ConflictError):
        booking_service.reschedule_booking(store, mine.id, ADMIN, days_ahead(18), days_ahead(21))
    assert get_booking(store, mine.id).rentalDates.startDate == days_ahead(11)


def test_reschedule_keeps_first_original_dates(store, gateway, cars):
    booking, _ = _create(store, gateway, start=10, end=12)
    booking_service.reschedule_booking(store, booking.id, ADMIN, days_ahead(30), days_ahead(32))
    b = booking_service.reschedule_booking(store, booking.id, ADMIN, days_ahead(40), days_ahead(42))
    assert b.originalDates.startDate == days_ahead(10)
    assert len(b.rescheduleHistory) == 2


def test_reschedule_rejected_for_finished_bookings(store, gateway, cars):
    booking, _ = _create(store, gateway)
    booking_service.cancel_booking(store, booking.id, ADMIN)
    with pytest.raises(ConflictError):
        booking_service.reschedule_booking(store, booking.id, ADMIN, days_ahead(20), days_ahead(22))


def test_reschedule_validates_dates(store, gateway, cars):
    booking, _ = _create(store, gateway)
    with pytest.raises(ValidationError):
        booking_service.reschedule_booking(store, booking.id, ADMIN, days_ahead(5), days_ahead(5) - timedelta(days=1))


def test_reschedule_refuses_to_leave_credits_larger_than_the_rental(store, gateway, cars):
    booking, _ = _create(store, gateway, car_id="car-b", start=10, end=15)
    payment_service.charge_additional(store, gateway, booking.id, ADMIN, amount=-3000, memo="Loyalty credit")
    before, version = load_booking(store, booking.id)
    assert before.pricing.finalAmount == 1000

    with pytest.raises(ValidationError):
        booking_service.reschedule_booking(store, booking.id, ADMIN, days_ahead(10), days_ahead(11))
    after, version_after = load_booking(store, booking.id)
    assert version_after == version
    assert after.pricing.finalAmount == 1000
    assert after.rentalDates.endDate == days_ahead(15)
    assert after.rescheduleHistory == []


def test_reschedule_carries_a_small_credit_forward(store, gateway, cars):
    booking, _ = _create(store, gateway, car_id="car-b", start=10, end=15)
    payment_service.charge_additional(store, gateway, booking.id, ADMIN, amount=-300, memo="Goodwill")
    b = booking_service.reschedule_booking(store, booking.id, ADMIN, days_ahead(10), days_ahead(12))
    assert b.pricing.subtotal == 1600
    assert b.pricing.additionalCharges == -300
    assert b.pricing.finalAmount == 1300


def test_repeated_confirm_writes_nothing(store, gateway, cars):
    booking, _ = _create(store, gateway)
    booking_service.confirm_booking(store, booking.id, ADMIN)
    first, version = load_booking(store, booking.id)
    rev = calendar_rev(store, "car-a")

    b, changed = booking_service.confirm_booking(store, booking.id, ADMIN)
    assert changed is False
    again, version_after = load_booking(store, booking.id)
    assert version_after == version
    assert again.updatedAt == first.updatedAt
    assert calendar_rev(store, "car-a") == rev
