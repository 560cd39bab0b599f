"""Rental pricing: days, subtotal, tiered deposit and the finalAmount ledger.

Amounts are dollars (floats rounded to cents); ``to_cents`` converts for the
processor.
"""
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from app.core.config import settings
from app.core.errors import ValidationError
from app.schemas.booking import Pricing

DEPOSIT_THRESHOLD = 500
DEPOSIT_LOW = 500
DEPOSIT_HIGH = 1000


def money(x) -> float:
    return float(Decimal(str(x)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def to_cents(amount) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents) -> float:
    return money(Decimal(int(cents or 0)) / 100)


def deposit_for(daily_rate: float) -> float:
    return float(DEPOSIT_LOW if daily_rate < DEPOSIT_THRESHOLD else DEPOSIT_HIGH)


def rental_days(start: date, end: date) -> int:
    # Whole calendar dates, so the ceiling of the difference is the difference itself.
    return max(1, (end - start).days)


def validate_rental_dates(start: date, end: date, today: date, max_days: Optional[int] = None) -> int:
    max_days = max_days or settings.MAX_RENTAL_DAYS
    if start <= today:
        raise ValidationError("Start date must be in the future", cause=f"startDate {start} <= today {today}")
    if end <= start:
        raise ValidationError("End date must be after start date", cause=f"endDate {end} <= startDate {start}")
    days = (end - start).days
    if days > max_days:
        raise ValidationError(f"Rental cannot exceed {max_days} days", cause=f"{days} days requested")
    return days


def price(daily_rate: float, start: date, end: date) -> Pricing:
    if daily_rate <= 0:
        raise ValidationError("Car has no valid daily price", cause=f"dailyRate={daily_rate}")
    days = rental_days(start, end)
    subtotal = money(daily_rate * days)
    return Pricing(
        dailyRate=money(daily_rate),
        totalDays=days,
        subtotal=subtotal,
        depositAmount=deposit_for(daily_rate),
        finalAmount=subtotal,
        additionalCharges=0.0,
    )


def _check_floor(new_final: float, captured_deposit: float, allow_below_deposit: bool, what: str) -> None:
    if new_final < captured_deposit and not allow_below_deposit:
        raise ValidationError(
            f"{what} would reduce the total below the captured deposit",
            cause=f"finalAmount {new_final} < captured deposit {captured_deposit}; record a refund to proceed",
        )
    if new_final < 0:
        raise ValidationError(f"{what} would make the booking total negative", cause=f"finalAmount would be {new_final}")


def apply_adjustment(pricing: Pricing, amount: float, captured_deposit: float = 0.0, allow_below_deposit: bool = False) -> Pricing:
    """Post a signed amount to the ledger totals. Mutates and returns ``pricing``."""
    amount = money(amount)
    new_final = money(pricing.finalAmount + amount)
    if amount < 0:
        _check_floor(new_final, captured_deposit, allow_below_deposit, "Credit")
    pricing.additionalCharges = money(pricing.additionalCharges + amount)
    pricing.finalAmount = new_final
    return pricing


def reschedule(pricing: Pricing, daily_rate: float, start: date, end: date, captured_deposit: float = 0.0) -> Pricing:
    """Reprice for new dates, carrying the posted adjustments forward.

    Carried-forward credits get the same floor as a new credit: they may not
    take the total below the captured deposit (or below the new subtotal,
    when the shorter rental itself costs less than the hold).
    """
    fresh = price(daily_rate, start, end)
    fresh.additionalCharges = pricing.additionalCharges
    fresh.finalAmount = money(fresh.subtotal + pricing.additionalCharges)
    _check_floor(fresh.finalAmount, min(captured_deposit, fresh.subtotal), False, "Carried-forward credits")
    return fresh


def promo_discount(promo, subtotal: float) -> float:
    """Discount for a promo record (percentOff or amountOff), capped at the subtotal."""
    if promo.percentOff:
        d = subtotal * promo.percentOff / 100
    else:
        d = promo.amountOff or 0
    return money(min(max(d, 0), subtotal))
