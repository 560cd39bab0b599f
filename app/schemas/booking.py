from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Statuses that hold the car's dates.
BLOCKING_STATUSES = frozenset({BookingStatus.PENDING, BookingStatus.CONFIRMED, BookingStatus.ACTIVE})
TERMINAL_STATUSES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED})


class DepositStatus(str, Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"


class ChargeStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# -- actors ------------------------------------------------------------------

class AdminActor(BaseModel):
    kind: Literal["admin"] = "admin"
    id: str
    email: str

    @property
    def label(self) -> str:
        return f"admin:{self.email}"


class SystemActor(BaseModel):
    kind: Literal["system"] = "system"
    source: str

    @property
    def label(self) -> str:
        return f"system:{self.source}"


Actor = Annotated[Union[AdminActor, SystemActor], Field(discriminator="kind")]

STRIPE_WEBHOOK = SystemActor(source="stripe-webhook")
PUBLIC_BOOKING = SystemActor(source="public-booking")


# -- booking parts -----------------------------------------------------------

class CustomerIn(BaseModel):
    firstName: str
    lastName: str
    email: str  # plain str to allow .local and other dev domains
    phone: str = ""
    driversLicense: str = ""

    @field_validator("firstName", "lastName", "email")
    @classmethod
    def _required(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        v = v.lower()
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError("invalid email")
        return v


class CarSnapshot(BaseModel):
    id: str
    brand: str
    model: str
    year: int
    dailyPrice: float


class RentalDates(BaseModel):
    startDate: date
    endDate: date


class Pricing(BaseModel):
    dailyRate: float
    totalDays: int
    subtotal: float
    depositAmount: float
    finalAmount: float
    additionalCharges: float = 0.0


class Adjustment(BaseModel):
    """Ledger entry for a signed change to pricing.finalAmount."""
    id: str
    amount: float
    memo: str
    type: Literal["charge", "credit"]
    status: Literal["manual", "pending", "succeeded", "requires_action", "failed"] = "manual"
    paymentIntentId: Optional[str] = None
    error: Optional[str] = None
    createdBy: str = ""
    createdAt: datetime = Field(default_factory=utcnow)


class AdditionalPayment(BaseModel):
    """One processor attempt to collect money outside deposit and final payment."""
    id: str
    adjustmentId: Optional[str] = None
    amount: float
    description: str
    paymentIntentId: Optional[str] = None
    status: Literal["pending", "requires_action", "succeeded", "failed"] = "pending"
    error: Optional[str] = None
    processedBy: str = ""
    createdAt: datetime = Field(default_factory=utcnow)


class RefundRecord(BaseModel):
    id: str
    amount: float
    reason: str
    processed: bool = False
    createdBy: str = ""
    createdAt: datetime = Field(default_factory=utcnow)


class PaymentInfo(BaseModel):
    depositPaymentIntentId: Optional[str] = None
    depositStatus: DepositStatus = DepositStatus.PENDING
    depositCapturedAmount: float = 0.0
    previousDepositPaymentIntentIds: List[str] = Field(default_factory=list)
    finalPaymentIntentId: Optional[str] = None
    previousFinalPaymentIntentIds: List[str] = Field(default_factory=list)
    finalPaymentStatus: Optional[ChargeStatus] = None
    finalPaymentAmount: float = 0.0
    stripeCustomerId: Optional[str] = None
    savedPaymentMethodId: Optional[str] = None
    additionalPayments: List[AdditionalPayment] = Field(default_factory=list)
    additionalCharges: List[Adjustment] = Field(default_factory=list)
    refunds: List[RefundRecord] = Field(default_factory=list)
    totalPaid: float = 0.0


class HistoryEntry(BaseModel):
    id: str
    action: str  # created, confirmed, activated, cancelled, rescheduled, payment_captured, ...
    description: str
    performedBy: str
    actor: Actor
    metadata: dict[str, Any] = Field(default_factory=dict)
    createdAt: datetime = Field(default_factory=utcnow)


class RescheduleEntry(BaseModel):
    oldStartDate: date
    oldEndDate: date
    newStartDate: date
    newEndDate: date
    reason: str = ""
    performedBy: str
    createdAt: datetime = Field(default_factory=utcnow)


class Cancellation(BaseModel):
    cancelledAt: datetime = Field(default_factory=utcnow)
    cancelledBy: str
    reason: str = ""
    refundAmount: float = 0.0
    refundProcessed: bool = False


class PromoApplied(BaseModel):
    code: str
    discount: float
    partnerId: Optional[str] = None
    partnerName: Optional[str] = None


class Booking(BaseModel):
    id: str
    carId: str
    car: CarSnapshot
    customer: CustomerIn
    rentalDates: RentalDates
    originalDates: Optional[RentalDates] = None
    pricing: Pricing
    payment: PaymentInfo = Field(default_factory=PaymentInfo)
    promo: Optional[PromoApplied] = None
    status: BookingStatus = BookingStatus.PENDING
    history: List[HistoryEntry] = Field(default_factory=list)
    rescheduleHistory: List[RescheduleEntry] = Field(default_factory=list)
    cancellation: Optional[Cancellation] = None
    createdAt: datetime = Field(default_factory=utcnow)
    updatedAt: datetime = Field(default_factory=utcnow)


# -- requests ----------------------------------------------------------------

class BookingCreate(BaseModel):
    carId: str
    startDate: date
    endDate: date
    customer: CustomerIn
    promoCode: Optional[str] = None


class DepositIntentOut(BaseModel):
    id: str
    clientSecret: Optional[str] = None
    amount: float
    currency: str = "usd"


class BookingCreated(BaseModel):
    booking: Booking
    paymentIntent: DepositIntentOut


class CancelRequest(BaseModel):
    reason: str = ""
    refundAmount: float = 0.0


class RescheduleRequest(BaseModel):
    startDate: date
    endDate: date
    reason: str = ""
