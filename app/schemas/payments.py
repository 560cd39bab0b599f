from pydantic import BaseModel, Field
from typing import Optional


class CaptureDepositRequest(BaseModel):
    # Partial capture (e.g. damage deduction). If omitted, the full authorized amount is captured.
    captureAmount: Optional[float] = Field(default=None, gt=0)


class ChargeAdditionalRequest(BaseModel):
    amount: float  # positive = charge, negative = credit/discount
    memo: str = ""
    chargeNow: bool = False
    # A credit may take finalAmount below the captured deposit only when a refund record is written for the gap.
    recordRefund: bool = False


class ChargeFinalRequest(BaseModel):
    additionalCharges: float = 0.0
    memo: str = ""


class PaymentIntentOut(BaseModel):
    id: str
    status: str
    amount: float
    amountCapturable: Optional[float] = None
    clientSecret: Optional[str] = None
