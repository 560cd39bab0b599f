from datetime import datetime
from pydantic import BaseModel, Field, model_validator
from typing import Optional

from app.schemas.booking import utcnow


class PromoBase(BaseModel):
    percentOff: Optional[float] = Field(default=None, gt=0, le=100)
    amountOff: Optional[float] = Field(default=None, gt=0)
    currency: str = "usd"
    active: bool = True
    maxRedemptions: Optional[int] = Field(default=None, ge=1)
    expiresAt: Optional[datetime] = None
    partnerId: Optional[str] = None
    partnerName: Optional[str] = None

    @model_validator(mode="after")
    def _one_discount(self):
        if (self.percentOff is None) == (self.amountOff is None):
            raise ValueError("exactly one of percentOff or amountOff is required")
        return self


class PromoCreate(PromoBase):
    code: str


class PromoUpdate(BaseModel):
    # Discount values are immutable once created; only lifecycle fields change.
    active: Optional[bool] = None
    maxRedemptions: Optional[int] = Field(default=None, ge=1)
    expiresAt: Optional[datetime] = None
    partnerName: Optional[str] = None


class PromoRecord(PromoBase):
    code: str
    createdAt: datetime = Field(default_factory=utcnow)
    updatedAt: datetime = Field(default_factory=utcnow)


class PromoStats(BaseModel):
    totalUses: int = 0
    lastUsedAt: Optional[datetime] = None


class PromoValidateRequest(BaseModel):
    code: str
