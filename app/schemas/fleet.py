from datetime import date
from pydantic import BaseModel, Field
from typing import List, Optional


class CarPrice(BaseModel):
    daily: float = Field(gt=0)
    weekly: float = Field(default=0, ge=0)


class Car(BaseModel):
    id: str
    brand: str
    model: str
    year: int
    price: CarPrice
    available: bool = True
    showOnHomepage: bool = True
    displayOrder: int = 0


class CarUpsert(BaseModel):
    brand: str
    model: str
    year: int
    price: CarPrice
    available: bool = True
    showOnHomepage: bool = True
    displayOrder: Optional[int] = None


class UnavailableDates(BaseModel):
    unavailableDates: List[date]


class DateRange(BaseModel):
    startDate: date
    endDate: date


class AvailabilityConflicts(BaseModel):
    bookingConflicts: bool = False
    customBlocks: List[DateRange] = Field(default_factory=list)


class AvailabilityResult(BaseModel):
    available: bool
    conflicts: AvailabilityConflicts = Field(default_factory=AvailabilityConflicts)


class AvailabilityCheck(BaseModel):
    startDate: date
    endDate: date


class DayAvailability(BaseModel):
    available: bool
    reason: Optional[str] = None  # booked | blocked | unavailable
    price: Optional[float] = None
