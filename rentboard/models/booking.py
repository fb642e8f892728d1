from datetime import datetime
from typing import Dict, FrozenSet, Literal, Optional

from pydantic import BaseModel, model_validator

BookingStatus = Literal["pending", "approved", "rejected", "cancelled", "completed"]

# Only consulted when strict transitions are switched on; by default any status may follow any other.
BOOKING_TRANSITIONS: Dict[str, FrozenSet[str]] = {
  "pending": frozenset({"approved", "rejected", "cancelled"}),
  "approved": frozenset({"cancelled", "completed"}),
  "rejected": frozenset(),
  "cancelled": frozenset(),
  "completed": frozenset(),
}


class BookingRequest(BaseModel):
  propertyId: str
  startDate: datetime
  endDate: datetime
  message: Optional[str] = None

  @model_validator(mode="after")
  def check_dates(self):
    if self.endDate <= self.startDate:
      raise ValueError("endDate must be after startDate")
    return self


class BookingCreate(BookingRequest):
  tenantId: str
  # Always replaced by the listing's owner.
  ownerId: Optional[str] = None
  # Computed from the listing when left out.
  totalPrice: Optional[float] = None


class BookingStatusUpdate(BaseModel):
  status: BookingStatus


class BookingOut(BaseModel):
  id: str
  propertyId: str = ""
  tenantId: str = ""
  ownerId: str = ""
  startDate: Optional[datetime] = None
  endDate: Optional[datetime] = None
  totalPrice: float = 0
  status: BookingStatus = "pending"
  message: Optional[str] = None
  createdAt: Optional[datetime] = None
  updatedAt: Optional[datetime] = None
