from pydantic import BaseModel
from typing import Optional
from datetime import datetime


class AvailabilityResponse(BaseModel):
    domain_name: str
    available: bool
    expires_at: Optional[datetime] = None


class BookingResponse(BaseModel):
    booking_id: int
    domain_name: str
    owner_id: str
    booked_at: datetime
    expires_at: datetime
    payment_ref: Optional[str] = None
    active: bool
